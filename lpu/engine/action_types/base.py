from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional, Type

from ..models import D, ActionKind, PriceState

if TYPE_CHECKING:
    from ..models import EvaluationContext

# Price state field each action writes
TARGET_FIELDS = ("unit_price", "special_price", "hourly_rate", "travel_cost")


class ActionType:
    """
    Base class for all action kinds. Every action computes the new value of
    exactly one price-state field; rounding, negative checks and tier
    selection are done by the ActionApplicator, not here.
    """

    kind: ActionKind
    target: str = "unit_price"

    def compute(self, value: D, state: PriceState, ctx: "EvaluationContext") -> D:
        raise NotImplementedError

    def current(self, state: PriceState) -> Optional[D]:
        return getattr(state, self.target)


# Registry: action kind -> ActionType class
action_registry: Dict[ActionKind, Type[ActionType]] = {}


def register(action_cls: Type[ActionType]) -> Type[ActionType]:
    """
    Decorator to register an action by its kind.
    Fails fast on duplicate registrations.
    """
    key = getattr(action_cls, "kind", None)
    if key is None:
        raise ValueError(f"Action class {action_cls.__name__} has no kind")
    if getattr(action_cls, "target", None) not in TARGET_FIELDS:
        raise ValueError(f"Action class {action_cls.__name__} has invalid target")

    if key in action_registry and action_registry[key] is not action_cls:
        raise ValueError(
            f"Duplicate action registration for kind '{key.value}': "
            f"{action_registry[key].__name__} vs {action_cls.__name__}"
        )

    action_registry[key] = action_cls
    return action_cls


@dataclass(frozen=True)
class ActionStep:
    """One applied / skipped / rejected action, for the per-item trace."""

    rule_id: str
    kind: str
    decision: str  # "APPLIED" | "SKIPPED" | "REJECTED"
    before: Optional[str] = None
    after: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "ruleId": self.rule_id,
            "kind": self.kind,
            "decision": self.decision,
            "before": self.before,
            "after": self.after,
            "reason": self.reason,
        }
