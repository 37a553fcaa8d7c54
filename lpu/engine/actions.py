from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from lpu.core.errors import ActionError

from .action_types import ActionStep, ActionType, action_registry
from .models import D, MAX_AMOUNT, Action, EvaluationContext, PriceState, Tier, money

log = structlog.get_logger("lpu.engine.actions")

DECISION_APPLIED = "APPLIED"
DECISION_SKIPPED = "SKIPPED"
DECISION_REJECTED = "REJECTED"


@dataclass
class AppliedActions:
    state: PriceState
    steps: List[ActionStep] = field(default_factory=list)
    errors: List[ActionError] = field(default_factory=list)

    @property
    def applied_any(self) -> bool:
        return any(s.decision == DECISION_APPLIED for s in self.steps)


def select_tier(tiers: Sequence[Tier], quantity: Optional[D]) -> Optional[Tier]:
    """Greatest threshold <= quantity; tiers are sorted ascending at load time."""
    if quantity is None:
        return None
    best = None
    for t in tiers:
        if quantity < t.threshold_quantity:
            break
        best = t
    return best


class ActionApplicator:
    """
    Applies one matched rule's actions, in declared order. Later actions see
    the state produced by earlier ones. A rejected action leaves the state
    untouched and does not stop the remaining actions.
    """

    def __init__(self, registry: Optional[Dict] = None):
        self._types: Dict = {
            kind: cls() for kind, cls in (registry or action_registry).items()
        }

    def apply(
        self,
        actions: Iterable[Action],
        state: PriceState,
        ctx: EvaluationContext,
        *,
        rule_id: str = "",
    ) -> AppliedActions:
        out = AppliedActions(state=state)
        for action in actions:
            self._apply_one(action, out, ctx, rule_id)
        return out

    def _apply_one(
        self, action: Action, out: AppliedActions, ctx: EvaluationContext, rule_id: str
    ) -> None:
        impl: Optional[ActionType] = self._types.get(action.kind)
        kind = action.kind.value
        if impl is None:
            # rule_loader rejects unknown kinds; this only guards custom registries
            err = ActionError(
                f"No implementation for action kind {kind}",
                meta={"ruleId": rule_id, "kind": kind},
            )
            out.errors.append(err)
            out.steps.append(ActionStep(rule_id, kind, DECISION_REJECTED, reason="unknown_kind"))
            return

        before = impl.current(out.state)

        value = action.value
        if action.is_tiered:
            tier = select_tier(action.tiers, ctx.quantity)
            if tier is None:
                out.steps.append(
                    ActionStep(
                        rule_id,
                        kind,
                        DECISION_SKIPPED,
                        before=_s(before),
                        after=_s(before),
                        reason="below_lowest_tier" if ctx.quantity is not None else "no_quantity",
                    )
                )
                return
            value = tier.value

        if value is None:
            out.steps.append(
                ActionStep(rule_id, kind, DECISION_SKIPPED, before=_s(before), reason="no_value")
            )
            return

        try:
            new_value = money(impl.compute(value, out.state, ctx), ctx.currency)
        except ArithmeticError as e:
            # decimal.InvalidOperation: result too large to round to cents
            self._reject(out, ctx, rule_id, kind, before, "invalid_result",
                         f"Action {kind} produced no valid price ({e!r})")
            return

        if new_value < 0:
            self._reject(out, ctx, rule_id, kind, before, "negative_price",
                         f"Action {kind} would produce a negative price ({new_value})", new_value)
            return
        if new_value > MAX_AMOUNT:
            self._reject(out, ctx, rule_id, kind, before, "out_of_range",
                         f"Action {kind} would produce a price above {MAX_AMOUNT} ({new_value})", new_value)
            return

        out.state = replace(out.state, **{impl.target: new_value})
        out.steps.append(
            ActionStep(rule_id, kind, DECISION_APPLIED, before=_s(before), after=str(new_value))
        )

    @staticmethod
    def _reject(
        out: AppliedActions,
        ctx: EvaluationContext,
        rule_id: str,
        kind: str,
        before: Optional[D],
        reason: str,
        message: str,
        result: Optional[D] = None,
    ) -> None:
        meta = {"ruleId": rule_id, "kind": kind, "itemId": ctx.item.item_id}
        if result is not None:
            meta["value"] = str(result)
        log.warning(
            "action_rejected",
            rule_id=rule_id,
            kind=kind,
            item_id=ctx.item.item_id,
            reason=reason,
            result=_s(result),
        )
        out.errors.append(ActionError(message, meta=meta))
        out.steps.append(
            ActionStep(
                rule_id,
                kind,
                DECISION_REJECTED,
                before=_s(before),
                after=_s(before),
                reason=reason,
            )
        )


def _s(x: Optional[D]) -> Optional[str]:
    return None if x is None else str(x)
