from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

D = Decimal

# minor unit per currency (all currencies in scope use cents)
MINOR_UNIT = {"BRL": D("0.01"), "EUR": D("0.01"), "USD": D("0.01")}
DEFAULT_MINOR_UNIT = D("0.01")

# largest amount a price column holds (Numeric(10, 2))
MAX_AMOUNT = D("99999999.99")


def money(amount: D, currency: str = "BRL") -> D:
    """Round to the currency's minor unit, half-up (never truncate)."""
    unit = MINOR_UNIT.get((currency or "").upper(), DEFAULT_MINOR_UNIT)
    return amount.quantize(unit, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Optional[D]:
    if value is None or value == "":
        return None
    if isinstance(value, D):
        return value
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    return D(str(value))


def _s(x: Optional[D]) -> Optional[str]:
    return None if x is None else str(x)


# -----------------------------
# Rule definitions
# -----------------------------


class RuleType(str, Enum):
    """Classification label only; behaviour comes from the actions list."""

    PERCENTUAL = "percentual"
    FIXED = "fixed"
    ESCALATED = "escalated"
    DYNAMIC = "dynamic"


RULE_TYPE_ALIASES = {
    "percentage": RuleType.PERCENTUAL,
    "fixo": RuleType.FIXED,
    "escalonado": RuleType.ESCALATED,
    "dinamico": RuleType.DYNAMIC,
    "dinâmico": RuleType.DYNAMIC,
}


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    BETWEEN = "between"


@dataclass(frozen=True)
class ConditionLeaf:
    field: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class ConditionGroup:
    logical_operator: LogicalOperator = LogicalOperator.AND
    children: Tuple["Condition", ...] = ()


Condition = Union[ConditionLeaf, ConditionGroup]

ALWAYS = ConditionGroup(LogicalOperator.AND, ())


class ActionKind(str, Enum):
    SET_PERCENT_MARGIN = "setPercentMargin"
    SET_FIXED_PRICE = "setFixedPrice"
    SET_HOURLY_RATE = "setHourlyRate"
    SET_TRAVEL_COST = "setTravelCost"
    SET_SPECIAL_PRICE = "setSpecialPrice"
    STACK_PERCENT = "stackPercent"


@dataclass(frozen=True)
class Tier:
    threshold_quantity: D
    value: D


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    value: Optional[D] = None
    tiers: Tuple[Tier, ...] = ()

    @property
    def is_tiered(self) -> bool:
        return bool(self.tiers)


@dataclass(frozen=True)
class PricingRule:
    id: str
    tenant_id: str
    name: str
    rule_type: RuleType
    priority: int
    is_active: bool = True
    conditions: Condition = ALWAYS
    actions: Tuple[Action, ...] = ()
    description: str = ""
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    # empty => tenant-wide
    price_list_ids: Tuple[str, ...] = ()

    def sort_key(self) -> Tuple[int, str]:
        return (self.priority, self.id)

    def in_scope(self, price_list_id: str) -> bool:
        return not self.price_list_ids or price_list_id in self.price_list_ids

    def is_valid_at(self, now: datetime) -> bool:
        if self.valid_from is not None and now < _aware(self.valid_from):
            return False
        if self.valid_to is not None and now > _aware(self.valid_to):
            return False
        return True


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


# -----------------------------
# Price list side
# -----------------------------


@dataclass(frozen=True)
class PriceState:
    unit_price: D
    special_price: Optional[D] = None
    hourly_rate: Optional[D] = None
    travel_cost: Optional[D] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "unitPrice": _s(self.unit_price),
            "specialPrice": _s(self.special_price),
            "hourlyRate": _s(self.hourly_rate),
            "travelCost": _s(self.travel_cost),
        }


@dataclass(frozen=True)
class PriceList:
    id: str
    tenant_id: str
    name: str = ""
    code: str = ""
    currency: str = "BRL"
    automatic_margin: Optional[D] = None
    customer_company_id: Optional[str] = None
    customer_tier: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class PriceListItem:
    item_id: str
    price_list_id: str
    unit_price: D
    special_price: Optional[D] = None
    hourly_rate: Optional[D] = None
    travel_cost: Optional[D] = None
    quantity_tier: Optional[D] = None
    is_active: bool = True

    @property
    def state(self) -> PriceState:
        return PriceState(
            unit_price=self.unit_price,
            special_price=self.special_price,
            hourly_rate=self.hourly_rate,
            travel_cost=self.travel_cost,
        )

    def with_state(self, state: PriceState) -> "PriceListItem":
        return replace(
            self,
            unit_price=state.unit_price,
            special_price=state.special_price,
            hourly_rate=state.hourly_rate,
            travel_cost=state.travel_cost,
        )


@dataclass(frozen=True)
class ItemAttributes:
    """Catalog snapshot of one item (material or service)."""

    item_id: str
    name: str = ""
    item_type: Optional[str] = None
    category: Optional[str] = None
    measurement_unit: Optional[str] = None
    base_cost: Optional[D] = None
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EvaluationContext:
    """
    Per (price list, item) pair, per run. Never cached or shared.
    `state` is replaced (not mutated) as rules apply.
    """

    price_list: PriceList
    item: PriceListItem
    attributes: ItemAttributes
    state: PriceState
    now: datetime

    @property
    def currency(self) -> str:
        return self.price_list.currency

    @property
    def quantity(self) -> Optional[D]:
        return self.item.quantity_tier

    def with_state(self, state: PriceState) -> "EvaluationContext":
        return replace(self, state=state)


# -----------------------------
# Results
# -----------------------------


class ItemStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_PROCESSED = "not_processed"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ItemResult:
    item_id: str
    status: ItemStatus
    previous_state: Optional[PriceState] = None
    new_state: Optional[PriceState] = None
    matched_rule_ids: List[str] = field(default_factory=list)
    applied_at: Optional[datetime] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    trace: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return (
            self.previous_state is not None
            and self.new_state is not None
            and self.new_state != self.previous_state
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "status": self.status.value,
            "previousState": self.previous_state.to_dict() if self.previous_state else None,
            "newState": self.new_state.to_dict() if self.new_state else None,
            "matchedRuleIds": list(self.matched_rule_ids),
            "appliedAt": self.applied_at.isoformat() if self.applied_at else None,
            "errors": list(self.errors),
            "trace": list(self.trace),
        }


@dataclass
class EvaluationResult:
    run_id: str
    price_list_id: str
    tenant_id: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    per_item: List[ItemResult] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    not_processed: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def affected_item_count(self) -> int:
        return len(self.succeeded)

    def item(self, item_id: str) -> Optional[ItemResult]:
        for r in self.per_item:
            if r.item_id == item_id:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "priceListId": self.price_list_id,
            "tenantId": self.tenant_id,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "affectedItemCount": self.affected_item_count,
            "perItem": [r.to_dict() for r in self.per_item],
            "warnings": list(self.warnings),
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "notProcessed": list(self.not_processed),
            "error": self.error,
        }
