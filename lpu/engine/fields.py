from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

from .models import EvaluationContext, Operator

ATTRIBUTE_PREFIX = "attributes."


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    ENUM = "enum"
    DATE = "date"
    # free-form catalog attributes; checked at evaluation time only
    ANY = "any"


_EQUALITY_OPS: FrozenSet[Operator] = frozenset({Operator.EQ, Operator.NEQ, Operator.IN})
_ALL_OPS: FrozenSet[Operator] = frozenset(Operator)

OPERATORS_BY_TYPE: Dict[FieldType, FrozenSet[Operator]] = {
    FieldType.STRING: _EQUALITY_OPS,
    FieldType.ENUM: _EQUALITY_OPS,
    FieldType.NUMBER: _ALL_OPS,
    FieldType.DATE: _ALL_OPS,
    FieldType.ANY: _ALL_OPS,
}


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: FieldType
    getter: Callable[[EvaluationContext], Any]
    choices: Tuple[str, ...] = ()

    def allows(self, op: Operator) -> bool:
        return op in OPERATORS_BY_TYPE[self.type]


def _spec(name: str, type_: FieldType, getter, choices: Tuple[str, ...] = ()) -> FieldSpec:
    return FieldSpec(name=name, type=type_, getter=getter, choices=choices)


FIELD_CATALOG: Dict[str, FieldSpec] = {
    s.name: s
    for s in (
        # item attributes (catalog)
        _spec("category", FieldType.STRING, lambda c: c.attributes.category),
        _spec("measurementUnit", FieldType.STRING, lambda c: c.attributes.measurement_unit),
        _spec("itemName", FieldType.STRING, lambda c: c.attributes.name or None),
        _spec(
            "itemType",
            FieldType.ENUM,
            lambda c: c.attributes.item_type,
            choices=("material", "service"),
        ),
        _spec("baseCost", FieldType.NUMBER, lambda c: c.attributes.base_cost),
        # price list item
        _spec("quantity", FieldType.NUMBER, lambda c: c.item.quantity_tier),
        _spec("quantityTier", FieldType.NUMBER, lambda c: c.item.quantity_tier),
        # current price state (moves as rules apply)
        _spec("currentUnitPrice", FieldType.NUMBER, lambda c: c.state.unit_price),
        _spec("currentSpecialPrice", FieldType.NUMBER, lambda c: c.state.special_price),
        _spec("currentHourlyRate", FieldType.NUMBER, lambda c: c.state.hourly_rate),
        _spec("currentTravelCost", FieldType.NUMBER, lambda c: c.state.travel_cost),
        # price list / customer
        _spec("currency", FieldType.STRING, lambda c: c.price_list.currency),
        _spec("automaticMargin", FieldType.NUMBER, lambda c: c.price_list.automatic_margin),
        _spec("customerCompanyId", FieldType.STRING, lambda c: c.price_list.customer_company_id),
        _spec("customerTier", FieldType.STRING, lambda c: c.price_list.customer_tier),
        # runtime
        _spec("evaluationDate", FieldType.DATE, lambda c: c.now),
    )
}


def get_field_spec(name: str) -> Optional[FieldSpec]:
    spec = FIELD_CATALOG.get(name)
    if spec is not None:
        return spec

    if name.startswith(ATTRIBUTE_PREFIX) and len(name) > len(ATTRIBUTE_PREFIX):
        key = name[len(ATTRIBUTE_PREFIX):]
        return FieldSpec(
            name=name,
            type=FieldType.ANY,
            getter=lambda c, _k=key: (c.attributes.attributes or {}).get(_k),
        )
    return None
