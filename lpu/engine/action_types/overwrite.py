from __future__ import annotations

from .base import ActionType, register
from ..models import ActionKind


class _Overwrite(ActionType):
    def compute(self, value, state, ctx):
        return value


@register
class SetFixedPrice(_Overwrite):
    kind = ActionKind.SET_FIXED_PRICE
    target = "unit_price"


@register
class SetSpecialPrice(_Overwrite):
    kind = ActionKind.SET_SPECIAL_PRICE
    target = "special_price"


@register
class SetHourlyRate(_Overwrite):
    kind = ActionKind.SET_HOURLY_RATE
    target = "hourly_rate"


@register
class SetTravelCost(_Overwrite):
    kind = ActionKind.SET_TRAVEL_COST
    target = "travel_cost"
