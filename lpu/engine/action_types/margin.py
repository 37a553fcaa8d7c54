from __future__ import annotations

from .base import ActionType, register
from ..models import D, ActionKind

HUNDRED = D("100")


@register
class SetPercentMargin(ActionType):
    """baseCost * (1 + p/100); falls back to the current unit price without a base cost."""

    kind = ActionKind.SET_PERCENT_MARGIN
    target = "unit_price"

    def compute(self, value, state, ctx):
        base = ctx.attributes.base_cost
        if base is None:
            base = state.unit_price
        return base * (1 + value / HUNDRED)


@register
class StackPercent(ActionType):
    """Always relative to the incoming unit price, never the base cost."""

    kind = ActionKind.STACK_PERCENT
    target = "unit_price"

    def compute(self, value, state, ctx):
        return state.unit_price * (1 + value / HUNDRED)
