# ORM models (registers tables on Base.metadata)

from .pricing import (
    ApplyRulesAuditORM,
    CatalogItemORM,
    PriceListItemORM,
    PriceListORM,
    PriceListRuleORM,
    PricingRuleORM,
)

__all__ = [
    "ApplyRulesAuditORM",
    "CatalogItemORM",
    "PriceListItemORM",
    "PriceListORM",
    "PriceListRuleORM",
    "PricingRuleORM",
]
