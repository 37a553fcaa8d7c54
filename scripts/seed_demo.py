"""
Seed a demo tenant: price list PL-1 with a service, a cable and a material
item plus two pricing rules. Safe to re-run (rows are upserted by id).

    python -m scripts.seed_demo
    curl -X POST -H "X-Tenant-Id: demo-tenant" localhost:8080/price-lists/PL-1/apply-rules
"""
from decimal import Decimal

from sqlalchemy import select

from lpu import models  # noqa: F401
from lpu.db import Base, SessionLocal, engine
from lpu.models import (
    CatalogItemORM,
    PriceListItemORM,
    PriceListORM,
    PriceListRuleORM,
    PricingRuleORM,
)

TENANT = "demo-tenant"
PRICE_LIST = "PL-1"

CATALOG = [
    dict(id="I-1", name="Installation", type="service", category="service",
         measurement_unit="h", base_cost=Decimal("50.00"), attributes={"onSite": True}),
    dict(id="I-2", name="Cable 2.5mm", type="material", category="cable",
         measurement_unit="m", base_cost=Decimal("70.00"), attributes={}),
    dict(id="I-3", name="Breaker 20A", type="material", category="protection",
         measurement_unit="un", base_cost=Decimal("30.00"), attributes={}),
]

# item_id -> (unit_price, quantity_tier)
PRICE_LIST_ITEMS = {
    "I-1": (Decimal("50.00"), Decimal("12")),
    "I-2": (Decimal("100.00"), Decimal("7")),
    "I-3": (Decimal("30.00"), None),
}

RULES = [
    dict(
        id="R-margin", name="Service margin", rule_type="percentual", priority=1,
        conditions={"field": "category", "operator": "eq", "value": "service"},
        actions=[{"kind": "setPercentMargin", "value": 20}],
    ),
    dict(
        id="R-bulk", name="Bulk discount", rule_type="percentual", priority=2,
        conditions={"logicalOperator": "AND", "children": [
            {"field": "quantityTier", "operator": "gte", "value": 10},
        ]},
        actions=[{"kind": "stackPercent", "value": -5}],
    ),
    dict(
        id="R-tiers", name="Cable by quantity", rule_type="escalated", priority=3,
        conditions={"field": "category", "operator": "eq", "value": "cable"},
        actions=[{"kind": "setFixedPrice", "value": [
            {"thresholdQuantity": 5, "value": 90},
            {"thresholdQuantity": 10, "value": 80},
        ]}],
    ),
]


def main():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        db.merge(PriceListORM(id=PRICE_LIST, tenant_id=TENANT, name="Demo list", code="PL1",
                              currency="BRL", is_active=True))

        for c in CATALOG:
            db.merge(CatalogItemORM(tenant_id=TENANT, is_active=True, **c))

        existing = {
            r.item_id: r
            for r in db.scalars(
                select(PriceListItemORM).where(PriceListItemORM.price_list_id == PRICE_LIST)
            ).all()
        }
        for item_id, (unit_price, qty) in PRICE_LIST_ITEMS.items():
            row = existing.get(item_id) or PriceListItemORM(
                tenant_id=TENANT, price_list_id=PRICE_LIST, item_id=item_id
            )
            # reset to the starting prices so a re-run reproduces the demo
            row.unit_price = unit_price
            row.quantity_tier = qty
            row.special_price = None
            row.hourly_rate = None
            row.travel_cost = None
            row.is_active = True
            db.add(row)

        for r in RULES:
            db.merge(PricingRuleORM(tenant_id=TENANT, is_active=True, **r))
            db.merge(PriceListRuleORM(price_list_id=PRICE_LIST, rule_id=r["id"], tenant_id=TENANT))

        db.commit()
    finally:
        db.close()

    print(f"Seeded {PRICE_LIST} for tenant {TENANT}: "
          f"{len(PRICE_LIST_ITEMS)} items, {len(RULES)} rules.")


if __name__ == "__main__":
    main()
