from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")  # in-memory, shared via StaticPool
os.environ.setdefault("AUDIT_ENABLED", "0")
os.environ.setdefault("RULES_YAML_PATH", "")

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

import lpu.engine.action_types  # noqa: F401 (register all actions)

from lpu.db import Base, make_engine
from lpu.engine.context import ItemAttributeCache
from lpu.engine.models import (
    EvaluationContext,
    ItemAttributes,
    PriceList,
    PriceListItem,
)
from lpu.engine.rule_engine import RuleEngine
from lpu.repositories.memory import (
    InMemoryCatalogStore,
    InMemoryPriceListItemStore,
    InMemoryRuleStore,
)

TENANT = "t-1"


@pytest.fixture
def fixed_now():
    return datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def price_list():
    return PriceList(id="PL-1", tenant_id=TENANT, name="Demo", currency="BRL")


@pytest.fixture
def catalog_items():
    return [
        ItemAttributes(item_id="I-1", name="Installation", item_type="service",
                       category="service", base_cost=Decimal("50")),
        ItemAttributes(item_id="I-2", name="Cable", item_type="material",
                       category="cable", base_cost=Decimal("70")),
        ItemAttributes(item_id="I-3", name="Breaker", item_type="material",
                       category="protection", base_cost=None),
    ]


@pytest.fixture
def price_list_items():
    return [
        PriceListItem("I-1", "PL-1", unit_price=Decimal("50.00"), quantity_tier=Decimal("12")),
        PriceListItem("I-2", "PL-1", unit_price=Decimal("100.00"), quantity_tier=Decimal("7")),
        PriceListItem("I-3", "PL-1", unit_price=Decimal("30.00")),
    ]


@pytest.fixture
def catalog(catalog_items):
    return InMemoryCatalogStore(catalog_items)


@pytest.fixture
def item_store(price_list, price_list_items):
    return InMemoryPriceListItemStore([price_list], price_list_items)


@pytest.fixture
def make_engine_for(catalog, item_store):
    """Engine factory over the in-memory stores; rules are passed per test."""

    def _make(rules, **kwargs):
        kwargs.setdefault("max_workers", 1)
        return RuleEngine(InMemoryRuleStore(rules), catalog, item_store, **kwargs)

    return _make


@pytest.fixture
def make_ctx(price_list, fixed_now):
    """Build one EvaluationContext without going through the resolver."""

    def _make(
        *,
        unit_price="50.00",
        quantity=None,
        category="service",
        item_type="service",
        base_cost="50",
        attributes=None,
    ):
        item = PriceListItem(
            "I-1",
            "PL-1",
            unit_price=Decimal(unit_price),
            quantity_tier=None if quantity is None else Decimal(str(quantity)),
        )
        attrs = ItemAttributes(
            item_id="I-1",
            name="Installation",
            item_type=item_type,
            category=category,
            base_cost=None if base_cost is None else Decimal(base_cost),
            attributes=dict(attributes or {}),
        )
        return EvaluationContext(
            price_list=price_list,
            item=item,
            attributes=attrs,
            state=item.state,
            now=fixed_now,
        )

    return _make


def rule(rule_id, priority, conditions, actions, **extra):
    """Stored (camelCase) rule record, as a rule store returns it."""
    d = {
        "id": rule_id,
        "tenantId": TENANT,
        "name": rule_id,
        "ruleType": "dynamic",
        "priority": priority,
        "isActive": True,
        "conditions": conditions,
        "actions": actions,
    }
    d.update(extra)
    return d


@pytest.fixture
def rule_record():
    return rule


@pytest.fixture
def cache():
    return ItemAttributeCache(max_entries=100, ttl_seconds=60)


# -----------------------------
# SQL (in-memory SQLite)
# -----------------------------


@pytest.fixture
def sql_engine():
    from lpu import models  # noqa: F401  (registers tables)

    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(bind=sql_engine, autocommit=False, autoflush=False)


@pytest.fixture
def seeded(session_factory):
    """PL-1 with a service item (I-1, qty 12) and a cable item (I-2, qty 7)."""
    from lpu.models import CatalogItemORM, PriceListItemORM, PriceListORM

    with session_factory() as db:
        db.add(PriceListORM(id="PL-1", tenant_id=TENANT, name="Demo", currency="BRL"))
        db.add(CatalogItemORM(id="I-1", tenant_id=TENANT, name="Installation", type="service",
                              category="service", base_cost=Decimal("50.00"),
                              attributes={"onSite": True}))
        db.add(CatalogItemORM(id="I-2", tenant_id=TENANT, name="Cable", type="material",
                              category="cable", base_cost=Decimal("70.00")))
        db.add(PriceListItemORM(tenant_id=TENANT, price_list_id="PL-1", item_id="I-1",
                                unit_price=Decimal("50.00"), quantity_tier=Decimal("12")))
        db.add(PriceListItemORM(tenant_id=TENANT, price_list_id="PL-1", item_id="I-2",
                                unit_price=Decimal("100.00"), quantity_tier=Decimal("7")))
        db.commit()
    return session_factory
