from decimal import Decimal

import pytest

from lpu.core.errors import FatalError
from lpu.engine.context import ItemAttributeCache, ItemContextResolver
from lpu.engine.models import ItemAttributes, ItemStatus, PriceListItem
from lpu.repositories.memory import InMemoryCatalogStore


def test_resolves_one_context_per_item(catalog, price_list, price_list_items, fixed_now):
    out = ItemContextResolver(catalog).resolve(price_list, price_list_items, now=fixed_now)

    assert [c.item.item_id for c in out.contexts] == ["I-1", "I-2", "I-3"]
    assert out.skipped == []
    ctx = out.contexts[0]
    assert ctx.attributes.category == "service"
    assert ctx.state.unit_price == Decimal("50.00")
    assert ctx.now == fixed_now
    assert ctx.currency == "BRL"


def test_dangling_reference_skips_only_that_item(catalog, price_list, fixed_now):
    items = [
        PriceListItem("I-1", "PL-1", unit_price=Decimal("1")),
        PriceListItem("I-404", "PL-1", unit_price=Decimal("1")),
        PriceListItem("", "PL-1", unit_price=Decimal("1")),
    ]
    out = ItemContextResolver(catalog).resolve(price_list, items, now=fixed_now)

    assert [c.item.item_id for c in out.contexts] == ["I-1"]
    assert [s.status for s in out.skipped] == [ItemStatus.SKIPPED, ItemStatus.SKIPPED]
    assert [s.errors[0]["code"] for s in out.skipped] == ["ITEM_NOT_FOUND", "MISSING_ITEM_REF"]


def test_negative_unit_price_is_invalid_item_state(catalog, price_list, fixed_now):
    items = [PriceListItem("I-1", "PL-1", unit_price=Decimal("-1"))]
    out = ItemContextResolver(catalog).resolve(price_list, items, now=fixed_now)

    assert out.contexts == []
    assert out.skipped[0].errors[0]["code"] == "INVALID_ITEM_STATE"


def test_duplicate_item_rows_are_skipped_once(catalog, price_list, fixed_now):
    items = [
        PriceListItem("I-1", "PL-1", unit_price=Decimal("50")),
        PriceListItem("I-2", "PL-1", unit_price=Decimal("100")),
        PriceListItem("I-1", "PL-1", unit_price=Decimal("55")),
    ]
    out = ItemContextResolver(catalog).resolve(price_list, items, now=fixed_now)

    assert [c.item.item_id for c in out.contexts] == ["I-2"]
    assert [s.item_id for s in out.skipped] == ["I-1"]
    assert out.skipped[0].errors[0]["code"] == "DUPLICATE_ITEM"
    assert out.skipped[0].errors[0]["meta"]["rows"] == 2


def test_catalog_failure_is_fatal(price_list, price_list_items, fixed_now):
    class Down:
        def get_item_attributes(self, tenant_id, item_ids):
            raise ConnectionError("catalog down")

    with pytest.raises(FatalError) as exc:
        ItemContextResolver(Down()).resolve(price_list, price_list_items, now=fixed_now)

    assert exc.value.code == "CONTEXT_UNAVAILABLE"


def test_cache_avoids_second_catalog_read(catalog, cache, price_list, price_list_items, fixed_now):
    resolver = ItemContextResolver(catalog, cache=cache)
    resolver.resolve(price_list, price_list_items, now=fixed_now)
    resolver.resolve(price_list, price_list_items, now=fixed_now)

    assert catalog.calls == 1
    assert len(cache) == 3


def test_price_state_is_never_served_from_cache(catalog, cache, price_list, fixed_now):
    resolver = ItemContextResolver(catalog, cache=cache)
    resolver.resolve(price_list, [PriceListItem("I-1", "PL-1", unit_price=Decimal("50"))], now=fixed_now)
    out = resolver.resolve(
        price_list, [PriceListItem("I-1", "PL-1", unit_price=Decimal("60"))], now=fixed_now
    )

    assert out.contexts[0].state.unit_price == Decimal("60")


# -----------------------
# ItemAttributeCache
# -----------------------


def _attrs(item_id):
    return ItemAttributes(item_id=item_id)


def test_cache_ttl_expiry():
    clock = [0.0]
    cache = ItemAttributeCache(max_entries=10, ttl_seconds=5, clock=lambda: clock[0])
    cache.put_many("t", [_attrs("a")])

    clock[0] = 4.0
    assert set(cache.get_many("t", ["a"])) == {"a"}
    clock[0] = 10.0
    assert cache.get_many("t", ["a"]) == {}
    assert len(cache) == 0


def test_cache_evicts_least_recently_used():
    cache = ItemAttributeCache(max_entries=2, ttl_seconds=60)
    cache.put_many("t", [_attrs("a"), _attrs("b")])
    cache.get_many("t", ["a"])  # a is now most recent
    cache.put_many("t", [_attrs("c")])

    assert set(cache.get_many("t", ["a", "b", "c"])) == {"a", "c"}


def test_cache_is_per_tenant_and_invalidates():
    cache = ItemAttributeCache(max_entries=10, ttl_seconds=60)
    cache.put_many("t1", [_attrs("a"), _attrs("b")])
    cache.put_many("t2", [_attrs("a")])

    assert cache.get_many("t2", ["b"]) == {}
    assert cache.invalidate("t1", ["a", "zzz"]) == 1
    assert set(cache.get_many("t1", ["a", "b"])) == {"b"}
    assert cache.invalidate("t1") == 1
    assert len(cache) == 1


def test_zero_sized_cache_stores_nothing():
    cache = ItemAttributeCache(max_entries=0)
    cache.put_many("t", [_attrs("a")])

    assert len(cache) == 0


def test_invalidated_item_is_read_again(price_list, fixed_now):
    catalog = InMemoryCatalogStore([ItemAttributes("I-1", category="service")])
    cache = ItemAttributeCache()
    resolver = ItemContextResolver(catalog, cache=cache)
    items = [PriceListItem("I-1", "PL-1", unit_price=Decimal("1"))]

    resolver.resolve(price_list, items, now=fixed_now)
    catalog.items["I-1"] = ItemAttributes("I-1", category="cable")
    cache.invalidate(price_list.tenant_id, ["I-1"])
    out = resolver.resolve(price_list, items, now=fixed_now)

    assert out.contexts[0].attributes.category == "cable"
    assert catalog.calls == 2
