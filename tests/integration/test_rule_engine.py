import threading
import time
from dataclasses import replace
from decimal import Decimal

import pytest

from lpu.core.errors import PriceListBusyError, PriceListNotFoundError
from lpu.engine.locks import PriceListLocks
from lpu.engine.models import ItemStatus, RunStatus

SERVICE = {"field": "category", "operator": "eq", "value": "service"}
CABLE = {"field": "category", "operator": "eq", "value": "cable"}
QTY_GTE_10 = {"logicalOperator": "AND", "children": [
    {"field": "quantityTier", "operator": "gte", "value": 10},
]}


def D(x):
    return Decimal(str(x))


def test_margin_then_bulk_discount_end_to_end(make_engine_for, rule_record, item_store, fixed_now):
    engine = make_engine_for([
        rule_record("R-margin", 1, SERVICE, [{"kind": "setPercentMargin", "value": 20}]),
        rule_record("R-bulk", 2, QTY_GTE_10, [{"kind": "stackPercent", "value": -5}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now, run_id="run-1")

    # I-1: baseCost 50 -> 60.00 -> 57.00 (quantityTier 12)
    assert out.status is RunStatus.COMPLETED
    assert item_store.item("PL-1", "I-1").unit_price == D("57.00")
    r = out.item("I-1")
    assert r.status is ItemStatus.APPLIED
    assert r.matched_rule_ids == ["R-margin", "R-bulk"]
    assert r.applied_at == fixed_now
    assert [s["after"] for s in r.trace] == ["60.00", "57.00"]

    assert out.item("I-2").status is ItemStatus.UNCHANGED
    assert out.item("I-3").status is ItemStatus.UNCHANGED
    assert out.succeeded == ["I-1"]
    assert out.affected_item_count == 1
    assert [x.item_id for x in out.per_item] == ["I-1", "I-2", "I-3"]


def test_later_rule_sees_state_written_by_earlier_rule(make_engine_for, rule_record, item_store, fixed_now):
    engine = make_engine_for([
        rule_record("R-A", 1, SERVICE, [{"kind": "setFixedPrice", "value": 100}]),
        rule_record("R-B", 2, {"field": "currentUnitPrice", "operator": "gte", "value": 100},
                    [{"kind": "stackPercent", "value": 10}]),
    ])
    engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert item_store.item("PL-1", "I-1").unit_price == D("110.00")


def test_equal_priority_is_ordered_by_rule_id(make_engine_for, rule_record, item_store, fixed_now):
    engine = make_engine_for([
        rule_record("R-b", 1, SERVICE, [{"kind": "stackPercent", "value": 10}]),
        rule_record("R-a", 1, SERVICE, [{"kind": "setFixedPrice", "value": 100}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.item("I-1").matched_rule_ids == ["R-a", "R-b"]
    assert item_store.item("PL-1", "I-1").unit_price == D("110.00")


def test_rule_without_conditions_applies_to_every_item(make_engine_for, rule_record, fixed_now):
    engine = make_engine_for([
        rule_record("R-all", 1, {"logicalOperator": "AND", "children": []},
                    [{"kind": "setTravelCost", "value": 15}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.succeeded == ["I-1", "I-2", "I-3"]


def test_missing_field_never_matches(make_engine_for, rule_record, item_store, fixed_now):
    # I-3 has no quantity: neither the rule nor its negation fires
    engine = make_engine_for([
        rule_record("R-gt", 1, {"field": "quantity", "operator": "gt", "value": 5},
                    [{"kind": "setSpecialPrice", "value": 1}]),
        rule_record("R-lte", 2, {"field": "quantity", "operator": "lte", "value": 5},
                    [{"kind": "setSpecialPrice", "value": 2}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.item("I-3").matched_rule_ids == []
    assert item_store.item("PL-1", "I-3").special_price is None


@pytest.mark.parametrize("qty, expected", [("7", "90.00"), ("3", "100.00"), ("12", "80.00")])
def test_escalated_price_by_quantity(make_engine_for, rule_record, item_store, fixed_now, qty, expected):
    from dataclasses import replace

    pl_item = item_store.item("PL-1", "I-2")
    item_store.items["PL-1"]["I-2"] = replace(pl_item, quantity_tier=D(qty))
    engine = make_engine_for([
        rule_record("R-tiers", 1, CABLE, [{"kind": "setFixedPrice", "value": [
            {"thresholdQuantity": 5, "value": 90},
            {"thresholdQuantity": 10, "value": 80},
        ]}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert item_store.item("PL-1", "I-2").unit_price == D(expected)
    if qty == "3":
        assert out.item("I-2").status is ItemStatus.UNCHANGED
        assert out.item("I-2").trace[0]["reason"] == "below_lowest_tier"


def test_second_run_is_idempotent_for_absolute_actions(make_engine_for, rule_record, item_store, fixed_now):
    engine = make_engine_for([
        rule_record("R-margin", 1, SERVICE, [{"kind": "setPercentMargin", "value": 20}]),
    ])
    first = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)
    second = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert first.succeeded == ["I-1"]
    assert second.succeeded == []
    assert second.item("I-1").status is ItemStatus.UNCHANGED
    assert item_store.item("PL-1", "I-1").unit_price == D("60.00")


def test_stack_percent_compounds_across_runs(make_engine_for, rule_record, item_store, fixed_now):
    engine = make_engine_for([
        rule_record("R-bulk", 1, QTY_GTE_10, [{"kind": "stackPercent", "value": -10}]),
    ])
    engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)
    engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert item_store.item("PL-1", "I-1").unit_price == D("40.50")


def test_invalid_rule_is_excluded_and_reported(make_engine_for, rule_record, item_store, fixed_now):
    engine = make_engine_for([
        rule_record("R-ok", 1, SERVICE, [{"kind": "setFixedPrice", "value": 70}]),
        rule_record("R-broken", 2, {"field": "category", "operator": "gt", "value": 1},
                    [{"kind": "setFixedPrice", "value": 1}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.COMPLETED
    assert item_store.item("PL-1", "I-1").unit_price == D("70.00")
    assert out.warnings[0]["code"] == "INVALID_RULE"
    assert out.warnings[0]["meta"]["ruleId"] == "R-broken"


@pytest.mark.parametrize("bad_value", ["NaN", "Infinity", "1e30"])
def test_non_finite_or_huge_rule_value_is_excluded_not_fatal(
    make_engine_for, rule_record, item_store, fixed_now, bad_value
):
    engine = make_engine_for([
        rule_record("R-bad", 1, None, [{"kind": "setFixedPrice", "value": bad_value}]),
        rule_record("R-ok", 2, SERVICE, [{"kind": "setFixedPrice", "value": 70}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.COMPLETED
    assert [w["meta"]["ruleId"] for w in out.warnings] == ["R-bad"]
    assert out.succeeded == ["I-1"]
    assert item_store.item("PL-1", "I-1").unit_price == D("70.00")


def test_huge_base_cost_rejects_the_action_not_the_run(
    make_engine_for, rule_record, catalog, item_store, fixed_now
):
    catalog.items["I-1"] = replace(catalog.items["I-1"], base_cost=D("1e30"))
    engine = make_engine_for([
        rule_record("R-margin", 1, SERVICE, [{"kind": "setPercentMargin", "value": 20}]),
        rule_record("R-cable", 2, CABLE, [{"kind": "setFixedPrice", "value": 80}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.COMPLETED
    assert out.item("I-1").status is ItemStatus.UNCHANGED
    assert [e["code"] for e in out.item("I-1").errors] == ["ACTION_REJECTED"]
    assert out.succeeded == ["I-2"]
    assert item_store.item("PL-1", "I-1").unit_price == D("50.00")


def test_duplicate_item_rows_are_reported_once_and_not_written(
    make_engine_for, rule_record, item_store, fixed_now, monkeypatch
):
    rows = item_store.get_items("t-1", "PL-1")
    twin = replace(rows[0], unit_price=D("55.00"))
    monkeypatch.setattr(item_store, "get_items", lambda *a: rows + [twin])
    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])

    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert [r.item_id for r in out.per_item] == ["I-1", "I-2", "I-3"]
    assert out.item("I-1").status is ItemStatus.SKIPPED
    assert out.item("I-1").errors[0]["code"] == "DUPLICATE_ITEM"
    assert out.succeeded == ["I-2", "I-3"]
    assert out.status is RunStatus.PARTIAL
    assert item_store.item("PL-1", "I-1").unit_price == D("50.00")


def test_minus_100_percent_yields_zero_not_a_rejection(
    make_engine_for, rule_record, item_store, fixed_now
):
    engine = make_engine_for([
        rule_record("R-neg", 1, SERVICE, [
            {"kind": "stackPercent", "value": -100},
            {"kind": "setTravelCost", "value": 10},
        ]),
        rule_record("R-neg2", 2, SERVICE, [{"kind": "stackPercent", "value": -50}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    # -100% gives exactly 0.00 which is allowed; a further -50% stays at 0.00
    saved = item_store.item("PL-1", "I-1")
    assert saved.unit_price == D("0.00")
    assert saved.travel_cost == D("10.00")
    assert out.item("I-1").errors == []


def test_rejected_action_is_listed_on_item(make_engine_for, rule_record, item_store, fixed_now, monkeypatch):
    from lpu.engine.action_types import action_registry
    from lpu.engine.models import ActionKind

    class Minus200:
        kind = ActionKind.STACK_PERCENT
        target = "unit_price"

        def compute(self, value, state, ctx):
            return state.unit_price - Decimal("200")

        def current(self, state):
            return state.unit_price

    monkeypatch.setitem(action_registry, ActionKind.STACK_PERCENT, Minus200)
    engine = make_engine_for([
        rule_record("R-neg", 1, SERVICE, [
            {"kind": "stackPercent", "value": 1},
            {"kind": "setTravelCost", "value": 10},
        ]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    r = out.item("I-1")
    assert r.status is ItemStatus.APPLIED
    assert [e["code"] for e in r.errors] == ["ACTION_REJECTED"]
    assert item_store.item("PL-1", "I-1").unit_price == D("50.00")
    assert item_store.item("PL-1", "I-1").travel_cost == D("10.00")


def test_partial_write_failure(make_engine_for, rule_record, item_store, fixed_now):
    item_store.fail_items["I-2"] = "row locked"
    engine = make_engine_for([
        rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}]),
    ])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.PARTIAL
    assert out.succeeded == ["I-1", "I-3"]
    assert out.failed == ["I-2"]
    failed = out.item("I-2")
    assert failed.status is ItemStatus.FAILED
    assert failed.errors[-1]["code"] == "PERSISTENCE_FAILED"
    assert "row locked" in failed.errors[-1]["message"]
    assert item_store.item("PL-1", "I-2").unit_price == D("100.00")
    assert item_store.item("PL-1", "I-1").unit_price == D("10.00")


def test_unacknowledged_write_counts_as_failed(make_engine_for, rule_record, item_store, fixed_now, monkeypatch):
    from lpu.engine.ports import SaveResult

    monkeypatch.setattr(item_store, "save_items", lambda *a: SaveResult(succeeded=["I-1"]))
    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.succeeded == ["I-1"]
    assert out.failed == ["I-2", "I-3"]


def test_skipped_item_makes_run_partial(make_engine_for, rule_record, item_store, fixed_now):
    from lpu.engine.models import PriceListItem

    item_store.items["PL-1"]["I-404"] = PriceListItem("I-404", "PL-1", unit_price=D(1))
    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.PARTIAL
    assert out.item("I-404").status is ItemStatus.SKIPPED
    assert "I-404" not in out.succeeded
    assert "I-404" not in out.failed


def test_inactive_items_are_ignored(make_engine_for, rule_record, item_store, fixed_now):
    from dataclasses import replace

    item_store.items["PL-1"]["I-3"] = replace(item_store.item("PL-1", "I-3"), is_active=False)
    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.item("I-3") is None
    assert out.succeeded == ["I-1", "I-2"]


def test_catalog_outage_fails_the_run_without_writes(rule_record, item_store, fixed_now):
    from lpu.engine.rule_engine import RuleEngine
    from lpu.repositories.memory import InMemoryRuleStore

    class Down:
        def get_item_attributes(self, tenant_id, item_ids):
            raise TimeoutError("catalog timeout")

    engine = RuleEngine(
        InMemoryRuleStore([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])]),
        Down(),
        item_store,
    )
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.FAILED
    assert out.error["code"] == "CONTEXT_UNAVAILABLE"
    assert out.per_item == []
    assert out.affected_item_count == 0
    assert item_store.saves == []


def test_rule_store_outage_fails_the_run(make_engine_for, item_store, fixed_now):
    engine = make_engine_for([])

    def boom(*a):
        raise ConnectionError("db gone")

    engine.rule_store.list_active_rules = boom
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.status is RunStatus.FAILED
    assert out.error["code"] == "STORE_UNAVAILABLE"
    assert item_store.saves == []


def test_unknown_price_list_raises(make_engine_for, fixed_now):
    engine = make_engine_for([])

    with pytest.raises(PriceListNotFoundError):
        engine.apply_rules("PL-404", tenant_id="t-1", now=fixed_now)
    with pytest.raises(PriceListNotFoundError):
        engine.apply_rules("PL-1", tenant_id="other-tenant", now=fixed_now)


def test_cancellation_keeps_already_evaluated_items(make_engine_for, rule_record, item_store, fixed_now):
    class CancelAfter(threading.Event):
        """Reports 'set' from the n-th check on (one check per item)."""

        def __init__(self, n):
            super().__init__()
            self.checks = 0
            self.n = n

        def is_set(self):
            self.checks += 1
            return self.checks > self.n

    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now, cancel=CancelAfter(1))

    assert out.status is RunStatus.CANCELLED
    assert out.succeeded == ["I-1"]
    assert out.not_processed == ["I-2", "I-3"]
    assert out.item("I-2").status is ItemStatus.NOT_PROCESSED
    assert item_store.item("PL-1", "I-1").unit_price == D("10.00")
    assert item_store.item("PL-1", "I-2").unit_price == D("100.00")


def test_save_timeout_fails_the_batch_and_writes_nothing(
    make_engine_for, rule_record, item_store, fixed_now, monkeypatch
):
    real_save = item_store.save_items
    seen = {}

    def slow_save(tenant_id, price_list_id, items, abort=None):
        seen["aborted"] = abort.wait(5)
        seen["locked"] = engine.locks.is_locked("PL-1")
        return real_save(tenant_id, price_list_id, items, abort)

    monkeypatch.setattr(item_store, "save_items", slow_save)
    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now, save_timeout=0.05)

    assert out.status is RunStatus.PARTIAL
    assert out.succeeded == []
    assert out.failed == ["I-1", "I-2", "I-3"]
    assert out.affected_item_count == 0
    assert "PERSISTENCE_TIMEOUT" in out.item("I-1").errors[-1]["message"]
    # the store saw the abort while the run still held the list
    assert seen == {"aborted": True, "locked": True}
    assert not engine.locks.is_locked("PL-1")
    assert item_store.item("PL-1", "I-1").unit_price == D("50.00")
    assert item_store.item("PL-1", "I-2").unit_price == D("100.00")


def test_late_writes_after_timeout_are_reported_as_written(
    make_engine_for, rule_record, item_store, fixed_now, monkeypatch
):
    real_save = item_store.save_items

    def stubborn_save(tenant_id, price_list_id, items, abort=None):
        abort.wait(5)
        # ignores the abort for the first row
        return real_save(tenant_id, price_list_id, items[:1])

    monkeypatch.setattr(item_store, "save_items", stubborn_save)
    engine = make_engine_for([rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])])
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now, save_timeout=0.05)

    assert out.succeeded == ["I-1"]
    assert out.failed == ["I-2", "I-3"]
    assert out.affected_item_count == 1
    assert out.item("I-1").status is ItemStatus.APPLIED
    assert "PERSISTENCE_TIMEOUT" in out.item("I-2").errors[-1]["message"]
    assert item_store.item("PL-1", "I-1").unit_price == D("10.00")
    assert item_store.item("PL-1", "I-2").unit_price == D("100.00")


def test_busy_price_list_raises(make_engine_for, rule_record, fixed_now):
    locks = PriceListLocks()
    engine = make_engine_for([], locks=locks, lock_timeout=0.05)
    entered = threading.Event()
    release = threading.Event()

    def hold():
        with locks.hold("PL-1"):
            entered.set()
            release.wait(5)

    t = threading.Thread(target=hold)
    t.start()
    entered.wait(5)
    try:
        with pytest.raises(PriceListBusyError):
            engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)
    finally:
        release.set()
        t.join(5)


def test_thread_pool_keeps_item_order(make_engine_for, rule_record, fixed_now):
    engine = make_engine_for(
        [rule_record("R-all", 1, None, [{"kind": "setFixedPrice", "value": 10}])], max_workers=8
    )
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert [r.item_id for r in out.per_item] == ["I-1", "I-2", "I-3"]
    assert out.succeeded == ["I-1", "I-2", "I-3"]


def test_audit_sink_receives_result_and_its_failure_is_ignored(make_engine_for, rule_record, fixed_now):
    seen = []

    class Sink:
        def publish(self, result):
            seen.append(result.run_id)
            raise RuntimeError("audit store down")

    engine = make_engine_for([], audit_sink=Sink())
    out = engine.apply_rules("PL-1", tenant_id="t-1", now=fixed_now, run_id="run-7")

    assert out.status is RunStatus.COMPLETED
    assert seen == ["run-7"]


def test_preview_lists_rules_in_evaluation_order(make_engine_for, rule_record, fixed_now):
    engine = make_engine_for([
        rule_record("R-2", 2, None, [{"kind": "setFixedPrice", "value": 1}]),
        rule_record("R-1", 1, None, [{"kind": "setFixedPrice", "value": 1}]),
    ])
    sel = engine.preview_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert sel.rule_ids == ["R-1", "R-2"]
    with pytest.raises(PriceListNotFoundError):
        engine.preview_rules("PL-404", tenant_id="t-1")


def test_finished_at_is_set(make_engine_for, fixed_now):
    t0 = time.time()
    out = make_engine_for([]).apply_rules("PL-1", tenant_id="t-1", now=fixed_now)

    assert out.started_at == fixed_now
    assert out.finished_at.timestamp() >= t0 - 1
