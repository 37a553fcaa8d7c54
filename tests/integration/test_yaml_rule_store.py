import os
from pathlib import Path

import pytest
import yaml
from jsonschema import ValidationError

from lpu.engine.rule_loader import select_rules
from lpu.repositories.rule_file_store import YamlRuleStore

DEMO_RULES = Path(__file__).resolve().parents[2] / "rules" / "demo_rules.yaml"


def _write(path, doc, mtime):
    path.write_text(yaml.safe_dump(doc, sort_keys=False), encoding="utf-8")
    # explicit mtimes: filesystems with coarse timestamps would hide the change
    os.utime(path, ns=(mtime, mtime))


def _doc(*rules, tenant="t-1"):
    return {"ruleSetVersion": "v1", "tenantId": tenant, "rules": list(rules)}


def _rule(rule_id, priority=1, **extra):
    d = {"id": rule_id, "ruleType": "fixed", "priority": priority,
         "actions": [{"kind": "setFixedPrice", "value": 10}]}
    d.update(extra)
    return d


def test_demo_rule_file_loads_and_every_rule_is_valid(fixed_now):
    store = YamlRuleStore(str(DEMO_RULES))
    records = store.list_active_rules("demo-tenant", "PL-1")
    sel = select_rules(records, tenant_id="demo-tenant", price_list_id="PL-1", now=fixed_now)

    assert sel.warnings == []
    assert sel.rule_ids == ["R-margin", "R-bulk", "R-tiers", "R-travel"]


def test_file_tenant_is_the_default_and_filters_other_tenants(tmp_path):
    path = tmp_path / "rules.yaml"
    _write(path, _doc(_rule("R-1"), _rule("R-2", tenantId="t-2")), 1_000_000_000)
    store = YamlRuleStore(str(path))

    assert [r["id"] for r in store.list_active_rules("t-1", "PL-1")] == ["R-1"]
    assert [r["id"] for r in store.list_active_rules("t-2", "PL-1")] == ["R-2"]


def test_inactive_and_out_of_scope_rules_are_filtered(tmp_path):
    path = tmp_path / "rules.yaml"
    _write(path, _doc(
        _rule("R-off", isActive=False),
        _rule("R-pl9", priceListIds=["PL-9"]),
        _rule("R-pl1", priceListIds=["PL-1"]),
    ), 1_000_000_000)

    assert [r["id"] for r in YamlRuleStore(str(path)).list_active_rules("t-1", "PL-1")] == ["R-pl1"]


def test_hot_reload_on_mtime_change(tmp_path):
    path = tmp_path / "rules.yaml"
    _write(path, _doc(_rule("R-1")), 1_000_000_000)
    store = YamlRuleStore(str(path))
    assert [r["id"] for r in store.list_active_rules("t-1", "PL-1")] == ["R-1"]

    _write(path, _doc(_rule("R-1"), _rule("R-2", 2)), 2_000_000_000)

    assert [r["id"] for r in store.list_active_rules("t-1", "PL-1")] == ["R-1", "R-2"]
    assert store.get().mtime_ns == 2_000_000_000


def test_broken_reload_keeps_last_good_file(tmp_path):
    path = tmp_path / "rules.yaml"
    _write(path, _doc(_rule("R-1")), 1_000_000_000)
    store = YamlRuleStore(str(path))

    path.write_text("rules: [this is: not: yaml", encoding="utf-8")
    os.utime(path, ns=(2_000_000_000, 2_000_000_000))
    assert [r["id"] for r in store.list_active_rules("t-1", "PL-1")] == ["R-1"]

    # schema violation (priority must be an integer) is also kept out
    _write(path, _doc(_rule("R-2", priority="high")), 3_000_000_000)
    assert [r["id"] for r in store.list_active_rules("t-1", "PL-1")] == ["R-1"]


def test_missing_file_after_load_keeps_rules(tmp_path):
    path = tmp_path / "rules.yaml"
    _write(path, _doc(_rule("R-1")), 1_000_000_000)
    store = YamlRuleStore(str(path))
    path.unlink()

    assert [r["id"] for r in store.list_active_rules("t-1", "PL-1")] == ["R-1"]


def test_invalid_file_at_startup_fails_fast(tmp_path):
    path = tmp_path / "rules.yaml"
    _write(path, {"ruleSetVersion": "v1"}, 1_000_000_000)

    with pytest.raises(ValidationError):
        YamlRuleStore(str(path))
    with pytest.raises(FileNotFoundError):
        YamlRuleStore(str(tmp_path / "nope.yaml"))
