from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from lpu.core.errors import ConfigurationError

from .action_types import action_registry
from .conditions import _to_datetime, validate_condition, parse_condition
from .models import (
    D,
    MAX_AMOUNT,
    RULE_TYPE_ALIASES,
    Action,
    ActionKind,
    PricingRule,
    RuleType,
    Tier,
    to_decimal,
)

log = structlog.get_logger("lpu.engine.rule_loader")

HUNDRED = D("100")
MAX_PERCENT = D("10000")
_PERCENT_KINDS = {ActionKind.SET_PERCENT_MARGIN, ActionKind.STACK_PERCENT}


# -----------------------
# Single rule
# -----------------------


def parse_rule(d: Dict[str, Any]) -> PricingRule:
    """
    Build a PricingRule from its stored JSON form (camelCase keys).
    Raises ConfigurationError listing every problem found.
    """
    issues: List[str] = []

    rule_id = str(d.get("id") or "").strip()
    if not rule_id:
        issues.append("id: missing")

    rule_type = _parse_rule_type(d.get("ruleType"), issues)
    priority = _parse_priority(d.get("priority", 1), issues)

    conditions_raw = d.get("conditions")
    issues.extend(validate_condition(conditions_raw))

    actions = _parse_actions(d.get("actions"), issues)

    valid_from = _parse_ts(d.get("validFrom"), "validFrom", issues)
    valid_to = _parse_ts(d.get("validTo"), "validTo", issues)
    if valid_from and valid_to and valid_from > valid_to:
        issues.append("validFrom: after validTo")

    price_list_ids = d.get("priceListIds") or []
    if not isinstance(price_list_ids, list):
        issues.append("priceListIds: expected list")
        price_list_ids = []

    if issues:
        raise ConfigurationError(
            f"Rule {rule_id or '<no id>'} is invalid",
            issues=issues,
            meta={"ruleId": rule_id or None},
        )

    return PricingRule(
        id=rule_id,
        tenant_id=str(d.get("tenantId") or ""),
        name=str(d.get("name") or d.get("ruleName") or rule_id),
        description=str(d.get("description") or ""),
        rule_type=rule_type,
        priority=priority,
        is_active=bool(d.get("isActive", True)),
        conditions=parse_condition(conditions_raw),
        actions=tuple(actions),
        valid_from=valid_from,
        valid_to=valid_to,
        price_list_ids=tuple(str(x) for x in price_list_ids),
    )


def validate_rule(d: Dict[str, Any]) -> List[str]:
    try:
        parse_rule(d)
    except ConfigurationError as e:
        return list(e.issues)
    return []


def _parse_rule_type(raw: Any, issues: List[str]) -> RuleType:
    s = str(raw or "").strip().lower()
    if s in RULE_TYPE_ALIASES:
        return RULE_TYPE_ALIASES[s]
    try:
        return RuleType(s)
    except ValueError:
        issues.append(f"ruleType: unknown type {raw!r}")
        return RuleType.DYNAMIC


def _parse_priority(raw: Any, issues: List[str]) -> int:
    if isinstance(raw, bool):
        issues.append("priority: expected integer")
        return 1
    try:
        n = to_decimal(raw)
    except (ValueError, InvalidOperation):
        n = None
    # 1.5 must not silently become 1
    if n is None or not n.is_finite() or n != n.to_integral_value():
        issues.append(f"priority: expected integer, got {raw!r}")
        return 1
    p = int(n)
    if p < 1:
        issues.append(f"priority: must be >= 1, got {p}")
    return p


def _parse_ts(raw: Any, name: str, issues: List[str]) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    dt = _to_datetime(raw)
    if dt is None:
        issues.append(f"{name}: not a timestamp {raw!r}")
    return dt


def _parse_actions(raw: Any, issues: List[str]) -> List[Action]:
    if isinstance(raw, dict) and "percentage" in raw and "kind" not in raw:
        # legacy 'percentual' rows: {"percentage": 10}
        raw = [{"kind": ActionKind.STACK_PERCENT.value, "value": raw["percentage"]}]

    if not isinstance(raw, list) or not raw:
        issues.append("actions: expected a non-empty list")
        return []

    out: List[Action] = []
    for i, a in enumerate(raw):
        path = f"actions[{i}]"
        if not isinstance(a, dict):
            issues.append(f"{path}: expected object")
            continue

        try:
            kind = ActionKind(str(a.get("kind") or ""))
        except ValueError:
            issues.append(f"{path}.kind: unknown action {a.get('kind')!r}")
            continue
        if kind not in action_registry:
            issues.append(f"{path}.kind: no implementation registered for {kind.value}")
            continue

        payload = a.get("tiers", a.get("value"))
        if isinstance(payload, list):
            tiers = _parse_tiers(payload, kind, path, issues)
            out.append(Action(kind=kind, tiers=tuple(tiers)))
            continue

        try:
            value = to_decimal(payload)
        except (ValueError, InvalidOperation):
            issues.append(f"{path}.value: not a number {payload!r}")
            continue
        if value is None:
            issues.append(f"{path}.value: missing")
            continue
        _check_value(kind, value, f"{path}.value", issues)
        out.append(Action(kind=kind, value=value))
    return out


def _parse_tiers(raw: List[Any], kind: ActionKind, path: str, issues: List[str]) -> List[Tier]:
    if not raw:
        issues.append(f"{path}.tiers: empty")
        return []

    tiers: List[Tier] = []
    for j, t in enumerate(raw):
        tpath = f"{path}.tiers[{j}]"
        if not isinstance(t, dict):
            issues.append(f"{tpath}: expected object")
            continue
        try:
            threshold = to_decimal(t.get("thresholdQuantity"))
            value = to_decimal(t.get("value"))
        except (ValueError, InvalidOperation):
            issues.append(f"{tpath}: thresholdQuantity/value must be numbers")
            continue
        if threshold is None or value is None:
            issues.append(f"{tpath}: thresholdQuantity and value are required")
            continue
        if not threshold.is_finite() or abs(threshold) > MAX_AMOUNT:
            issues.append(f"{tpath}.thresholdQuantity: must be a finite number up to {MAX_AMOUNT}")
            continue
        if threshold < 0:
            issues.append(f"{tpath}.thresholdQuantity: must be >= 0")
        _check_value(kind, value, f"{tpath}.value", issues)
        tiers.append(Tier(threshold_quantity=threshold, value=value))

    tiers.sort(key=lambda t: t.threshold_quantity)
    thresholds = [t.threshold_quantity for t in tiers]
    if len(thresholds) != len(set(thresholds)):
        issues.append(f"{path}.tiers: duplicate thresholdQuantity")
    return tiers


def _check_value(kind: ActionKind, value: D, path: str, issues: List[str]) -> None:
    if not value.is_finite():
        issues.append(f"{path}: must be a finite number")
        return
    if kind in _PERCENT_KINDS:
        if value < -HUNDRED:
            issues.append(f"{path}: percentage below -100 always yields a negative price")
        elif value > MAX_PERCENT:
            issues.append(f"{path}: percentage above {MAX_PERCENT}")
    elif value < 0:
        issues.append(f"{path}: price must be >= 0")
    elif value > MAX_AMOUNT:
        issues.append(f"{path}: price above {MAX_AMOUNT}")


# -----------------------
# Active set for one run
# -----------------------


@dataclass
class RuleSelection:
    rules: List[PricingRule] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def rule_ids(self) -> List[str]:
        return [r.id for r in self.rules]


def select_rules(
    records: Iterable[Dict[str, Any]],
    *,
    tenant_id: str,
    price_list_id: str,
    now: Optional[datetime] = None,
    rule_ids: Optional[Sequence[str]] = None,
) -> RuleSelection:
    """
    Parse, validate and order the rules for one apply-rules run.

    - invalid rules are dropped with an INVALID_RULE warning (never raise)
    - inactive, out-of-scope and expired rules are dropped silently
    - order: priority ascending, then rule id ascending
    """
    if now is None:
        now = datetime.now(timezone.utc)

    wanted = set(rule_ids) if rule_ids else None
    selection = RuleSelection()
    seen: set[str] = set()

    for record in records:
        try:
            rule = parse_rule(record)
        except ConfigurationError as e:
            log.warning(
                "rule_excluded",
                rule_id=e.meta.get("ruleId"),
                issues=e.issues,
                price_list_id=price_list_id,
            )
            selection.warnings.append(e.to_dict())
            continue

        if rule.id in seen:
            selection.warnings.append(
                {
                    "code": "DUPLICATE_RULE_ID",
                    "message": f"Duplicate rule id {rule.id}; only the first definition is used",
                    "meta": {"ruleId": rule.id},
                }
            )
            continue
        seen.add(rule.id)

        if rule.tenant_id and rule.tenant_id != tenant_id:
            continue
        if wanted is not None and rule.id not in wanted:
            continue
        if not rule.is_active or not rule.in_scope(price_list_id) or not rule.is_valid_at(now):
            continue

        selection.rules.append(rule)

    if wanted is not None:
        missing = sorted(wanted - {r.id for r in selection.rules})
        if missing:
            selection.warnings.append(
                {
                    "code": "RULE_NOT_APPLICABLE",
                    "message": "Requested rules are unknown, inactive, invalid or out of scope",
                    "meta": {"ruleIds": missing},
                }
            )

    selection.rules.sort(key=PricingRule.sort_key)
    return selection
