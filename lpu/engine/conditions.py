from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import InvalidOperation
from typing import Any, List, Optional, Tuple

from lpu.core.errors import ConfigurationError

from .fields import FieldSpec, FieldType, get_field_spec
from .models import (
    ALWAYS,
    Condition,
    ConditionGroup,
    ConditionLeaf,
    D,
    EvaluationContext,
    LogicalOperator,
    Operator,
    to_decimal,
)

MAX_DEPTH = 16

# Flat condition objects written by the older price-list UI
LEGACY_KEYS = {
    "minQuantity": ("quantity", Operator.GTE),
    "maxQuantity": ("quantity", Operator.LTE),
    "minPrice": ("currentUnitPrice", Operator.GTE),
    "maxPrice": ("currentUnitPrice", Operator.LTE),
    "validFrom": ("evaluationDate", Operator.GTE),
    "validTo": ("evaluationDate", Operator.LTE),
    "customerType": ("customerTier", Operator.EQ),
}

_MISSING = object()


# -----------------------
# Parsing + validation (rule-load time)
# -----------------------


def parse_condition(raw: Any) -> Condition:
    """
    Parse a JSON condition tree into Leaf / Group nodes.

    Accepted shapes:
      - None / {}                              -> empty AND (always true)
      - {"field", "operator", "value"}         -> leaf
      - {"logicalOperator", "children": [...]} -> group
      - [...]                                  -> AND over the list
      - {"minQuantity": .., "maxPrice": ..}    -> legacy flat form

    Values are coerced to the field's declared type here, so evaluation never
    has to deal with a type mismatch. All problems are collected and raised
    together as one ConfigurationError.
    """
    issues: List[str] = []
    cond = _parse(raw, issues, path="conditions", depth=0)
    if issues:
        raise ConfigurationError("Invalid condition tree", issues=issues)
    return cond


def validate_condition(raw: Any) -> List[str]:
    issues: List[str] = []
    _parse(raw, issues, path="conditions", depth=0)
    return issues


def _parse(raw: Any, issues: List[str], path: str, depth: int) -> Condition:
    if depth > MAX_DEPTH:
        issues.append(f"{path}: nesting deeper than {MAX_DEPTH} levels")
        return ALWAYS

    if raw is None:
        return ALWAYS

    if isinstance(raw, list):
        children = tuple(
            _parse(c, issues, f"{path}[{i}]", depth + 1) for i, c in enumerate(raw)
        )
        return ConditionGroup(LogicalOperator.AND, children)

    if not isinstance(raw, dict):
        issues.append(f"{path}: expected object, got {type(raw).__name__}")
        return ALWAYS

    if not raw:
        return ALWAYS

    if "children" in raw or "logicalOperator" in raw:
        return _parse_group(raw, issues, path, depth)

    if "field" in raw:
        return _parse_leaf(raw, issues, path)

    legacy = [k for k in LEGACY_KEYS if k in raw]
    if legacy:
        return _parse_legacy(raw, issues, path)

    issues.append(f"{path}: unrecognised condition node (keys={sorted(raw)})")
    return ALWAYS


def _parse_group(raw: dict, issues: List[str], path: str, depth: int) -> Condition:
    op_raw = str(raw.get("logicalOperator") or "AND").upper()
    try:
        op = LogicalOperator(op_raw)
    except ValueError:
        issues.append(f"{path}.logicalOperator: unknown operator {op_raw!r}")
        op = LogicalOperator.AND

    children_raw = raw.get("children") or []
    if not isinstance(children_raw, list):
        issues.append(f"{path}.children: expected list")
        children_raw = []

    children = tuple(
        _parse(c, issues, f"{path}.children[{i}]", depth + 1)
        for i, c in enumerate(children_raw)
    )
    return ConditionGroup(op, children)


def _parse_legacy(raw: dict, issues: List[str], path: str) -> Condition:
    leaves = []
    for key, (field, op) in LEGACY_KEYS.items():
        if raw.get(key) in (None, ""):  # blank inputs in the old form
            continue
        leaves.append(
            _parse_leaf(
                {"field": field, "operator": op.value, "value": raw[key]},
                issues,
                f"{path}.{key}",
            )
        )
    unknown = sorted(set(raw) - set(LEGACY_KEYS))
    if unknown:
        issues.append(f"{path}: unsupported legacy keys {unknown}")
    return ConditionGroup(LogicalOperator.AND, tuple(leaves))


def _parse_leaf(raw: dict, issues: List[str], path: str) -> Condition:
    field = str(raw.get("field") or "")
    spec = get_field_spec(field)
    if spec is None:
        issues.append(f"{path}.field: unknown field {field!r}")
        return ALWAYS

    op_raw = str(raw.get("operator") or "")
    try:
        op = Operator(op_raw)
    except ValueError:
        issues.append(f"{path}.operator: unknown operator {op_raw!r}")
        return ALWAYS

    if not spec.allows(op):
        issues.append(
            f"{path}: operator {op.value!r} not valid for {spec.type.value} field {field!r}"
        )
        return ALWAYS

    if "value" not in raw:
        issues.append(f"{path}.value: missing")
        return ALWAYS

    try:
        value = _coerce_operand(spec, op, raw["value"])
    except (ValueError, TypeError, InvalidOperation) as e:
        issues.append(f"{path}.value: {e}")
        return ALWAYS

    return ConditionLeaf(field=field, operator=op, value=value)


def _coerce_operand(spec: FieldSpec, op: Operator, value: Any) -> Any:
    if op is Operator.IN:
        if not isinstance(value, (list, tuple, set, frozenset)) or not value:
            raise ValueError("'in' expects a non-empty list")
        return frozenset(_coerce_scalar(spec, v) for v in value)

    if op is Operator.BETWEEN:
        if not isinstance(value, (list, tuple)) or len(value) != 2:
            raise ValueError("'between' expects [low, high]")
        low, high = (_coerce_scalar(spec, v) for v in value)
        if spec.type is not FieldType.ANY and low > high:
            raise ValueError(f"'between' low {low} > high {high}")
        return (low, high)

    if isinstance(value, (list, dict)):
        raise ValueError(f"operator {op.value!r} expects a scalar")
    return _coerce_scalar(spec, value)


def _coerce_scalar(spec: FieldSpec, value: Any) -> Any:
    if value is None:
        raise ValueError("null operand")
    if spec.type is FieldType.NUMBER:
        n = to_decimal(value)
        if n is None:
            raise ValueError("null operand")
        if not n.is_finite():
            raise ValueError(f"not a finite number: {value!r}")
        return n
    if spec.type is FieldType.DATE:
        dt = _to_datetime(value)
        if dt is None:
            raise ValueError(f"not a date: {value!r}")
        return dt
    if spec.type is FieldType.ENUM:
        s = str(value)
        if spec.choices and s not in spec.choices:
            raise ValueError(f"{s!r} not one of {list(spec.choices)}")
        return s
    if spec.type is FieldType.STRING:
        if isinstance(value, (int, float, D)) and not isinstance(value, bool):
            # ids are often typed as numbers in the query builder
            return str(value)
        if not isinstance(value, str):
            raise ValueError(f"expected string, got {type(value).__name__}")
        return value
    return value


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


# -----------------------
# Evaluation (pure, no I/O)
# -----------------------


def evaluate(condition: Condition, ctx: EvaluationContext) -> bool:
    if isinstance(condition, ConditionGroup):
        # all()/any() short-circuit; empty AND -> True, empty OR -> False
        if condition.logical_operator is LogicalOperator.AND:
            return all(evaluate(c, ctx) for c in condition.children)
        return any(evaluate(c, ctx) for c in condition.children)
    return _evaluate_leaf(condition, ctx)


def _evaluate_leaf(leaf: ConditionLeaf, ctx: EvaluationContext) -> bool:
    spec = get_field_spec(leaf.field)
    if spec is None:
        return False

    actual = spec.getter(ctx)
    if actual is None:
        # fail-closed: missing data never satisfies a condition
        return False

    actual = _coerce_actual(spec, actual)
    if actual is _MISSING:
        return False

    try:
        return _compare(leaf.operator, actual, leaf.value)
    except (TypeError, InvalidOperation):
        return False


def _coerce_actual(spec: FieldSpec, actual: Any) -> Any:
    if spec.type is FieldType.NUMBER:
        try:
            return to_decimal(actual)
        except (ValueError, InvalidOperation):
            return _MISSING
    if spec.type is FieldType.DATE:
        dt = _to_datetime(actual)
        return _MISSING if dt is None else dt
    if spec.type is FieldType.ANY:
        return _any_operand(actual)
    return str(actual)


def _any_operand(value: Any) -> Any:
    # free-form attributes: numbers compare numerically, everything else as-is
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return D(str(value))
    return value


def _compare(op: Operator, actual: Any, expected: Any) -> bool:
    if op is Operator.IN:
        if isinstance(actual, D):
            return any(_num_eq(actual, e) for e in expected)
        return actual in expected
    if op is Operator.BETWEEN:
        low, high = (_any_operand(x) for x in expected)
        return low <= actual <= high

    expected = _any_operand(expected)
    if op is Operator.EQ:
        return _num_eq(actual, expected) if isinstance(actual, D) else actual == expected
    if op is Operator.NEQ:
        return not (_num_eq(actual, expected) if isinstance(actual, D) else actual == expected)
    if op is Operator.GT:
        return actual > expected
    if op is Operator.GTE:
        return actual >= expected
    if op is Operator.LT:
        return actual < expected
    if op is Operator.LTE:
        return actual <= expected
    return False


def _num_eq(actual: D, expected: Any) -> bool:
    try:
        return actual == to_decimal(expected)
    except (ValueError, InvalidOperation):
        return False


def referenced_fields(condition: Condition) -> Tuple[str, ...]:
    """Fields a condition reads, in tree order (used for explain output)."""
    if isinstance(condition, ConditionLeaf):
        return (condition.field,)
    out: List[str] = []
    for c in condition.children:
        for f in referenced_fields(c):
            if f not in out:
                out.append(f)
    return tuple(out)
