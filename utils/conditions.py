"""
Condition evaluator — used by condition nodes in the flow engine.

Evaluates a single {variable, operator, value} predicate against the session
context. Supports nested dot-notation variable access and numeric coercion.
"""
from __future__ import annotations

import math
from typing import Any, Optional

import structlog

from models.schemas import ConditionProperties

logger = structlog.get_logger()

# Result for a condition with no variable/operator or an unknown operator.
# True keeps a misconfigured flow moving down its "true" branch.
CONDITION_FAIL_OPEN = True


def get_nested_value(data: dict, field: str) -> Any:
    """Get a value from nested dict using dot notation. e.g. 'order.status'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        else:
            return None
    return current


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return None if math.isnan(number) else number
    return None


def _stringify(value: Any) -> str:
    return "" if value is None else str(value)


def _loose_equals(a: Any, b: Any) -> bool:
    """5 == "5" is true; otherwise compare string forms."""
    if a is None or b is None:
        return a is None and b is None
    na, nb = _to_number(a), _to_number(b)
    if na is not None and nb is not None:
        return na == nb
    return _stringify(a) == _stringify(b)


def _greater_than(a: Any, b: Any) -> bool:
    na, nb = _to_number(a), _to_number(b)
    return na is not None and nb is not None and na > nb


def _less_than(a: Any, b: Any) -> bool:
    na, nb = _to_number(a), _to_number(b)
    return na is not None and nb is not None and na < nb


OPERATORS: dict[str, Any] = {
    "equals": _loose_equals,
    "not_equals": lambda a, b: not _loose_equals(a, b),
    "contains": lambda a, b: _stringify(b) in _stringify(a),
    "greater_than": _greater_than,
    "less_than": _less_than,
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}


def evaluate_condition(
    condition: ConditionProperties,
    context: dict[str, Any],
    fail_open: bool = CONDITION_FAIL_OPEN,
) -> bool:
    """Evaluate a condition node's predicate against the session context."""
    if not condition.variable or not condition.operator:
        logger.warning("condition_unconfigured",
                       variable=condition.variable,
                       operator=condition.operator,
                       result=fail_open)
        return fail_open

    fn = OPERATORS.get(condition.operator)
    if fn is None:
        logger.warning("condition_unknown_operator",
                       operator=condition.operator,
                       result=fail_open)
        return fail_open

    actual = get_nested_value(context, condition.variable)
    try:
        return bool(fn(actual, condition.value))
    except (TypeError, ValueError):
        return False
