from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from automation.workflows.context import resolve_path
from automation.workflows.schemas import Condition, ConditionAll, ConditionAny, ConditionNot


_OP_ALIASES = {"equals": "eq", "not_equals": "neq"}


def evaluate(condition: Condition, variables: dict[str, Any]) -> bool:
    if isinstance(condition, ConditionAll):
        return all(evaluate(item, variables) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(evaluate(item, variables) for item in condition.any)
    if isinstance(condition, ConditionNot):
        return not evaluate(condition.not_, variables)

    exists, current = resolve_path(variables, condition.path)
    op = _OP_ALIASES.get(condition.op, condition.op)
    target = condition.value

    if op == "exists":
        return exists and current not in (None, "", [], {}, ())
    if op == "is_null":
        return current is None
    if op == "is_not_null":
        return current is not None
    if op == "eq":
        return _normalized(current) == _normalized(target)
    if op == "neq":
        return _normalized(current) != _normalized(target)
    if op in {"in", "not_in"}:
        if not isinstance(target, (list, tuple, set)):
            return op == "not_in"
        found = any(_normalized(current) == _normalized(item) for item in target)
        return found if op == "in" else not found
    if op == "contains":
        if isinstance(current, str) and isinstance(target, str):
            return target in current
        if isinstance(current, (list, tuple, set)):
            return target in current
        return False
    if op == "starts_with":
        return isinstance(current, str) and isinstance(target, str) and current.startswith(target)
    if op == "ends_with":
        return isinstance(current, str) and isinstance(target, str) and current.endswith(target)

    left = _normalized(current)
    right = _normalized(target)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _normalized(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
        try:
            return date.fromisoformat(value).isoformat()
        except ValueError:
            return value
    return value
