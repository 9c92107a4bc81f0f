"""Condition evaluation shared by the branching activities."""

import re
from typing import Any, Callable, Dict, List, Mapping

from ..core.exceptions import TerminalNodeError


def get_field(data: Any, path: str) -> Any:
    """Read a dotted path (``order.items.0.sku``) from nested dicts and lists."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and len(value) == 0)


def _contains(value: Any, expected: Any) -> bool:
    if isinstance(value, str) and isinstance(expected, str):
        return expected in value
    if isinstance(value, (list, tuple)):
        return expected in value
    return False


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(value, expected):
        try:
            return op(float(value), float(expected))
        except (TypeError, ValueError):
            return False
    return compare


def _regex(value: Any, pattern: Any) -> bool:
    if not isinstance(value, str) or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, value) is not None
    except re.error:
        return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda value, expected: value == expected,
    "notEquals": lambda value, expected: value != expected,
    "contains": _contains,
    "notContains": lambda value, expected: isinstance(value, (str, list, tuple)) and not _contains(value, expected),
    "startsWith": lambda value, expected: isinstance(value, str) and value.startswith(str(expected)),
    "endsWith": lambda value, expected: isinstance(value, str) and value.endswith(str(expected)),
    "greaterThan": _compare(lambda a, b: a > b),
    "lessThan": _compare(lambda a, b: a < b),
    "greaterThanOrEqual": _compare(lambda a, b: a >= b),
    "lessThanOrEqual": _compare(lambda a, b: a <= b),
    "isEmpty": lambda value, expected: _is_empty(value),
    "isNotEmpty": lambda value, expected: not _is_empty(value),
    "isTrue": lambda value, expected: value is True,
    "isFalse": lambda value, expected: value is False,
    "regex": _regex,
    "in": lambda value, expected: isinstance(expected, list) and value in expected,
    "notIn": lambda value, expected: isinstance(expected, list) and value not in expected,
}


def evaluate_condition(condition: Mapping[str, Any], data: Any) -> bool:
    """
    Evaluate one ``{field, operator, value}`` condition against the data.

    Raises:
        TerminalNodeError: If the operator is unknown
    """
    operator = condition.get("operator", "equals")
    check = OPERATORS.get(operator)
    if check is None:
        raise TerminalNodeError(f"Unknown condition operator '{operator}'")
    return check(get_field(data, condition.get("field", "")), condition.get("value"))


def evaluate_conditions(conditions: List[Mapping[str, Any]], data: Any, combinator: str = "and") -> bool:
    """Combine conditions with ``and`` (all must hold) or ``or`` (any may hold)."""
    if combinator not in ("and", "or"):
        raise TerminalNodeError(f"Unknown condition combinator '{combinator}'")
    results = [evaluate_condition(condition, data) for condition in conditions]
    if combinator == "or":
        return any(results)
    return all(results)
