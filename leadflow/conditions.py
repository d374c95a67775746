"""Safe condition evaluation against entity snapshots.

Conditions are plain ``field operator value`` triples. Nothing is ever
passed to ``eval``; every operator is an explicit function. Evaluation fails
closed: a missing field, an unknown operator or an incomparable value yields
``False`` and a log line rather than an exception.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable

from .models import Condition, ConditionOperator

logger = logging.getLogger(__name__)


class ConditionError(Exception):
    """Raised internally when a condition cannot be evaluated."""


_MISSING = object()


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise ConditionError(f"boolean {value!r} is not numeric")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConditionError(f"{value!r} is not numeric") from exc


def _equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    # "5" and 5 should compare equal when coming from JSON forms
    if isinstance(actual, (int, float)) or isinstance(expected, (int, float)):
        try:
            return _to_number(actual) == _to_number(expected)
        except ConditionError:
            return False
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().lower() == expected.strip().lower()
    return False


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected).lower() in actual.lower()
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    if isinstance(actual, dict):
        return expected in actual
    raise ConditionError(f"cannot test containment on {type(actual).__name__}")


_OPERATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equals,
    ConditionOperator.NOT_EQUALS: lambda a, b: not _equals(a, b),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.GREATER_THAN: lambda a, b: _to_number(a) > _to_number(b),
    ConditionOperator.LESS_THAN: lambda a, b: _to_number(a) < _to_number(b),
}


def get_field(snapshot: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path such as ``custom.gpa`` against ``snapshot``."""
    current: Any = snapshot
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def evaluate_condition(condition: Condition, snapshot: Dict[str, Any]) -> bool:
    actual = get_field(snapshot, condition.field)
    if actual is _MISSING:
        logger.warning(f"Condition field '{condition.field}' missing from snapshot")
        return False
    op = _OPERATORS.get(condition.operator)
    if op is None:
        logger.warning(f"Unknown operator '{condition.operator}' in condition")
        return False
    try:
        return bool(op(actual, condition.value))
    except ConditionError as exc:
        logger.warning(
            f"Condition {condition.field} {condition.operator.value} {condition.value!r} failed closed: {exc}"
        )
        return False


def evaluate_all(conditions: Iterable[Condition], snapshot: Dict[str, Any]) -> bool:
    """True when every condition holds. An empty list is satisfied."""
    return all(evaluate_condition(c, snapshot) for c in conditions)
