"""Condition evaluation shared by filter rules, rule applicability and mappings."""

import logging
from typing import Any, Iterable

from .definitions import Condition
from .paths import get_path, has_path


logger = logging.getLogger(__name__)


def _compare(left: Any, right: Any, op) -> bool:
    try:
        return bool(op(left, right))
    except TypeError:
        # Incomparable types never satisfy an ordering condition
        return False


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    try:
        return item in container
    except TypeError:
        return False


def matches(record: Any, condition: Condition) -> bool:
    """Evaluate one condition against a record."""
    operator = condition.operator
    expected = condition.value

    if operator == "exists":
        return has_path(record, condition.field)
    if operator == "not_exists":
        return not has_path(record, condition.field)

    actual = get_path(record, condition.field)

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "greater_than":
        return actual is not None and _compare(actual, expected, lambda a, b: a > b)
    if operator == "less_than":
        return actual is not None and _compare(actual, expected, lambda a, b: a < b)
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return not _contains(actual, expected)
    if operator == "in":
        return _contains(expected, actual)
    if operator == "not_in":
        return not _contains(expected, actual)

    logger.warning(f"Unknown condition operator '{operator}' treated as not matching")
    return False


def all_match(record: Any, conditions: Iterable[Condition]) -> bool:
    return all(matches(record, condition) for condition in conditions)
