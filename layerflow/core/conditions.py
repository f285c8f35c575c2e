"""Structured condition evaluation against a run context.

Used by ``if_then`` and ``filter`` nodes. Type mismatches and invalid
comparisons evaluate to False instead of raising, and a field that cannot be
resolved never matches (except for ``not_exists``).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from layerflow.core.graph_schema import Condition

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve a dotted path ("trigger.items.0.sku") against nested data.

    Mapping keys are matched by name, sequence elements by integer index.
    Returns ``default`` when any segment is missing.
    """
    value = _lookup(data, path)
    return default if value is _MISSING else value


def _lookup(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str | bytes):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def _is_present(value: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    if isinstance(value, str | list | dict) and len(value) == 0:
        return False
    return True


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    """Evaluate a single condition safely."""
    value = _lookup(context, condition.field)

    if condition.operator == "exists":
        return _is_present(value)
    if condition.operator == "not_exists":
        return not _is_present(value)

    # Missing outputs must not accidentally pass conditions like "status != 'failed'"
    if value is _MISSING:
        return False

    expected = condition.value
    try:
        if condition.operator == "==":
            return value == expected
        elif condition.operator == "!=":
            return value != expected
        elif condition.operator in (">", "<", ">=", "<="):
            return _compare(condition.operator, value, expected)
        elif condition.operator == "in":
            return value in expected
        elif condition.operator == "not_in":
            return value not in expected
        elif condition.operator == "contains":
            if isinstance(value, dict | str | list):
                return expected in value
            return False
        elif condition.operator == "starts_with":
            return value.startswith(expected) if isinstance(value, str) else False
        elif condition.operator == "ends_with":
            return value.endswith(expected) if isinstance(value, str) else False
        else:
            return False
    except (TypeError, AttributeError):
        return False


def _compare(operator: str, value: Any, expected: Any) -> bool:
    # Numbers compare across int/float; everything else requires matching types
    numeric = (int, float)
    if isinstance(value, bool) or isinstance(expected, bool):
        return False
    if isinstance(value, numeric) and isinstance(expected, numeric):
        pass
    elif value is None or not isinstance(value, type(expected)):
        return False
    if operator == ">":
        return value > expected
    if operator == "<":
        return value < expected
    if operator == ">=":
        return value >= expected
    return value <= expected


def evaluate_group(
    conditions: list[Condition], context: Mapping[str, Any], match: str = "all"
) -> bool:
    """Combine conditions with AND (``all``) or OR (``any``)."""
    results = (evaluate_condition(c, context) for c in conditions)
    if match == "any":
        return any(results)
    return all(results)
