# /crm_dialer/workflows/conditions.py

"""
Pure condition evaluation for condition nodes.

A missing (or null) event field never satisfies a rule, whatever the
operator. This includes `not_equals`: flows built against the existing
CRM integration rely on it.
"""

import math
from collections.abc import Mapping
from typing import Any, Optional

from crm_dialer.workflows.definitions import FIELD_TYPE_KEYS


def resolve_key(rule: Mapping) -> Optional[str]:
    """Maps a rule's `fieldType` to the flat event key it reads."""
    field_type = rule.get("fieldType") or rule.get("field_type")
    if field_type in FIELD_TYPE_KEYS:
        return FIELD_TYPE_KEYS[field_type]
    field = rule.get("field")
    return str(field) if field not in (None, "") else None


def canonical_text(value: Any) -> str:
    """Text form used for equality and substring tests (`42`, `42.0` and `"42"` agree)."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return repr(value)
    if value is None:
        return ""
    return str(value)


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _compare_numeric(actual: Any, expected: Any, operator: str) -> bool:
    left, right = to_number(actual), to_number(expected)
    if left is None or right is None:
        return False
    if operator == "greater_than":
        return left > right
    return left < right


def evaluate(rule: Mapping, event: Mapping) -> bool:
    """
    Evaluates one condition rule (`{field, fieldType, operator, value}`)
    against a flat event mapping.
    """
    key = resolve_key(rule)
    if key is None:
        return False
    actual = event.get(key)
    if actual is None:
        return False

    operator = rule.get("operator")
    expected = rule.get("value")

    if operator == "equals":
        return canonical_text(actual) == canonical_text(expected)
    if operator == "not_equals":
        return canonical_text(actual) != canonical_text(expected)
    if operator in ("greater_than", "less_than"):
        return _compare_numeric(actual, expected, operator)
    if operator == "contains":
        return canonical_text(expected).lower() in canonical_text(actual).lower()
    return False
