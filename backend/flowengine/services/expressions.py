"""Context path resolution, condition operators and duration parsing.

Node configs reference execution data with `{{ path.to.value }}` or
`context.path.to.value`; anything else is a literal.
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

_FULL_TEMPLATE = re.compile(r"^\{\{\s*([^}]+?)\s*\}\}$")


class ConditionOperator(str, Enum):
    """Operators supported by condition/field_check nodes."""

    EXISTS = "exists"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"


_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
}


def get_by_path(obj: Any, path: str | None) -> Any:
    """Walk a dotted path through nested dicts, returning None when missing.

    The path may be given bare, as `context.path` or as `{{ path }}`.
    """
    if not path:
        return None
    safe_path = path.strip()
    match = _FULL_TEMPLATE.match(safe_path)
    if match:
        safe_path = match.group(1).strip()
    if safe_path.startswith("context."):
        safe_path = safe_path[len("context."):]

    current = obj
    for chunk in (c for c in safe_path.split(".") if c):
        if isinstance(current, dict):
            current = current.get(chunk)
        elif isinstance(current, list) and chunk.isdigit():
            index = int(chunk)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def resolve_value(value: Any, context: dict[str, Any]) -> Any:
    """Resolve a config value against the context.

    Only whole-string references are resolved; strings that merely contain
    a placeholder are returned unchanged.
    """
    if not isinstance(value, str):
        return value
    match = _FULL_TEMPLATE.match(value)
    if match:
        return get_by_path(context, match.group(1))
    if value.startswith("context."):
        return get_by_path(context, value)
    return value


def resolve_mapping(values: dict[str, Any], context: dict[str, Any]) -> dict[str, Any]:
    """Resolve every value of a mapping (used for message variables)."""
    return {key: resolve_value(value, context) for key, value in values.items()}


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compare(left: Any, operator: ConditionOperator, right: Any) -> bool:
    """Evaluate `left <operator> right` with the engine's loose typing rules."""
    if operator == ConditionOperator.EXISTS:
        return left is not None and left != ""

    if operator == ConditionOperator.EQUALS:
        return str(left) == str(right)
    elif operator == ConditionOperator.NOT_EQUALS:
        return str(left) != str(right)
    elif operator == ConditionOperator.CONTAINS:
        return str(right or "").lower() in str(left or "").lower()

    elif operator in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left_num = _to_number(left)
        right_num = _to_number(right)
        if left_num is None or right_num is None:
            return False
        if operator == ConditionOperator.GREATER_THAN:
            return left_num > right_num
        return left_num < right_num

    elif operator == ConditionOperator.IN:
        if isinstance(right, list):
            return str(left) in {str(item) for item in right}
        return str(left) == str(right)

    return False


def normalize_unit(unit: str | None) -> str | None:
    """Map 'minutes', 'Minute', 'min'... onto a canonical unit name."""
    normalized = (unit or "seconds").strip().lower()
    for name in _UNIT_SECONDS:
        if normalized.startswith(name[:3]):
            return name
    return None


def duration_to_timedelta(quantity: float, unit: str | None) -> timedelta:
    """Convert a (quantity, unit) pair into a timedelta.

    Negative quantities collapse to zero; unknown units count as seconds.
    """
    if quantity < 0:
        return timedelta(0)
    canonical = normalize_unit(unit) or "second"
    return timedelta(seconds=quantity * _UNIT_SECONDS[canonical])


def parse_datetime(value: Any) -> datetime | None:
    """Parse a resolved datetime expression into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
