"""Helpers for reading nested API objects."""

from __future__ import annotations

from typing import Any


def dig(data: Any, *path: str | int, default: Any = None) -> Any:
    """Walk *path* through nested dicts and lists, returning *default* on a miss."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or not -len(current) <= key < len(current):
                return default
            current = current[key]
        else:
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
    return default if current is None else current


def as_int(value: Any, default: int = 0) -> int:
    """Coerce *value* to int the way kubectl JSON numbers and strings mix."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        digits = ""
        for ch in str(value).strip():
            if not ch.isdigit():
                break
            digits += ch
        return int(digits) if digits else default


def find_condition(data: dict[str, Any], condition_type: str) -> dict[str, Any] | None:
    """Return the ``status.conditions`` entry of *condition_type*, if any."""
    for condition in dig(data, "status", "conditions", default=[]):
        if isinstance(condition, dict) and condition.get("type") == condition_type:
            return condition
    return None
