"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Iterable, List, Optional

USER_LOOKUP_FIELDS = ("username", "email", "phone")

ROLE_UPDATABLE = frozenset(
    {"name", "code", "description", "status", "level", "is_system", "sort"}
)
PERMISSION_UPDATABLE = frozenset(
    {
        "name",
        "code",
        "description",
        "module",
        "action",
        "resource",
        "status",
        "level",
        "is_system",
        "sort",
        "parent_id",
        "path",
    }
)
MENU_UPDATABLE = frozenset(
    {
        "name",
        "title",
        "icon",
        "path",
        "component",
        "redirect",
        "type",
        "status",
        "hidden",
        "keep_alive",
        "affix",
        "sort",
        "parent_id",
        "menu_path",
        "external_link",
        "is_system",
        "description",
    }
)


def ensure_lookup_field(field: str) -> str:
    if field not in USER_LOOKUP_FIELDS:
        raise ValueError(f"unsupported user lookup field: {field}")
    return field


def filter_updates(updates: Dict[str, Any], allowed: FrozenSet[str]) -> Dict[str, Any]:
    """Reject keys that are not writable columns for the entity."""
    unknown = set(updates) - allowed
    if unknown:
        raise ValueError(f"unsupported fields: {', '.join(sorted(unknown))}")
    return dict(updates)


def dedupe_ids(ids: Optional[Iterable[int]]) -> List[int]:
    """Preserve first-seen order while removing duplicate ids."""
    seen: set[int] = set()
    result: List[int] = []
    for raw in ids or []:
        value = int(raw)
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating missing keys."""
    if row is None:
        return default
    try:
        value = row.get(key, default)
    except AttributeError:
        return default
    return default if value is None else value
