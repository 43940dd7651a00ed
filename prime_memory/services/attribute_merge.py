"""
Non-destructive merge of independently observed entity records.

A merged value never carries less information than the existing record alone:
an existing value is replaced only when the comparator judges the incoming one
strictly more specific, and keys are never dropped.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol


class IsMoreSpecific(Protocol):
    def __call__(self, old: Any, new: Any) -> bool:
        ...


class LengthSpecificity:
    """Treats the longer textual rendering of a value as the more specific one."""

    def __call__(self, old: Any, new: Any) -> bool:
        if new is None:
            return False
        if old is None:
            return True
        return len(str(new).strip()) > len(str(old).strip())


default_comparator = LengthSpecificity()


def merge_value(old: Any, new: Any, comparator: IsMoreSpecific = default_comparator) -> Any:
    if isinstance(old, dict) and isinstance(new, dict):
        return merge_attribute_bags(old, new, comparator)
    if old is None or (isinstance(old, str) and not old.strip()):
        return new if new is not None else old
    if comparator(old, new):
        return new
    return old


def merge_attribute_bags(
    existing: Optional[dict],
    incoming: Optional[dict],
    comparator: IsMoreSpecific = default_comparator,
) -> dict:
    """Key-by-key union; the existing bag wins ties and nested bags are merged recursively."""
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if key not in merged:
            merged[key] = value
        else:
            merged[key] = merge_value(merged[key], value, comparator)
    return merged


def merge_fields(
    existing: dict,
    incoming: dict,
    comparator: IsMoreSpecific = default_comparator,
) -> dict:
    """Return only the fields whose merged value differs from the existing one."""
    changes = {}
    for field, value in incoming.items():
        if value is None:
            continue
        current = existing.get(field)
        merged = merge_value(current, value, comparator)
        if merged != current:
            changes[field] = merged
    return changes
