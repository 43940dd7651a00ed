"""
Shared validation helpers for memory services.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Iterable, Optional, Sequence

from prime_memory.config import MAX_METADATA_BYTES
from prime_memory.errors import ValidationIssue

_SCALAR_TYPES = (str, int, float, bool, type(None))


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_unit_interval(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if value < 0.0 or value > 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_choice(value: str, field: str, choices: Iterable[str]) -> str:
    normalized = (value or "").strip().lower()
    allowed = sorted(choices)
    if normalized not in allowed:
        raise ValidationIssue(
            f"{field} must be one of: {', '.join(allowed)}",
            field=field,
            error_type="invalid_value",
        )
    return normalized


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int,
    max_item_length: int,
) -> None:
    if values is None:
        return
    if isinstance(values, str) or not isinstance(values, (list, tuple)):
        raise ValidationIssue(f"{field} must be a list of strings", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str):
            raise ValidationIssue(f"{field} must contain only strings", field=field, error_type="invalid_type")
        if len(item) > max_item_length:
            raise ValidationIssue(
                f"{field} item exceeds max length {max_item_length}",
                field=field,
                error_type="max_length",
            )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_attribute_bag(attributes: Optional[dict], field: str = "attributes") -> None:
    """Attribute bags map string keys to scalars or nested bags of the same shape."""
    if attributes is None:
        return
    validate_metadata(attributes, field)

    def _check(bag: dict, path: str) -> None:
        for key, value in bag.items():
            if not isinstance(key, str) or not key.strip():
                raise ValidationIssue(
                    f"{path} keys must be non-empty strings",
                    field=field,
                    error_type="invalid_key",
                )
            if isinstance(value, dict):
                _check(value, f"{path}.{key}")
            elif not isinstance(value, _SCALAR_TYPES):
                raise ValidationIssue(
                    f"{path}.{key} must be a string, number, boolean, null or object",
                    field=field,
                    error_type="invalid_type",
                )

    _check(attributes, field)


def parse_date(value: Optional[object], field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a YYYY-MM-DD string", field=field, error_type="invalid_type")
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as exc:
        raise ValidationIssue(f"{field} must be a YYYY-MM-DD date", field=field, error_type="invalid_date") from exc


def parse_datetime(value: Optional[object], field: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationIssue(
                f"{field} must be an ISO-8601 timestamp",
                field=field,
                error_type="invalid_datetime",
            ) from exc
    else:
        raise ValidationIssue(f"{field} must be an ISO-8601 string", field=field, error_type="invalid_type")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
