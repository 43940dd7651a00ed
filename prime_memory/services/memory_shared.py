"""
Shared helpers and configuration for memory services.
"""

from __future__ import annotations

import hashlib
import threading
from contextlib import contextmanager
from functools import wraps
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import prime_memory.config as config
from prime_memory.errors import NotFoundIssue, ValidationIssue
from prime_memory.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_choice as _validate_choice,
    validate_string_list as _validate_string_list,
    validate_metadata as _validate_metadata,
    validate_attribute_bag as _validate_attribute_bag,
    validate_unit_interval as _validate_unit_interval,
    parse_date as _parse_date,
    parse_datetime as _parse_datetime,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_QUERY_LENGTH = config.MAX_QUERY_LENGTH
MAX_TEXT_LENGTH = config.MAX_TEXT_LENGTH
MAX_SHORT_TEXT_LENGTH = config.MAX_SHORT_TEXT_LENGTH
MAX_LIST_ITEMS = config.MAX_LIST_ITEMS
MAX_LIST_ITEM_LENGTH = config.MAX_LIST_ITEM_LENGTH

__all__ = [
    "_validate_required_text",
    "_validate_optional_text",
    "_validate_limit",
    "_validate_choice",
    "_validate_string_list",
    "_validate_metadata",
    "_validate_attribute_bag",
    "_validate_unit_interval",
    "_parse_date",
    "_parse_datetime",
    "identity_lock",
    "find_or_create",
    "ok_result",
    "service_tool",
    "logger",
]

T = TypeVar("T")


# =============================================================================
# Tool results
# =============================================================================

def ok_result(message: str, **data) -> dict:
    return {
        "success": True,
        "status": "ok",
        "message": message,
        "data": data,
    }


def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "success": False,
        "status": "error",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _not_found_payload(tool_name: str, exc: NotFoundIssue) -> dict:
    return {
        "success": False,
        "status": "error",
        "error_type": "not_found",
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _internal_error_payload(tool_name: str) -> dict:
    return {
        "success": False,
        "status": "error",
        "error_type": "internal_error",
        "tool": tool_name,
        "message": f"{tool_name} failed",
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except NotFoundIssue as exc:
            logger.info("tool_not_found", extra={"tool": fn.__name__, "field": exc.field})
            return _not_found_payload(fn.__name__, exc)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
        except (SQLAlchemyError, Exception):
            logger.exception("tool_internal_error", extra={"tool": fn.__name__})
            return _internal_error_payload(fn.__name__)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


# =============================================================================
# Atomic find-or-create
# =============================================================================

_LOCK_STRIPES = 64
_IDENTITY_LOCKS = [threading.Lock() for _ in range(_LOCK_STRIPES)]


def _identity_key(parts: tuple) -> int:
    raw = "|".join(str(part).strip().lower() for part in parts)
    # 60 bits: fits a signed bigint for pg_advisory_xact_lock
    return int(hashlib.sha256(raw.encode("utf-8")).hexdigest()[:15], 16)


@contextmanager
def identity_lock(db, *parts) -> Iterator[None]:
    """
    Serialize a read-then-write sequence on one identity key.

    Threads in this process share a striped lock; on postgres the transaction
    also takes an advisory lock that is released at commit or rollback.
    """
    key = _identity_key(parts)
    with _IDENTITY_LOCKS[key % _LOCK_STRIPES]:
        bind = db.get_bind()
        if bind is not None and bind.dialect.name == "postgresql":
            db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
        yield


def find_or_create(db, lock_parts: tuple, operation: Callable[[], T], label: str) -> T:
    """
    Run ``operation`` under the identity lock and commit it.

    A unique-constraint race (another process won the insert) is rolled back
    and the operation re-run once, which then resolves to the winner's row.
    """
    for attempt in range(2):
        try:
            with identity_lock(db, *lock_parts):
                result = operation()
                db.commit()
            return result
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            logger.info("find_or_create_retry", extra={"operation": label})
    raise RuntimeError("unreachable")


def normalize_names(values: Optional[list[str]]) -> list[str]:
    """Strip, drop blanks and de-duplicate case-insensitively, keeping order."""
    seen: set[str] = set()
    names: list[str] = []
    for value in values or []:
        cleaned = (value or "").strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            names.append(cleaned)
    return names
