"""
Utility functions for the workflow engine.

Includes:
- UTC datetime helpers
- JSON column helpers and secret masking
- Pagination helpers
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional

from core.constants import REDACTED


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to a naive datetime (SQLite drops the offset on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def json_safe(value: Any) -> Any:
    """Round-trip through JSON so arbitrary handler output fits a JSON column."""
    return json.loads(json.dumps(value, default=str))


def mask_secrets(value: Any, secrets: list[str]) -> Any:
    """Replace every occurrence of a secret string inside ``value`` with ``[REDACTED]``.

    Walks dicts and lists; only string leaves are rewritten.
    """
    if not secrets:
        return value
    if isinstance(value, str):
        for secret in sorted(secrets, key=len, reverse=True):
            value = value.replace(secret, REDACTED)
        return value
    if isinstance(value, dict):
        return {k: mask_secrets(v, secrets) for k, v in value.items()}
    if isinstance(value, list):
        return [mask_secrets(v, secrets) for v in value]
    return value


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """
    Calculate database offset from page and per_page values.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page

    Returns:
        Offset for database queries
    """
    return (page - 1) * per_page
