"""
Datetime utility functions.
"""

from datetime import datetime
from typing import Optional
import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to a naive datetime (SQLite returns stored values without tzinfo).

    Args:
        value: Datetime or None

    Returns:
        Timezone-aware datetime, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def is_expired(expires_at: Optional[datetime]) -> bool:
    """Return True if ``expires_at`` is set and already in the past."""
    if expires_at is None:
        return False
    return ensure_utc(expires_at) <= utcnow()
