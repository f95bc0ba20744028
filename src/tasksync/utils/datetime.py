"""Datetime utilities with consistent UTC timezone handling.

This module provides centralized datetime functions to ensure all datetime
operations in tasksync are timezone-aware and use UTC consistently. Timestamps
are persisted as fixed-width ISO strings so that lexical order in sqlite
matches chronological order.
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Optional


def now_utc() -> datetime:
    """Return current datetime in UTC timezone.

    Returns:
        Current datetime with timezone=UTC
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to a fixed-width ISO string in UTC.

    Args:
        dt: Datetime to convert, or None

    Returns:
        ISO format string with microseconds and offset, or None
    """
    if dt is None:
        return None

    return ensure_aware(dt).isoformat(timespec="microseconds")


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a timestamp coming from storage or from the wire.

    Accepts datetimes, ISO 8601 strings (including a trailing ``Z``) and
    sqlite's ``YYYY-MM-DD HH:MM:SS`` form. Naive values are treated as UTC.

    Args:
        value: Raw value to parse

    Returns:
        Timezone-aware datetime, or None if the value is empty or unparseable
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return ensure_aware(value)

    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    try:
        return ensure_aware(datetime.fromisoformat(text))
    except ValueError:
        return None


def next_after(previous: Optional[datetime]) -> datetime:
    """Return the current time, bumped past ``previous`` if the clock lags.

    Used for ``updated_at`` stamps that must strictly increase per row even
    when two mutations land within the clock's resolution.
    """
    current = now_utc()
    previous = ensure_aware(previous)
    if previous is not None and current <= previous:
        return previous + timedelta(microseconds=1)
    return current
