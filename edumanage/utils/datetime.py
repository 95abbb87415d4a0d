# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for the EduManage build backend.

All timestamps are timezone-aware UTC. Records loaded from databases that
drop tzinfo (SQLite in tests) are normalised with ensure_utc().

Usage:
    from edumanage.utils.datetime import utc_now

    now = utc_now()
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.

    Note:
        - If dt is None, returns None
        - If dt is naive, assumes UTC and adds tzinfo
        - If dt is aware, converts to UTC
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def days_from(start: datetime, days: int) -> datetime:
    """Get a datetime N days after start.

    Args:
        start: Reference datetime.
        days: Number of days to add.

    Returns:
        Timezone-aware UTC datetime.
    """
    return ensure_utc(start) + timedelta(days=days)


def is_expired(expiry: datetime | None, now: datetime | None = None) -> bool:
    """Check if a datetime has passed.

    A missing expiry never expires, matching builds created before
    expiry tracking existed.

    Args:
        expiry: The expiry datetime to check.
        now: Reference time, defaults to the current time.

    Returns:
        True if expiry is set and in the past.
    """
    if expiry is None:
        return False

    reference = ensure_utc(now) if now is not None else utc_now()
    return reference > ensure_utc(expiry)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Milliseconds between two datetimes.

    Args:
        start: Start of the interval.
        end: End of the interval.

    Returns:
        Whole milliseconds, never negative.
    """
    delta = ensure_utc(end) - ensure_utc(start)
    return max(int(delta.total_seconds() * 1000), 0)


def format_iso(dt: datetime | None) -> str | None:
    """Format a datetime as ISO 8601 string.

    Args:
        dt: Datetime to format.

    Returns:
        ISO 8601 formatted string or None.
    """
    if dt is None:
        return None

    return ensure_utc(dt).isoformat()


def parse_iso(iso_string: str | None) -> datetime | None:
    """Parse an ISO 8601 datetime string.

    Args:
        iso_string: ISO 8601 formatted string.

    Returns:
        Timezone-aware UTC datetime or None.
    """
    if iso_string is None:
        return None

    dt = datetime.fromisoformat(iso_string.replace("Z", "+00:00"))
    return ensure_utc(dt)
