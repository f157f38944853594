"""
Common date/time utility functions for consistent date/time handling across the application

Storage: All dates are stored in UTC in the backend
Display: Dates are returned as UTC ISO strings; clients convert for display

Some databases (SQLite in tests) hand back naive datetimes even for
timezone-aware columns, so every comparison goes through as_utc().
"""

from datetime import datetime, timezone


def as_utc(dt: datetime) -> datetime:
    """
    Convert dt to tz-aware UTC.
    If dt is naive, we treat it as UTC.

    Args:
        dt: datetime object (naive or timezone-aware)

    Returns:
        datetime object in UTC timezone
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    """
    Get current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def parse_iso_string(iso_string: str) -> datetime:
    """
    Parse an ISO 8601 string to UTC datetime.
    Handles both with and without 'Z' suffix.

    Args:
        iso_string: ISO 8601 string (e.g., "2024-12-28T10:30:00.000Z" or "2024-12-28T10:30:00+00:00")

    Returns:
        datetime object in UTC timezone
    """
    if iso_string.endswith("Z"):
        iso_string = iso_string[:-1] + "+00:00"

    dt = datetime.fromisoformat(iso_string)
    return as_utc(dt)


def seconds_until(deadline: datetime, now: datetime | None = None) -> int:
    """
    Whole seconds left before deadline, never negative.
    """
    current = as_utc(now) if now is not None else utc_now()
    remaining = (as_utc(deadline) - current).total_seconds()
    return max(0, int(remaining))
