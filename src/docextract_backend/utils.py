"""
Small helpers shared by the store, the job manager and the processor.

This module provides helper functions for:
- Producing timezone-aware UTC timestamps and their ISO-8601 text form
- Computing the "today" boundary used by queue statistics
- Ensuring directory creation for the SQLite database file
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def start_of_today(now: Optional[datetime] = None) -> datetime:
    """
    Midnight (UTC) of the current day.

    Args:
        now: Reference time; defaults to the current UTC time

    Returns:
        Aware datetime truncated to 00:00:00 UTC

    Example:
        >>> start_of_today(datetime(2025, 9, 16, 14, 30, tzinfo=timezone.utc))
        datetime.datetime(2025, 9, 16, 0, 0, tzinfo=datetime.timezone.utc)
    """
    now = now or utcnow()
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Serialize a datetime to the ISO text stored in the database.

    Naive datetimes are assumed to be UTC so that every stored value carries
    the same offset and compares correctly as text.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO text back into an aware datetime."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
