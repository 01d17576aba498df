"""Timestamp helpers."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch(seconds: int | None) -> datetime | None:
    """Convert a provider epoch timestamp (seconds) to an aware datetime.

    Returns None when the value is missing or outside the platform's range.
    """
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None
