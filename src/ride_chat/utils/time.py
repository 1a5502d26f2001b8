# src/ride_chat/utils/time.py
"""Time utilities for chat messages."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes from the store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def epoch_millis(value: datetime | None = None) -> int:
    """Return milliseconds since the epoch for ``value`` (default: now)."""
    return int((value or utcnow()).timestamp() * 1000)
