"""Naive-UTC time helpers.

Run record timestamps are stored as naive UTC, so every value compared
against `started_at` goes through these helpers.
"""

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(UTC).replace(tzinfo=None)


def get_cutoff(minutes: float = 0, hours: float = 0, days: float = 0) -> datetime:
    """The instant that far in the past, for `started_at < cutoff` filters."""
    return utc_now() - timedelta(days=days, hours=hours, minutes=minutes)


def to_naive_utc(dt: datetime) -> datetime:
    """Normalise a caller-supplied datetime. Naive values are taken as UTC."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC).replace(tzinfo=None)
    return dt
