"""Time helpers.

All timestamps handled by replisync are naive datetimes expressed in UTC,
so ISO strings compare lexicographically in chronological order.
"""

from __future__ import annotations

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def parse_timestamp(raw: str | None) -> datetime | None:
    """Parse an ISO timestamp into naive UTC, returning None for empty input."""
    if not raw:
        return None
    return to_naive_utc(datetime.fromisoformat(raw))
