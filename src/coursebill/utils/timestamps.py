"""Timestamp helpers.

Ledger timestamps are timezone-aware UTC. SQLite hands DateTime(timezone=True)
columns back naive, so comparisons go through as_utc().
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix(value: Optional[Union[int, float]]) -> Optional[datetime]:
    """Convert a provider unix timestamp (seconds) to an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)
