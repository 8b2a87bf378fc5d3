"""Time source for the service layer.

Timestamps are naive UTC so they compare cleanly with values read back from
SQLite.
"""

from datetime import datetime, timezone
from typing import Optional


class Clock:
    """Wall clock. Tests substitute a controllable subclass."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


system_clock = Clock()


def utcnow() -> datetime:
    return system_clock.now()


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
