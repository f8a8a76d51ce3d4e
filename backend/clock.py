"""Injectable clock abstraction.

Everything that depends on wall-clock time (session timestamps, heartbeats,
the stale-conversation reaper, stuck-session recovery) takes a ``Clock`` so
tests can move time deterministically.

Usage:
    >>> from clock import FrozenClock
    >>> clock = FrozenClock(datetime(2026, 1, 1, tzinfo=UTC))
    >>> clock.advance(timedelta(minutes=6))
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Source of the current time (always timezone-aware UTC)."""

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the real system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class FrozenClock:
    """Clock that only moves when told to.

    Attributes:
        current: The instant returned by ``now()``.
    """

    def __init__(self, current: datetime | None = None) -> None:
        self.current = current or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value

    def advance(self, delta: timedelta) -> datetime:
        self.current = self.current + delta
        return self.current


def to_storage(value: datetime) -> str:
    """Serialize a timestamp for the database (ISO-8601, UTC)."""
    # Fixed precision keeps stored values lexicographically ordered.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_storage(value: str | None) -> datetime | None:
    """Parse a stored timestamp back into an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
