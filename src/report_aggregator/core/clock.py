"""Time sources.

Arrival time is the fallback bucket instant for events with no usable
timestamp, so the pipeline reads it from an injected clock rather than
the system time.  Every value handed out is timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC view of *value*; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IClock(Protocol):
    def now(self) -> datetime: ...


class WallClock:
    """System time (production)."""

    def now(self) -> datetime:
        return utc_now()


class SimClock:
    """Manually driven clock for tests and replays.

    Starts at *start* (default 2024-01-01 UTC) and only moves forward.
    """

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._time = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._time

    def set_time(self, t: datetime) -> None:
        if t < self._time:
            raise ValueError(f"SimClock cannot go backwards: {t} < {self._time}")
        self._time = t.astimezone(timezone.utc)

    def advance(self, **kwargs: float) -> None:
        """Move forward by ``timedelta(**kwargs)``, e.g. ``advance(minutes=5)``."""
        self.set_time(self._time + timedelta(**kwargs))
