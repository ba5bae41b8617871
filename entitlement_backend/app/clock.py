"""Substitutable time sources for lifecycle computations."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Optional

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Return the current wall-clock time in UTC."""

    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""

    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class FrozenClock:
    """Controllable clock suitable for tests and replaying sweeps."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = ensure_aware(start) if start else system_clock()
        self._lock = Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = ensure_aware(when)

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._now = self._now + delta
            return self._now


__all__ = ["Clock", "FrozenClock", "ensure_aware", "system_clock"]
