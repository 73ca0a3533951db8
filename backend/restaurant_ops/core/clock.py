"""Time sources for expiry decisions.

Services never call ``datetime.now()`` directly; they ask an injected clock so
expiry can be exercised deterministically in tests.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime.

    Naive values are assumed to already be UTC (SQLite drops tzinfo).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    """Process-wide time source."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start or datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, **kwargs) -> datetime:
        """Move forward by ``timedelta(**kwargs)`` and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now


system_clock = SystemClock()
