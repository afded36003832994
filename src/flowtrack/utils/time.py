"""Time utilities."""

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Optional


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MonotonicClock:
    """
    UTC clock that never goes backwards and never repeats an instant.

    If the wall clock stalls or steps back, the next reading is the previous
    one plus one microsecond.
    """

    def __init__(self, source: Optional[Callable[[], datetime]] = None):
        self._source = source or utc_now
        self._last: Optional[datetime] = None
        self._lock = Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = ensure_utc(self._source())
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


event_clock = MonotonicClock()
