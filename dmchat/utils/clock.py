import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision; BSON dates only keep milliseconds."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_ms(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


def from_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


class MonotonicClock:
    """
    Wall-clock timestamps at millisecond precision that never go backwards.

    Two calls inside the same millisecond return the same value; ordering
    ties are then broken by message id.
    """

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        current = truncate_ms(utcnow())
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current

    def advance_past(self, value: datetime) -> None:
        """Never hand out anything earlier than ``value`` (e.g. newest row found at startup)."""
        value = truncate_ms(as_utc(value))
        with self._lock:
            if self._last is None or value > self._last:
                self._last = value


def seconds_ago(seconds: float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(seconds=seconds)


def to_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC, the form BSON dates are written and compared in."""
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)
