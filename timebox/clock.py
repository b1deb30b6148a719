"""Server-side time authority. All deadline math is anchored to a Clock."""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def elapsed_seconds(start: datetime, end: datetime) -> int:
    """Whole seconds from start to end, floored (negative if end is earlier)."""
    return (to_ms(end) - to_ms(start)) // 1000


def add_seconds(dt: datetime, seconds: float) -> datetime:
    return dt + timedelta(seconds=seconds)


def server_time(clock: Clock) -> dict:
    now = clock.now()
    return {"server_now": now.isoformat(), "timestamp": to_ms(now)}
