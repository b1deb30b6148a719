"""Client-side countdown against the server clock.

``TimeSync`` estimates how far the local clock is off from the server's
``GET /time`` and ``Countdown`` ticks locally once a second using that
offset. Only the offset comes from the network; the tick never does.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Literal, Optional

import httpx

from ..clock import to_ms

logger = logging.getLogger(__name__)

MAX_SYNC_AGE_MS = 5 * 60 * 1000
MAX_RTT_MS = 5000
DEFAULT_SYNC_INTERVAL = 5 * 60

Confidence = Literal["accurate", "degraded", "unsynced"]


def wall_ms() -> float:
    return time.time() * 1000


def monotonic_ms() -> float:
    return time.perf_counter() * 1000


@dataclass
class SyncState:
    offset_ms: float = 0.0
    rtt_ms: float = 0.0
    last_sync_ms: Optional[float] = None


class TimeSync:
    def __init__(self, http: httpx.AsyncClient, path: str = "/time",
                 wall: Callable[[], float] = wall_ms, monotonic: Callable[[], float] = monotonic_ms):
        self.http = http
        self.path = path
        self.wall = wall
        self.monotonic = monotonic
        self.state = SyncState()
        self._in_flight = False

    async def sync(self) -> Optional[SyncState]:
        """Measure the offset once. Returns None if skipped, failed or discarded."""
        if self._in_flight:
            return None
        self._in_flight = True
        try:
            start = self.monotonic()
            response = await self.http.get(self.path)
            end = self.monotonic()
            response.raise_for_status()
            server_ms = response.json()["timestamp"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.warning(f"Time sync failed: {e}")
            return None
        finally:
            self._in_flight = False

        rtt = end - start
        received_at = self.wall()
        if rtt >= MAX_RTT_MS:
            logger.warning(f"Discarding time sync with rtt={rtt:.0f}ms")
            return None

        offset = received_at - (server_ms + rtt / 2)
        self.state = SyncState(offset_ms=offset, rtt_ms=rtt, last_sync_ms=received_at)
        logger.debug(f"Time sync: offset={offset:.0f}ms, accuracy={rtt:.0f}ms")
        return self.state

    def adjusted_now_ms(self) -> float:
        return self.wall() - self.state.offset_ms

    def remaining_seconds(self, ends_at: datetime) -> int:
        return max(0, int((to_ms(ends_at) - self.adjusted_now_ms()) // 1000))

    def is_accurate(self) -> bool:
        if self.state.last_sync_ms is None:
            return False
        age = self.wall() - self.state.last_sync_ms
        return age < MAX_SYNC_AGE_MS and self.state.rtt_ms < MAX_RTT_MS

    def confidence(self) -> Confidence:
        if self.state.last_sync_ms is None:
            return "unsynced"
        return "accurate" if self.is_accurate() else "degraded"

    async def on_visible(self) -> Optional[SyncState]:
        # coming back from sleep: the old offset may be far off
        return await self.sync()

    async def run(self, interval: float = DEFAULT_SYNC_INTERVAL) -> None:
        while True:
            await self.sync()
            await asyncio.sleep(interval)


class Countdown:
    """Live remaining time for one task."""

    def __init__(self, sync: TimeSync, ends_at: datetime, original_duration: int, status: str = "ongoing",
                 paused_at: Optional[datetime] = None,
                 on_tick: Optional[Callable[[int], None]] = None,
                 on_time_up: Optional[Callable[[], Awaitable[None] | None]] = None):
        self.sync = sync
        self.ends_at = ends_at
        self.original_duration = original_duration
        self.status = status
        self.paused_at = paused_at
        self.on_tick = on_tick
        self.on_time_up = on_time_up
        self.remaining = self._compute()
        self._overdue = self.remaining <= 0

    def _compute(self) -> int:
        if self.status != "ongoing" or self.paused_at is not None:
            return 0
        return self.sync.remaining_seconds(self.ends_at)

    def progress(self) -> float:
        if self.original_duration <= 0:
            return 100.0
        elapsed = self.original_duration - self.remaining
        return min(100.0, max(0.0, elapsed / self.original_duration * 100))

    async def tick(self) -> int:
        self.remaining = self._compute()
        if self.on_tick:
            self.on_tick(self.remaining)
        live = self.status == "ongoing" and self.paused_at is None
        if live and self.remaining <= 0 and not self._overdue:
            self._overdue = True
            if self.on_time_up:
                result = self.on_time_up()
                if asyncio.iscoroutine(result):
                    await result
        return self.remaining

    async def run(self) -> None:
        while self.status == "ongoing" and self.paused_at is None:
            await self.tick()
            await asyncio.sleep(1)
