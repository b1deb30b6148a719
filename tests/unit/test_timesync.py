import asyncio

import httpx
import pytest

from timebox.clock import from_ms
from timebox.client.timesync import Countdown, TimeSync

pytestmark = pytest.mark.anyio

SERVER_MS = 1_772_442_000_000


class Wall:
    def __init__(self, ms):
        self.ms = ms

    def __call__(self):
        return self.ms


def monotonic(*readings):
    values = iter(readings)
    return lambda: next(values)


def server(timestamp=SERVER_MS, status=200):
    def handler(request):
        return httpx.Response(status, json={"server_now": from_ms(timestamp).isoformat(), "timestamp": timestamp})
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://timebox.test")


class TestTimeSync:

    async def test_offset_accounts_for_half_the_round_trip(self):
        # local clock runs 400ms ahead of the server
        wall = Wall(SERVER_MS + 500)
        sync = TimeSync(server(), wall=wall, monotonic=monotonic(1000.0, 1200.0))

        state = await sync.sync()

        assert state.rtt_ms == 200
        assert state.offset_ms == 400
        assert sync.adjusted_now_ms() == SERVER_MS + 100
        assert sync.is_accurate()
        assert sync.confidence() == "accurate"

    async def test_remaining_time_matches_server_countdown(self):
        wall = Wall(SERVER_MS + 500)
        sync = TimeSync(server(), wall=wall, monotonic=monotonic(0.0, 200.0))
        await sync.sync()

        ends_at = from_ms(SERVER_MS + 100 + 60_000)
        assert sync.remaining_seconds(ends_at) == 60

        wall.ms += 30_000
        assert sync.remaining_seconds(ends_at) == 30
        wall.ms += 60_000
        assert sync.remaining_seconds(ends_at) == 0

    async def test_unsynced_client_uses_local_clock(self):
        wall = Wall(SERVER_MS)
        sync = TimeSync(server(), wall=wall)

        assert sync.adjusted_now_ms() == SERVER_MS
        assert sync.confidence() == "unsynced"
        assert not sync.is_accurate()

    async def test_slow_round_trip_is_discarded(self):
        wall = Wall(SERVER_MS + 9000)
        sync = TimeSync(server(), wall=wall, monotonic=monotonic(0.0, 6000.0))

        assert await sync.sync() is None
        assert sync.state.offset_ms == 0
        assert sync.confidence() == "unsynced"

    async def test_old_sync_is_degraded(self):
        wall = Wall(SERVER_MS)
        sync = TimeSync(server(), wall=wall, monotonic=monotonic(0.0, 50.0))
        await sync.sync()

        wall.ms += 6 * 60 * 1000

        assert sync.confidence() == "degraded"

    async def test_server_error_keeps_previous_offset(self):
        wall = Wall(SERVER_MS + 1000)
        sync = TimeSync(server(), wall=wall, monotonic=monotonic(0.0, 0.0, 0.0, 0.0))
        await sync.sync()
        sync.http = server(status=503)

        assert await sync.sync() is None
        assert sync.state.offset_ms == 1000

    async def test_overlapping_syncs_are_ignored(self):
        release = asyncio.Event()
        requests = []

        async def handler(request):
            requests.append(request)
            await release.wait()
            return httpx.Response(200, json={"server_now": "", "timestamp": SERVER_MS})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://timebox.test")
        sync = TimeSync(client, wall=Wall(SERVER_MS), monotonic=monotonic(0.0, 10.0))

        first = asyncio.ensure_future(sync.sync())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert await sync.on_visible() is None
        release.set()

        assert (await first).rtt_ms == 10
        assert len(requests) == 1


class TestCountdown:

    async def test_time_up_fires_once(self):
        wall = Wall(SERVER_MS)
        sync = TimeSync(server(), wall=wall)
        fired = []
        ticks = []
        countdown = Countdown(sync, from_ms(SERVER_MS + 2000), original_duration=60,
                              on_tick=ticks.append, on_time_up=lambda: fired.append(True))

        assert await countdown.tick() == 2
        wall.ms += 2000
        assert await countdown.tick() == 0
        wall.ms += 1000
        await countdown.tick()

        assert fired == [True]
        assert ticks == [2, 0, 0]
        assert countdown.progress() == 100.0

    async def test_paused_or_finished_task_shows_zero(self):
        sync = TimeSync(server(), wall=Wall(SERVER_MS))
        ends_at = from_ms(SERVER_MS + 600_000)

        paused = Countdown(sync, ends_at, 600, paused_at=from_ms(SERVER_MS))
        done = Countdown(sync, ends_at, 600, status="completed")

        assert await paused.tick() == 0
        assert await done.tick() == 0

    async def test_progress(self):
        sync = TimeSync(server(), wall=Wall(SERVER_MS))

        countdown = Countdown(sync, from_ms(SERVER_MS + 45_000), original_duration=60)

        assert countdown.progress() == 25.0
