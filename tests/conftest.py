from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from timebox.events import EventBus
from timebox.reminders import InMemoryJobQueue, ReminderScheduler, ReminderWorker
from timebox.service import TaskService
from timebox.store import InMemoryTaskStore

# a Monday
T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current += timedelta(seconds=seconds)
        return self.current


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, notification):
        self.sent.append((user_id, notification))
        return 1

    def kinds(self):
        return [n.kind for _, n in self.sent]


@dataclass
class Harness:
    clock: FakeClock
    store: InMemoryTaskStore
    queue: InMemoryJobQueue
    scheduler: ReminderScheduler
    bus: EventBus
    service: TaskService
    notifier: RecordingNotifier
    worker: ReminderWorker


def build_harness(clock=None, queue=None) -> Harness:
    clock = clock or FakeClock()
    store = InMemoryTaskStore()
    queue = queue or InMemoryJobQueue()
    scheduler = ReminderScheduler(queue, clock)
    bus = EventBus()
    bus.subscribe(scheduler.on_task_event)
    notifier = RecordingNotifier()
    service = TaskService(store, bus, scheduler, clock)
    worker = ReminderWorker(queue, store, notifier, clock)
    return Harness(clock, store, queue, scheduler, bus, service, notifier, worker)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def h() -> Harness:
    return build_harness()
