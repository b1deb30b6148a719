"""In-process task event stream.

Subscribers run after the write is committed. A failing subscriber is logged
and never undoes the transition that produced the event.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .models import TaskDB

logger = logging.getLogger(__name__)


@dataclass
class TaskEvent:
    # created | paused | resumed | snoozed | completed | given_up | updated | deleted
    action: str
    task: TaskDB


Subscriber = Callable[[TaskEvent], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    async def publish(self, event: TaskEvent) -> None:
        for handler in self._subscribers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Task event subscriber failed on {event.action} for task {event.task.id}: {e}")
