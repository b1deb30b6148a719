"""Fan-out of reminder notifications to a user's live channels.

Delivery is fire-and-forget: each transport gets one bounded attempt, and a
failure is logged and forgotten. Transports own their own retry policy.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Protocol

from fastapi import WebSocket

from .config import DELIVERY_TIMEOUT_SECONDS
from .events import TaskEvent
from .models import Notification

logger = logging.getLogger(__name__)


class Transport(Protocol):
    name: str

    async def send(self, user_id: str, payload: dict) -> None: ...


class NotificationDispatcher:
    def __init__(self, transports: list[Transport], timeout: float = DELIVERY_TIMEOUT_SECONDS):
        self.transports = transports
        self.timeout = timeout

    async def _deliver(self, transport: Transport, user_id: str, payload: dict) -> bool:
        try:
            await asyncio.wait_for(transport.send(user_id, payload), timeout=self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"{transport.name} delivery to user {user_id} timed out")
        except Exception as e:
            logger.warning(f"{transport.name} delivery to user {user_id} failed: {e}")
        return False

    async def notify(self, user_id: str, notification: Notification) -> int:
        payload = notification.model_dump(mode="json")
        results = await asyncio.gather(*(self._deliver(t, user_id, payload) for t in self.transports))
        return sum(results)


class WebSocketHub:
    """Live socket channels, grouped per user."""

    name = "websocket"

    def __init__(self):
        self.connections: dict[str, set[WebSocket]] = defaultdict(set)

    def connect(self, user_id: str, ws: WebSocket) -> None:
        self.connections[user_id].add(ws)

    def disconnect(self, user_id: str, ws: WebSocket) -> None:
        sockets = self.connections.get(user_id)
        if sockets is None:
            return
        sockets.discard(ws)
        if not sockets:
            del self.connections[user_id]

    async def emit(self, user_id: str, event: str, data: dict) -> int:
        sent = 0
        for ws in list(self.connections.get(user_id, ())):
            try:
                await ws.send_json({"event": event, "data": data})
                sent += 1
            except Exception as e:
                logger.info(f"Dropping dead socket for user {user_id}: {e}")
                self.disconnect(user_id, ws)
        return sent

    async def send(self, user_id: str, payload: dict) -> None:
        await self.emit(user_id, "task:reminder", payload)

    async def on_task_event(self, event: TaskEvent) -> None:
        task = event.task
        if event.action == "deleted":
            await self.emit(task.user_id, "task:deleted", {"id": task.id})
        else:
            await self.emit(task.user_id, f"task:{event.action}", task.model_dump(mode="json"))
