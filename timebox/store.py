"""Task storage.

Every lifecycle write is a compare-and-swap: it only lands if the stored task
still has the status and history length the caller read. History entries are
pushed in the same atomic update.
"""

import asyncio
from datetime import datetime
from typing import Iterable, Optional, Protocol

from pymongo import ReturnDocument

from .models import HistoryEntry, TaskDB


class TaskStore(Protocol):
    async def insert(self, task: TaskDB) -> TaskDB: ...

    async def get(self, task_id: str) -> Optional[TaskDB]: ...

    async def list_for_user(self, user_id: str, status: Optional[str] = None, project_id: Optional[str] = None,
                            tags: Optional[list[str]] = None, limit: int = 50, offset: int = 0) -> list[TaskDB]: ...

    async def created_since(self, user_id: str, since: datetime) -> list[TaskDB]: ...

    async def apply(self, task_id: str, expected_status: str, history_len: int, fields: dict,
                    entry: HistoryEntry) -> Optional[TaskDB]: ...

    async def update_fields(self, task_id: str, fields: dict, statuses: Iterable[str]) -> Optional[TaskDB]: ...

    async def delete(self, task_id: str) -> Optional[TaskDB]: ...

    async def increment_pomodoro(self, task_id: str, now: datetime) -> Optional[TaskDB]: ...


class MongoTaskStore:
    def __init__(self, col):
        self.col = col

    async def insert(self, task: TaskDB) -> TaskDB:
        await self.col.insert_one(task.model_dump())
        return task

    async def get(self, task_id: str) -> Optional[TaskDB]:
        doc = await self.col.find_one({"id": task_id})
        return TaskDB(**doc) if doc else None

    async def list_for_user(self, user_id, status=None, project_id=None, tags=None, limit=50, offset=0):
        q: dict = {"user_id": user_id}
        if status:
            q["status"] = status
        if project_id:
            q["project_id"] = project_id
        if tags:
            q["tags"] = {"$in": tags}
        cursor = self.col.find(q).sort("ends_at", 1).skip(offset).limit(limit)
        return [TaskDB(**doc) async for doc in cursor]

    async def created_since(self, user_id, since):
        cursor = self.col.find({"user_id": user_id, "created_at": {"$gte": since}})
        return [TaskDB(**doc) async for doc in cursor]

    async def apply(self, task_id, expected_status, history_len, fields, entry):
        doc = await self.col.find_one_and_update(
            {"id": task_id, "status": expected_status, "history": {"$size": history_len}},
            {"$set": fields, "$push": {"history": entry.model_dump()}},
            return_document=ReturnDocument.AFTER,
        )
        return TaskDB(**doc) if doc else None

    async def update_fields(self, task_id, fields, statuses):
        doc = await self.col.find_one_and_update(
            {"id": task_id, "status": {"$in": list(statuses)}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return TaskDB(**doc) if doc else None

    async def delete(self, task_id):
        doc = await self.col.find_one_and_delete({"id": task_id})
        return TaskDB(**doc) if doc else None

    async def increment_pomodoro(self, task_id, now):
        doc = await self.col.find_one_and_update(
            {"id": task_id, "status": "ongoing"},
            {"$inc": {"pomodoro_count": 1}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return TaskDB(**doc) if doc else None


class InMemoryTaskStore:
    """Single-process store with the same conditional-write semantics."""

    def __init__(self):
        self._tasks: dict[str, TaskDB] = {}
        self._lock = asyncio.Lock()

    async def insert(self, task):
        async with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get(self, task_id):
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_for_user(self, user_id, status=None, project_id=None, tags=None, limit=50, offset=0):
        found = [
            t for t in self._tasks.values()
            if t.user_id == user_id
            and (not status or t.status == status)
            and (not project_id or t.project_id == project_id)
            and (not tags or set(tags) & set(t.tags))
        ]
        found.sort(key=lambda t: t.ends_at)
        return [t.model_copy(deep=True) for t in found[offset:offset + limit]]

    async def created_since(self, user_id, since):
        found = [t for t in self._tasks.values() if t.user_id == user_id and t.created_at >= since]
        return [t.model_copy(deep=True) for t in found]

    async def apply(self, task_id, expected_status, history_len, fields, entry):
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != expected_status or len(task.history) != history_len:
                return None
            updated = task.model_copy(update=fields, deep=True)
            updated.history.append(entry)
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    async def update_fields(self, task_id, fields, statuses):
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in statuses:
                return None
            self._tasks[task_id] = task.model_copy(update=fields, deep=True)
            return self._tasks[task_id].model_copy(deep=True)

    async def delete(self, task_id):
        async with self._lock:
            return self._tasks.pop(task_id, None)

    async def increment_pomodoro(self, task_id, now):
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status != "ongoing":
                return None
            self._tasks[task_id] = task.model_copy(
                update={"pomodoro_count": task.pomodoro_count + 1, "updated_at": now}, deep=True)
            return self._tasks[task_id].model_copy(deep=True)
