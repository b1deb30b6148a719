from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument

from conftest import T0
from timebox.models import HistoryEntry, TaskDB
from timebox.store import InMemoryTaskStore, MongoTaskStore

pytestmark = pytest.mark.anyio


def task_doc(**overrides):
    doc = {
        "_id": "mongo-object-id",
        "id": "t1",
        "user_id": "u1",
        "title": "Write tests",
        "status": "ongoing",
        "starts_at": T0,
        "ends_at": T0 + timedelta(minutes=30),
        "original_duration": 1800,
        "history": [{"action": "created", "by": "u1", "at": T0}],
        "created_at": T0,
        "updated_at": T0,
    }
    doc.update(overrides)
    return doc


class TestMongoTaskStore:

    async def test_apply_is_guarded_by_status_and_history_length(self):
        col = AsyncMock()
        col.find_one_and_update.return_value = task_doc(status="completed")
        entry = HistoryEntry(action="completed", by="u1", at=T0, previous_status="ongoing")

        task = await MongoTaskStore(col).apply("t1", "ongoing", 1, {"status": "completed"}, entry)

        assert task.status == "completed"
        filter_, update = col.find_one_and_update.call_args.args
        assert filter_ == {"id": "t1", "status": "ongoing", "history": {"$size": 1}}
        assert update["$set"] == {"status": "completed"}
        assert update["$push"]["history"]["action"] == "completed"
        assert col.find_one_and_update.call_args.kwargs["return_document"] == ReturnDocument.AFTER

    async def test_apply_reports_a_lost_race_as_none(self):
        col = AsyncMock()
        col.find_one_and_update.return_value = None
        entry = HistoryEntry(action="paused", by="u1", at=T0)

        assert await MongoTaskStore(col).apply("t1", "ongoing", 1, {"status": "paused"}, entry) is None

    async def test_get_ignores_mongo_id(self):
        col = AsyncMock()
        col.find_one.return_value = task_doc()

        task = await MongoTaskStore(col).get("t1")

        assert isinstance(task, TaskDB)
        assert task.history[0].action == "created"
        col.find_one.assert_called_once_with({"id": "t1"})

    async def test_list_builds_owner_query(self):
        docs = [task_doc()]

        class Cursor:
            def sort(self, *args):
                self.sorted_by = args
                return self

            def skip(self, n):
                return self

            def limit(self, n):
                return self

            def __aiter__(self):
                async def gen():
                    for d in docs:
                        yield d
                return gen()

        col = MagicMock()
        cursor = Cursor()
        col.find.return_value = cursor

        tasks = await MongoTaskStore(col).list_for_user("u1", status="ongoing", tags=["work"])

        assert [t.id for t in tasks] == ["t1"]
        col.find.assert_called_once_with({"user_id": "u1", "status": "ongoing", "tags": {"$in": ["work"]}})
        assert cursor.sorted_by == ("ends_at", 1)

    async def test_created_since_filters_on_owner_and_creation_time(self):
        class Cursor:
            def __aiter__(self):
                async def gen():
                    yield task_doc()
                return gen()

        col = MagicMock()
        col.find.return_value = Cursor()

        tasks = await MongoTaskStore(col).created_since("u1", T0)

        assert [t.id for t in tasks] == ["t1"]
        col.find.assert_called_once_with({"user_id": "u1", "created_at": {"$gte": T0}})

    async def test_pomodoro_increment_only_for_ongoing(self):
        col = AsyncMock()
        col.find_one_and_update.return_value = None

        assert await MongoTaskStore(col).increment_pomodoro("t1", T0) is None
        filter_, update = col.find_one_and_update.call_args.args
        assert filter_ == {"id": "t1", "status": "ongoing"}
        assert update["$inc"] == {"pomodoro_count": 1}


class TestInMemoryTaskStore:

    async def test_apply_rejects_stale_writes(self):
        store = InMemoryTaskStore()
        await store.insert(TaskDB(**task_doc()))
        entry = HistoryEntry(action="paused", by="u1", at=T0)

        first = await store.apply("t1", "ongoing", 1, {"status": "paused", "paused_at": T0}, entry)
        second = await store.apply("t1", "ongoing", 1, {"status": "paused", "paused_at": T0}, entry)

        assert first.status == "paused"
        assert len(first.history) == 2
        assert second is None

    async def test_reads_are_copies(self):
        store = InMemoryTaskStore()
        await store.insert(TaskDB(**task_doc()))

        task = await store.get("t1")
        task.history.clear()

        assert len((await store.get("t1")).history) == 1

    async def test_created_since(self):
        store = InMemoryTaskStore()
        await store.insert(TaskDB(**task_doc()))
        await store.insert(TaskDB(**task_doc(id="t2", created_at=T0 + timedelta(days=2))))
        await store.insert(TaskDB(**task_doc(id="t3", user_id="u2", created_at=T0 + timedelta(days=2))))

        tasks = await store.created_since("u1", T0 + timedelta(days=1))

        assert [t.id for t in tasks] == ["t2"]
