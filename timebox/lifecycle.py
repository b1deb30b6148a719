"""Task state machine rules.

Nothing here touches storage: ``plan`` checks a transition against a task
snapshot and describes the conditional write that commits it. The service
applies the plan through the store, which refuses it if the task moved on.
"""

import uuid
from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from .clock import elapsed_seconds
from .errors import InvalidTransition
from .models import HistoryEntry, TaskBase, TaskDB, TaskOut, Transition, TERMINAL
from .resolver import Resolved


class Plan(NamedTuple):
    action: str
    expected_status: str
    fields: dict
    entry: HistoryEntry


def time_spent(task: TaskDB, now: datetime) -> int:
    total = task.time_spent_seconds
    if task.status == "ongoing" and task.paused_at is None:
        total += elapsed_seconds(task.starts_at, now) - task.paused_duration
    return max(0, total)


def remaining_seconds(task: TaskDB, now: datetime) -> int:
    if task.status != "ongoing" or task.paused_at is not None:
        return 0
    return max(0, elapsed_seconds(now, task.ends_at))


def is_overdue(task: TaskDB, now: datetime) -> bool:
    return task.status == "ongoing" and now > task.ends_at


def to_out(task: TaskDB, now: datetime) -> TaskOut:
    return TaskOut(
        **task.model_dump(),
        remaining_seconds=remaining_seconds(task, now),
        is_overdue=is_overdue(task, now),
        time_spent=time_spent(task, now),
    )


def new_task(user_id: str, base: TaskBase, resolved: Resolved, now: datetime, reason: Optional[str] = None) -> TaskDB:
    fields = base.model_dump(include=set(TaskBase.model_fields))
    fields["title"] = fields["title"].strip()
    if fields.get("description"):
        fields["description"] = fields["description"].strip()
    fields["tags"] = [t.strip() for t in fields["tags"]]
    return TaskDB(
        **fields,
        id=str(uuid.uuid4()),
        user_id=user_id,
        status="ongoing",
        starts_at=now,
        ends_at=resolved.ends_at,
        original_duration=resolved.duration,
        history=[HistoryEntry(action="created", by=user_id, at=now, reason=reason)],
        created_at=now,
        updated_at=now,
    )


def _entry(task: TaskDB, action: str, user_id: str, now: datetime, **extra) -> HistoryEntry:
    at = max(now, task.history[-1].at) if task.history else now
    return HistoryEntry(action=action, by=user_id, at=at, **extra)


def _finish(task: TaskDB, action: str, status: str, user_id: str, now: datetime, reason: Optional[str]) -> Plan:
    if task.status not in ("ongoing", "paused"):
        raise InvalidTransition("Task is not active")
    fields = {
        "status": status,
        "time_spent_seconds": time_spent(task, now),
        "paused_at": None,
    }
    entry = _entry(task, action, user_id, now, reason=reason, previous_status=task.status)
    return Plan(action, task.status, fields, entry)


def plan(task: TaskDB, transition: Transition, user_id: str, now: datetime, reason: Optional[str] = None,
         snooze_minutes: Optional[int] = None) -> Plan:
    if transition == "complete":
        return _finish(task, "completed", "completed", user_id, now, reason)

    if transition == "give_up":
        return _finish(task, "given_up", "given_up", user_id, now, reason)

    if transition == "pause":
        if task.status != "ongoing":
            raise InvalidTransition("Task is not ongoing")
        if not task.can_pause:
            raise InvalidTransition("Task cannot be paused")
        fields = {"status": "paused", "paused_at": now}
        return Plan("paused", "ongoing", fields, _entry(task, "paused", user_id, now, previous_status="ongoing"))

    if transition == "resume":
        if task.status != "paused":
            raise InvalidTransition("Task is not paused")
        paused_for = max(0, elapsed_seconds(task.paused_at, now)) if task.paused_at else 0
        fields = {
            "status": "ongoing",
            "paused_at": None,
            "paused_duration": task.paused_duration + paused_for,
        }
        return Plan("resumed", "paused", fields, _entry(task, "resumed", user_id, now, previous_status="paused"))

    if transition == "snooze":
        if task.status != "ongoing":
            raise InvalidTransition("Task is not ongoing")
        if not task.can_snooze:
            raise InvalidTransition("Task cannot be snoozed")
        if not snooze_minutes or snooze_minutes < 1:
            raise InvalidTransition("Snooze needs a positive number of minutes")
        extend = timedelta(minutes=snooze_minutes)
        fields = {
            "ends_at": task.ends_at + extend,
            "original_duration": task.original_duration + snooze_minutes * 60,
            "snooze_until": now + extend,
        }
        entry = _entry(task, "snoozed", user_id, now, reason=f"Snoozed for {snooze_minutes} minutes")
        return Plan("snoozed", "ongoing", fields, entry)

    raise InvalidTransition(f"Unknown transition: {transition}")


def is_terminal(task: TaskDB) -> bool:
    return task.status in TERMINAL
