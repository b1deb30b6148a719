import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import lifecycle
from .clock import Clock, elapsed_seconds
from .config import MIN_DURATION_SECONDS
from .errors import Forbidden, InvalidTransition, NotFound, SchedulingFailure, ValidationError, Conflict
from .events import EventBus, TaskEvent
from .models import (
    AnalyticsPeriod, DeadlineSpec, PomodoroSettings, ReminderJob, TaskAnalytics, TaskBase, TaskDB, TaskIn, TaskOut,
    TaskPatch,
)
from .reminders import ReminderScheduler
from .resolver import Resolved, resolve
from .store import TaskStore

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = ("ongoing", "paused")

ANALYTICS_WINDOWS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


class TaskService:
    def __init__(self, store: TaskStore, bus: EventBus, scheduler: ReminderScheduler, clock: Clock,
                 resolver: Callable[[str, datetime], Optional[Resolved]] = resolve):
        self.store = store
        self.bus = bus
        self.scheduler = scheduler
        self.clock = clock
        self.resolver = resolver

    def view(self, task: TaskDB) -> TaskOut:
        return lifecycle.to_out(task, self.clock.now())

    def _deadline(self, when: DeadlineSpec, now: datetime, fallback_duration: Optional[int] = None) -> Resolved:
        tz = timezone.utc
        if when.timezone:
            try:
                tz = ZoneInfo(when.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValidationError(f"Unknown timezone: {when.timezone}")

        if when.ends_at is not None:
            ends_at = when.ends_at if when.ends_at.tzinfo else when.ends_at.replace(tzinfo=tz)
            resolved = Resolved(ends_at, elapsed_seconds(now, ends_at))
        elif when.duration is not None:
            try:
                resolved = Resolved(now + timedelta(seconds=when.duration), when.duration)
            except OverflowError:
                raise ValidationError(f"Task duration is out of range: {when.duration}")
        elif when.natural_time:
            resolved = self.resolver(when.natural_time, now.astimezone(tz))
            if resolved is None:
                raise ValidationError("Could not parse natural language time")
        elif fallback_duration is not None:
            resolved = Resolved(now + timedelta(seconds=fallback_duration), fallback_duration)
        else:
            raise ValidationError("Must provide duration, ends_at, or natural_time")

        if resolved.duration < MIN_DURATION_SECONDS:
            raise ValidationError(f"Task duration must be at least {MIN_DURATION_SECONDS} seconds")
        return Resolved(resolved.ends_at.astimezone(timezone.utc), resolved.duration)

    async def _owned(self, task_id: str, user_id: str) -> TaskDB:
        task = await self.store.get(task_id)
        if task is None:
            raise NotFound("Task not found")
        if task.user_id != user_id:
            raise Forbidden("Task belongs to another user")
        return task

    async def _create(self, user_id: str, base: TaskBase, resolved: Resolved, now: datetime,
                      reason: Optional[str] = None) -> TaskDB:
        task = lifecycle.new_task(user_id, base, resolved, now, reason=reason)
        await self.store.insert(task)
        logger.info(f"Created task {task.id} for user {user_id}, deadline: {task.ends_at.isoformat()}")
        await self.bus.publish(TaskEvent("created", task))
        return task

    async def create_task(self, user_id: str, data: TaskIn) -> TaskDB:
        now = self.clock.now()
        return await self._create(user_id, data, self._deadline(data, now), now)

    async def get_task(self, task_id: str, user_id: str) -> TaskDB:
        return await self._owned(task_id, user_id)

    async def list_tasks(self, user_id: str, **filters) -> list[TaskDB]:
        return await self.store.list_for_user(user_id, **filters)

    async def transition(self, task_id: str, user_id: str, action: str, reason: Optional[str] = None,
                         snooze_minutes: Optional[int] = None) -> TaskDB:
        task = await self._owned(task_id, user_id)
        now = self.clock.now()
        plan = lifecycle.plan(task, action, user_id, now, reason=reason, snooze_minutes=snooze_minutes)
        updated = await self.store.apply(task.id, plan.expected_status, len(task.history),
                                         {**plan.fields, "updated_at": now}, plan.entry)
        if updated is None:
            raise Conflict("Task changed while updating, reload it and try again")
        logger.info(f"Task {task.id}: {task.status} -> {updated.status} ({plan.action})")
        await self.bus.publish(TaskEvent(plan.action, updated))
        return updated

    async def update_task(self, task_id: str, user_id: str, patch: TaskPatch) -> TaskDB:
        task = await self._owned(task_id, user_id)
        if lifecycle.is_terminal(task):
            raise InvalidTransition("Finished tasks can no longer be edited")
        fields = patch.model_dump(exclude_unset=True)
        if not fields:
            return task
        if fields.get("title"):
            fields["title"] = fields["title"].strip()
        if fields.get("tags"):
            fields["tags"] = [t.strip() for t in fields["tags"]]
        fields["updated_at"] = self.clock.now()
        updated = await self.store.update_fields(task.id, fields, EDITABLE_STATUSES)
        if updated is None:
            raise Conflict("Task changed while updating, reload it and try again")
        await self.bus.publish(TaskEvent("updated", updated))
        return updated

    async def delete_task(self, task_id: str, user_id: str) -> TaskDB:
        await self._owned(task_id, user_id)
        deleted = await self.store.delete(task_id)
        if deleted is None:
            raise NotFound("Task not found")
        await self.bus.publish(TaskEvent("deleted", deleted))
        return deleted

    async def reopen_task(self, task_id: str, user_id: str, when: DeadlineSpec) -> TaskDB:
        """Start over on a finished task. The old record stays as it was."""
        source = await self._owned(task_id, user_id)
        if not lifecycle.is_terminal(source):
            raise InvalidTransition("Only finished tasks can be reopened")
        now = self.clock.now()
        resolved = self._deadline(when, now, fallback_duration=source.original_duration)
        base = TaskBase(**source.model_dump(include=set(TaskBase.model_fields)))
        return await self._create(user_id, base, resolved, now, reason=f"Reopened from {source.id}")

    async def start_pomodoro(self, task_id: str, user_id: str, minutes: Optional[int] = None) -> ReminderJob:
        task = await self._owned(task_id, user_id)
        if task.status != "ongoing":
            raise InvalidTransition("Task is not ongoing")
        minutes = minutes or (task.pomodoro_settings or PomodoroSettings()).work_minutes
        job = await self.scheduler.schedule_pomodoro(task.id, user_id, minutes * 60)
        if job is None:
            raise SchedulingFailure("Reminder queue unavailable")
        return job

    async def analytics(self, user_id: str, period: AnalyticsPeriod = "7d") -> TaskAnalytics:
        """Counts and totals over the tasks created in the last ``period``."""
        since = self.clock.now() - ANALYTICS_WINDOWS[period]
        tasks = await self.store.created_since(user_id, since)
        by_status = Counter(t.status for t in tasks)
        by_priority = Counter(t.priority for t in tasks)
        total = len(tasks)
        return TaskAnalytics(
            period=period,
            total_tasks=total,
            completed_tasks=by_status["completed"],
            given_up_tasks=by_status["given_up"],
            ongoing_tasks=by_status["ongoing"],
            total_time_spent=sum(t.time_spent_seconds for t in tasks),
            average_task_duration=sum(t.original_duration for t in tasks) / total if total else 0.0,
            completion_rate=by_status["completed"] / total * 100 if total else 0.0,
            total_pomodoros=sum(t.pomodoro_count for t in tasks),
            tasks_by_priority={p: by_priority[p] for p in ("urgent", "high", "medium", "low")},
        )
