"""Deadline reminders.

The scheduler turns task events into delayed jobs with deterministic ids, so
rescheduling replaces jobs instead of piling them up. The worker claims due
jobs one at a time and re-reads the task before notifying: a job for a task
that is no longer ongoing, or whose deadline moved, is dropped silently.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Protocol

from pymongo.errors import PyMongoError

from .clock import Clock, to_ms
from .config import DEADLINE_GRACE_SECONDS, REMINDER_POLL_SECONDS, WARNING_MINUTES
from .errors import SchedulingFailure
from .events import TaskEvent
from .models import Notification, ReminderJob, TaskDB
from .store import TaskStore

logger = logging.getLogger(__name__)

RESCHEDULE_ON = ("created", "resumed", "snoozed")
CANCEL_ON = ("paused", "completed", "given_up", "deleted")


def job_id(task_id: str, kind: str, minutes_before: Optional[int] = None) -> str:
    if kind == "warning":
        return f"warning-{task_id}-{minutes_before}m"
    return f"{kind}-{task_id}"


class JobQueue(Protocol):
    async def enqueue(self, job: ReminderJob) -> None: ...

    async def cancel(self, job_id: str) -> None: ...

    async def cancel_task(self, task_id: str) -> int: ...

    async def get_job(self, job_id: str) -> Optional[ReminderJob]: ...

    async def claim_due(self, now: datetime) -> Optional[ReminderJob]: ...


class InMemoryJobQueue:
    def __init__(self):
        self.jobs: dict[str, ReminderJob] = {}

    async def enqueue(self, job):
        self.jobs[job.id] = job

    async def cancel(self, job_id):
        self.jobs.pop(job_id, None)

    async def cancel_task(self, task_id):
        ids = [j.id for j in self.jobs.values() if j.task_id == task_id]
        for i in ids:
            del self.jobs[i]
        return len(ids)

    async def get_job(self, job_id):
        return self.jobs.get(job_id)

    async def claim_due(self, now):
        due = [j for j in self.jobs.values() if j.fires_at <= now]
        if not due:
            return None
        job = min(due, key=lambda j: j.fires_at)
        return self.jobs.pop(job.id)


class MongoJobQueue:
    """Jobs live in their own collection, keyed by the deterministic job id."""

    def __init__(self, col):
        self.col = col

    async def enqueue(self, job):
        try:
            await self.col.replace_one({"_id": job.id}, {"_id": job.id, **job.model_dump()}, upsert=True)
        except PyMongoError as e:
            raise SchedulingFailure(f"Could not enqueue {job.id}: {e}") from e

    async def cancel(self, job_id):
        try:
            await self.col.delete_one({"_id": job_id})
        except PyMongoError as e:
            raise SchedulingFailure(f"Could not cancel {job_id}: {e}") from e

    async def cancel_task(self, task_id):
        try:
            result = await self.col.delete_many({"task_id": task_id})
        except PyMongoError as e:
            raise SchedulingFailure(f"Could not cancel jobs for task {task_id}: {e}") from e
        return result.deleted_count

    async def get_job(self, job_id):
        doc = await self.col.find_one({"_id": job_id})
        return ReminderJob(**doc) if doc else None

    async def claim_due(self, now):
        try:
            doc = await self.col.find_one_and_delete({"fires_at": {"$lte": now}}, sort=[("fires_at", 1)])
        except PyMongoError as e:
            raise SchedulingFailure(f"Could not claim due jobs: {e}") from e
        return ReminderJob(**doc) if doc else None


class ReminderScheduler:
    def __init__(self, queue: JobQueue, clock: Clock, warning_minutes=WARNING_MINUTES,
                 grace_seconds: int = DEADLINE_GRACE_SECONDS):
        self.queue = queue
        self.clock = clock
        self.warning_minutes = warning_minutes
        self.grace = timedelta(seconds=grace_seconds)

    async def schedule_for_deadline(self, task_id: str, user_id: str, ends_at: datetime) -> list[ReminderJob]:
        now = self.clock.now()
        jobs = []
        # past the grace window the deadline notification would only be noise
        if now <= ends_at + self.grace:
            jobs.append(ReminderJob(id=job_id(task_id, "deadline"), task_id=task_id, user_id=user_id,
                                    kind="deadline", fires_at=ends_at, ends_at=ends_at))
        for minutes in self.warning_minutes:
            fires_at = ends_at - timedelta(minutes=minutes)
            if fires_at > now:
                jobs.append(ReminderJob(id=job_id(task_id, "warning", minutes), task_id=task_id, user_id=user_id,
                                        kind="warning", fires_at=fires_at, ends_at=ends_at, minutes_before=minutes))
        try:
            await self.queue.cancel_task(task_id)
            for job in jobs:
                await self.queue.enqueue(job)
        except SchedulingFailure as e:
            logger.error(f"Reminder scheduling failed for task {task_id}: {e}")
            return []
        logger.info(f"Scheduled {len(jobs)} reminders for task {task_id}, deadline: {ends_at.isoformat()}")
        return jobs

    async def cancel(self, task_id: str) -> None:
        try:
            removed = await self.queue.cancel_task(task_id)
        except SchedulingFailure as e:
            logger.error(f"Reminder cancellation failed for task {task_id}: {e}")
            return
        logger.info(f"Cancelled {removed} reminders for task {task_id}")

    async def schedule_pomodoro(self, task_id: str, user_id: str, duration_seconds: int) -> Optional[ReminderJob]:
        fires_at = self.clock.now() + timedelta(seconds=duration_seconds)
        job = ReminderJob(id=job_id(task_id, "pomodoro"), task_id=task_id, user_id=user_id,
                          kind="pomodoro", fires_at=fires_at)
        try:
            await self.queue.enqueue(job)
        except SchedulingFailure as e:
            logger.error(f"Pomodoro scheduling failed for task {task_id}: {e}")
            return None
        logger.info(f"Scheduled pomodoro reminder for task {task_id} in {duration_seconds}s")
        return job

    async def on_task_event(self, event: TaskEvent) -> None:
        task = event.task
        if event.action in RESCHEDULE_ON:
            await self.schedule_for_deadline(task.id, task.user_id, task.ends_at)
        elif event.action in CANCEL_ON:
            await self.cancel(task.id)


class Notifier(Protocol):
    async def notify(self, user_id: str, notification: Notification) -> int: ...


def build_notification(kind: str, task: TaskDB, now: datetime) -> Notification:
    if kind == "deadline":
        overdue = now > task.ends_at
        return Notification(
            title="Task Overdue!" if overdue else "Task Deadline Reached!",
            body=f'"{task.title}" ' + ("is overdue" if overdue else "deadline has arrived"),
            kind="deadline", task_id=task.id, urgency="high", timestamp=now,
        )
    if kind == "warning":
        return Notification(title="Task Deadline Approaching", body=f'"{task.title}" is due soon',
                            kind="warning", task_id=task.id, timestamp=now)
    return Notification(title="Pomodoro Session Complete", body=f'Time for a break from "{task.title}"',
                        kind="pomodoro", task_id=task.id, timestamp=now)


class ReminderWorker:
    def __init__(self, queue: JobQueue, store: TaskStore, notifier: Notifier, clock: Clock,
                 poll_seconds: float = REMINDER_POLL_SECONDS, grace_seconds: int = DEADLINE_GRACE_SECONDS):
        self.queue = queue
        self.store = store
        self.notifier = notifier
        self.clock = clock
        self.poll_seconds = poll_seconds
        self.grace = timedelta(seconds=grace_seconds)

    def _stale(self, job: ReminderJob, task: TaskDB, now: datetime) -> Optional[str]:
        if job.kind == "pomodoro":
            return None
        if job.ends_at is not None and to_ms(job.ends_at) != to_ms(task.ends_at):
            return "deadline moved"
        if job.kind == "warning" and now >= task.ends_at:
            return "deadline already passed"
        if job.kind == "deadline" and now > task.ends_at + self.grace:
            return "fired too late"
        return None

    async def handle(self, job: ReminderJob) -> bool:
        """Run one claimed job. Returns True if a notification went out."""
        task = await self.store.get(job.task_id)
        if task is None or task.user_id != job.user_id:
            logger.info(f"Task or user not found for reminder: {job.task_id}, {job.user_id}")
            return False
        if task.status != "ongoing":
            logger.info(f"Task {task.id} is no longer ongoing, skipping {job.kind} reminder")
            return False

        now = self.clock.now()
        reason = self._stale(job, task, now)
        if reason:
            logger.info(f"Skipping {job.id}: {reason}")
            return False

        if job.kind == "pomodoro":
            task = await self.store.increment_pomodoro(task.id, now)
            if task is None:
                return False

        await self.notifier.notify(job.user_id, build_notification(job.kind, task, now))
        logger.info(f"Sent {job.kind} reminder for task {job.task_id} to user {job.user_id}")
        return True

    async def run_due(self) -> int:
        handled = 0
        while True:
            try:
                job = await self.queue.claim_due(self.clock.now())
            except SchedulingFailure as e:
                logger.error(f"Reminder worker could not claim jobs: {e}")
                break
            if job is None:
                break
            try:
                await self.handle(job)
            except Exception as e:
                logger.error(f"Task reminder job {job.id} failed: {e}")
            handled += 1
        return handled

    async def run_forever(self) -> None:
        while True:
            await self.run_due()
            await asyncio.sleep(self.poll_seconds)
