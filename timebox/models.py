from typing import Optional, Literal, Annotated
from pydantic import BaseModel, Field
from datetime import datetime

from .config import DEFAULT_SNOOZE_MINUTES

Status = Literal["ongoing", "paused", "completed", "given_up"]
Priority = Literal["low", "medium", "high", "urgent"]
Action = Literal["created", "paused", "resumed", "completed", "given_up", "snoozed"]
Transition = Literal["complete", "give_up", "pause", "resume", "snooze"]
JobKind = Literal["deadline", "warning", "pomodoro"]
Urgency = Literal["low", "normal", "high"]

Tag = Annotated[str, Field(max_length=50)]

TERMINAL: tuple[str, ...] = ("completed", "given_up")


class PomodoroSettings(BaseModel):
    work_minutes: int = Field(default=25, ge=1, le=120)
    short_break_minutes: int = Field(default=5, ge=1, le=30)
    long_break_minutes: int = Field(default=15, ge=1, le=60)
    long_break_interval: int = Field(default=4, ge=2, le=10)


class HistoryEntry(BaseModel):
    action: Action
    by: str
    at: datetime
    reason: Optional[str] = None
    previous_status: Optional[Status] = None


class DeadlineSpec(BaseModel):
    # exactly one of these is expected
    natural_time: Optional[str] = Field(default=None, min_length=1, max_length=100)
    duration: Optional[int] = None
    ends_at: Optional[datetime] = None
    timezone: Optional[str] = None


class TaskBase(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    project_id: Optional[str] = None
    priority: Priority = "medium"
    tags: list[Tag] = Field(default_factory=list)
    can_pause: bool = False
    can_snooze: bool = False
    pomodoro_settings: Optional[PomodoroSettings] = None


class TaskIn(TaskBase, DeadlineSpec):
    pass


class TaskDB(TaskBase):
    id: str
    user_id: str
    status: Status = "ongoing"
    starts_at: datetime
    ends_at: datetime
    original_duration: int = Field(ge=60)
    time_spent_seconds: int = Field(default=0, ge=0)
    paused_at: Optional[datetime] = None
    paused_duration: int = Field(default=0, ge=0)
    snooze_until: Optional[datetime] = None
    pomodoro_count: int = Field(default=0, ge=0)
    history: list[HistoryEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TaskOut(TaskDB):
    remaining_seconds: int
    is_overdue: bool
    time_spent: int


class TaskPatch(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    project_id: Optional[str] = None
    priority: Optional[Priority] = None
    tags: Optional[list[Tag]] = None


class ReasonIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class SnoozeIn(BaseModel):
    snooze_minutes: int = Field(default=DEFAULT_SNOOZE_MINUTES, ge=1, le=1440)


class PomodoroIn(BaseModel):
    minutes: Optional[int] = Field(default=None, ge=1, le=120)


class ReminderJob(BaseModel):
    id: str
    task_id: str
    user_id: str
    kind: JobKind
    fires_at: datetime
    # deadline the job was derived from; None for pomodoro jobs
    ends_at: Optional[datetime] = None
    minutes_before: Optional[int] = None


class Notification(BaseModel):
    title: str
    body: str
    kind: JobKind
    task_id: str
    urgency: Urgency = "normal"
    timestamp: datetime


class ServerTime(BaseModel):
    server_now: str
    timestamp: int


AnalyticsPeriod = Literal["24h", "7d", "30d"]


class TaskAnalytics(BaseModel):
    period: AnalyticsPeriod
    total_tasks: int
    completed_tasks: int
    given_up_tasks: int
    ongoing_tasks: int
    total_time_spent: int
    average_task_duration: float
    completion_rate: float
    total_pomodoros: int
    tasks_by_priority: dict[Priority, int]
