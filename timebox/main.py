import asyncio
import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from .clock import SystemClock, server_time, to_ms
from .config import MONGO_URI, DB_NAME, LOG_LEVEL
from .errors import TaskError
from .events import EventBus
from .models import (
    AnalyticsPeriod, DeadlineSpec, PomodoroIn, ReasonIn, ReminderJob, ServerTime, SnoozeIn, Status, TaskAnalytics,
    TaskIn, TaskOut, TaskPatch,
)
from .notify import NotificationDispatcher, WebSocketHub
from .reminders import MongoJobQueue, ReminderScheduler, ReminderWorker
from .service import TaskService
from .store import MongoTaskStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Timebox API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class DB:
    client: AsyncIOMotorClient | None = None
    service: TaskService | None = None
    worker: asyncio.Task | None = None


db = DB()
clock = SystemClock()
hub = WebSocketHub()


def get_col(name: str):
    if not db.client:
        raise RuntimeError("DB client not initialized")
    return db.client[DB_NAME][name]


@app.on_event("startup")
async def _startup():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    db.client = AsyncIOMotorClient(MONGO_URI, tz_aware=True)

    tasks, jobs = get_col("tasks"), get_col("reminder_jobs")
    await tasks.create_index("id", unique=True)
    await tasks.create_index([("user_id", 1), ("status", 1), ("ends_at", 1)])
    await jobs.create_index("fires_at")
    await jobs.create_index("task_id")

    store = MongoTaskStore(tasks)
    queue = MongoJobQueue(jobs)
    scheduler = ReminderScheduler(queue, clock)
    bus = EventBus()
    bus.subscribe(scheduler.on_task_event)
    bus.subscribe(hub.on_task_event)
    db.service = TaskService(store, bus, scheduler, clock)

    worker = ReminderWorker(queue, store, NotificationDispatcher([hub]), clock)
    db.worker = asyncio.create_task(worker.run_forever())
    logger.info("Reminder worker started")


@app.on_event("shutdown")
async def _shutdown():
    if db.worker:
        db.worker.cancel()
    if db.client:
        db.client.close()


def get_service() -> TaskService:
    if not db.service:
        raise RuntimeError("Task service not initialized")
    return db.service


def get_clock():
    return clock


# Authentication lives in front of this API; it forwards the caller's id.
async def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


@app.exception_handler(TaskError)
async def _task_error(request: Request, exc: TaskError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "reason": type(exc).__name__, "retryable": exc.retryable},
    )


@app.exception_handler(PyMongoError)
async def _db_error(request: Request, exc: PyMongoError):
    logger.error(f"Database error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Database error"})


@app.get("/health")
async def health(clock=Depends(get_clock)):
    return {"status": "ok", "time": clock.now().isoformat()}


@app.get("/time", response_model=ServerTime)
async def time_authority(clock=Depends(get_clock)):
    return server_time(clock)


@app.post("/tasks", response_model=TaskOut, status_code=201)
async def create_task(task: TaskIn, user_id: str = Depends(get_user_id), svc: TaskService = Depends(get_service)):
    return svc.view(await svc.create_task(user_id, task))


@app.get("/tasks", response_model=List[TaskOut])
async def list_tasks(
    status: Status | None = None,
    project_id: str | None = None,
    tags: List[str] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_user_id),
    svc: TaskService = Depends(get_service),
):
    tasks = await svc.list_tasks(user_id, status=status, project_id=project_id, tags=tags, limit=limit, offset=offset)
    return [svc.view(t) for t in tasks]


@app.get("/tasks/analytics", response_model=TaskAnalytics)
async def task_analytics(period: AnalyticsPeriod = "7d", user_id: str = Depends(get_user_id),
                         svc: TaskService = Depends(get_service)):
    return await svc.analytics(user_id, period)


@app.get("/tasks/{task_id}", response_model=TaskOut)
async def get_task(task_id: str, user_id: str = Depends(get_user_id), svc: TaskService = Depends(get_service)):
    return svc.view(await svc.get_task(task_id, user_id))


@app.patch("/tasks/{task_id}", response_model=TaskOut)
async def patch_task(task_id: str, patch: TaskPatch, user_id: str = Depends(get_user_id),
                     svc: TaskService = Depends(get_service)):
    return svc.view(await svc.update_task(task_id, user_id, patch))


@app.post("/tasks/{task_id}/complete", response_model=TaskOut)
async def complete_task(task_id: str, body: ReasonIn | None = None, user_id: str = Depends(get_user_id),
                        svc: TaskService = Depends(get_service)):
    reason = body.reason if body else None
    return svc.view(await svc.transition(task_id, user_id, "complete", reason=reason))


@app.post("/tasks/{task_id}/give-up", response_model=TaskOut)
async def give_up_task(task_id: str, body: ReasonIn | None = None, user_id: str = Depends(get_user_id),
                       svc: TaskService = Depends(get_service)):
    reason = body.reason if body else None
    return svc.view(await svc.transition(task_id, user_id, "give_up", reason=reason))


@app.post("/tasks/{task_id}/pause", response_model=TaskOut)
async def pause_task(task_id: str, user_id: str = Depends(get_user_id), svc: TaskService = Depends(get_service)):
    return svc.view(await svc.transition(task_id, user_id, "pause"))


@app.post("/tasks/{task_id}/resume", response_model=TaskOut)
async def resume_task(task_id: str, user_id: str = Depends(get_user_id), svc: TaskService = Depends(get_service)):
    return svc.view(await svc.transition(task_id, user_id, "resume"))


@app.post("/tasks/{task_id}/snooze", response_model=TaskOut)
async def snooze_task(task_id: str, body: SnoozeIn | None = None, user_id: str = Depends(get_user_id),
                      svc: TaskService = Depends(get_service)):
    body = body or SnoozeIn()
    return svc.view(await svc.transition(task_id, user_id, "snooze", snooze_minutes=body.snooze_minutes))


@app.post("/tasks/{task_id}/reopen", response_model=TaskOut, status_code=201)
async def reopen_task(task_id: str, when: DeadlineSpec | None = None, user_id: str = Depends(get_user_id),
                      svc: TaskService = Depends(get_service)):
    return svc.view(await svc.reopen_task(task_id, user_id, when or DeadlineSpec()))


@app.post("/tasks/{task_id}/pomodoro", response_model=ReminderJob, status_code=202)
async def start_pomodoro(task_id: str, body: PomodoroIn | None = None, user_id: str = Depends(get_user_id),
                         svc: TaskService = Depends(get_service)):
    return await svc.start_pomodoro(task_id, user_id, body.minutes if body else None)


@app.delete("/tasks/{task_id}")
async def delete_task(task_id: str, user_id: str = Depends(get_user_id), svc: TaskService = Depends(get_service)):
    await svc.delete_task(task_id, user_id)
    return {"message": "Task deleted successfully"}


@app.websocket("/ws")
async def live_events(websocket: WebSocket, user_id: str = Query(...)):
    await websocket.accept()
    hub.connect(user_id, websocket)
    try:
        while True:
            message = await websocket.receive_json()
            if isinstance(message, dict) and message.get("event") == "heartbeat":
                await websocket.send_json({"event": "heartbeat", "data": {"timestamp": to_ms(clock.now())}})
    except WebSocketDisconnect:
        logger.info(f"Socket closed for user {user_id}")
    finally:
        hub.disconnect(user_id, websocket)
