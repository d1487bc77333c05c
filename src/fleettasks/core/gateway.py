from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field

from fleettasks.core.config import Settings
from fleettasks.core.engine import TaskEngine
from fleettasks.core.events import InvalidEvent, parse_event
from fleettasks.core.tasks import TASK_KINDS, TASK_STATUSES, Task

logger = logging.getLogger("fleettasks.gateway")

# ---------- request / response models ----------

class BeginTaskRequest(BaseModel):
    kind: str
    title: str
    serials: list[str]
    trace_id: str | None = None

class BeginTaskResponse(BaseModel):
    task_id: str

class TraceRequest(BaseModel):
    trace_id: str | None = None
    serial: str | None = None

class TraceResponse(BaseModel):
    task_id: str
    trace_id: str

class StatusRequest(BaseModel):
    status: str

class EventResponse(BaseModel):
    applied: bool

class TasksResponse(BaseModel):
    tasks: list[dict[str, Any]]

class ResolveResponse(BaseModel):
    kind: str
    task_id: str | None = None

class LogLinesResponse(BaseModel):
    serial: str
    lines: list[dict[str, Any]] = Field(default_factory=list)

class ClearResponse(BaseModel):
    cleared: int


def _task_or_404(engine: TaskEngine, task_id: str) -> Task:
    task = engine.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")
    return task

# ---------- router factory ----------

def get_router(engine: TaskEngine) -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/tasks", response_model=TasksResponse)
    def list_tasks(kind: Optional[str] = None, status: Optional[str] = None) -> TasksResponse:
        return TasksResponse(tasks=[t.to_dict() for t in engine.list_tasks(kind=kind, status=status)])

    @router.post("/tasks", response_model=BeginTaskResponse)
    def begin_task(req: BeginTaskRequest) -> BeginTaskResponse:
        if req.kind not in TASK_KINDS:
            raise HTTPException(status_code=422, detail=f"Invalid task kind: {req.kind}")
        try:
            task_id = engine.begin_task(req.kind, req.title, req.serials, trace_id=req.trace_id)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return BeginTaskResponse(task_id=task_id)

    @router.post("/tasks/clear-completed", response_model=ClearResponse)
    def clear_completed() -> ClearResponse:
        return ClearResponse(cleared=engine.clear_completed())

    @router.get("/tasks/resolve/{kind}", response_model=ResolveResponse)
    def resolve(kind: str, preferred: Optional[str] = None) -> ResolveResponse:
        return ResolveResponse(kind=kind, task_id=engine.resolve_task_id(kind, preferred))

    @router.get("/tasks/{task_id}")
    def get_task(task_id: str) -> dict[str, Any]:
        return _task_or_404(engine, task_id).to_dict()

    @router.post("/tasks/{task_id}/trace", response_model=TraceResponse)
    def bind_trace(task_id: str, req: TraceRequest) -> TraceResponse:
        _task_or_404(engine, task_id)
        trace_id = engine.bind_trace(task_id, req.trace_id, serial=req.serial)
        if trace_id is None:
            raise HTTPException(status_code=404, detail=f"Unknown task: {task_id}")
        return TraceResponse(task_id=task_id, trace_id=trace_id)

    @router.post("/tasks/{task_id}/status")
    def set_status(task_id: str, req: StatusRequest) -> dict[str, Any]:
        if req.status not in TASK_STATUSES:
            raise HTTPException(status_code=422, detail=f"Invalid status: {req.status}")
        _task_or_404(engine, task_id)
        if req.status == "cancelled":
            engine.cancel_task(task_id)
        else:
            engine.set_task_status(task_id, req.status)
        return _task_or_404(engine, task_id).to_dict()

    @router.post("/events", response_model=EventResponse)
    def ingest_event(payload: dict[str, Any]) -> EventResponse:
        try:
            event = parse_event(payload)
        except InvalidEvent as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return EventResponse(applied=engine.handle_event(event))

    @router.get("/logs/{serial}", response_model=LogLinesResponse)
    def log_lines(serial: str, after: int = 0) -> LogLinesResponse:
        lines = [{"id": line.id, "text": line.text} for line in engine.log_lines(serial) if line.id > after]
        return LogLinesResponse(serial=serial, lines=lines)

    @router.delete("/logs/{serial}")
    def clear_logs(serial: str) -> dict[str, str]:
        engine.clear_logs(serial)
        return {"status": "ok"}

    @router.get("/notifications")
    def notifications() -> dict[str, Any]:
        return {"notifications": [n.to_dict() for n in engine.recent_notifications()]}

    return router


def create_app(engine: TaskEngine | None = None, settings: Settings | None = None) -> FastAPI:
    if engine is None:
        settings = settings or Settings.from_env()
        engine = TaskEngine.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loaded = engine.load()
        logger.info("Task engine started with %d task(s) restored", loaded)
        yield
        engine.close()
        logger.info("Task engine stopped")

    app = FastAPI(title="fleettasks", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(get_router(engine))
    return app
