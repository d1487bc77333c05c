"""Task and per-device state for multi-device operations.

Everything in this module is pure: reducers take a ``TaskState`` and return
a new one without touching the input.  The engine is the only caller that
holds on to the "current" state and swaps it after each reducer call.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union
import uuid


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── Enumerations ─────────────────────────────────────────────

TASK_KINDS = {
    "shell",
    "apk_install",
    "bugreport",
    "screenshot",
    "screen_record_start",
    "screen_record_stop",
    "file_pull",
    "file_push",
    "file_mkdir",
    "file_rename",
    "file_delete",
}

TASK_STATUSES = {"running", "success", "error", "cancelled"}
TERMINAL_STATUSES = {"success", "error", "cancelled"}

DEFAULT_MAX_ITEMS = 50


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


# ── Data models ──────────────────────────────────────────────

@dataclass(frozen=True)
class DeviceTaskStatus:
    """One device's contribution to a task."""
    serial: str
    status: str = "running"
    progress: Optional[int] = None      # 0..100
    message: Optional[str] = None
    output_path: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "serial": self.serial,
            "status": self.status,
            "progress": self.progress,
            "message": self.message,
            "output_path": self.output_path,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
        }


_DEVICE_FIELDS = {f.name for f in fields(DeviceTaskStatus)}


@dataclass(frozen=True)
class Task:
    """One logical operation addressed to a fixed set of devices."""
    id: str
    kind: str
    title: str
    status: str = "running"             # running|success|error|cancelled
    started_at: int = field(default_factory=_now_ms)
    finished_at: Optional[int] = None
    trace_id: Optional[str] = None
    devices: Dict[str, DeviceTaskStatus] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "trace_id": self.trace_id,
            "kind": self.kind,
            "title": self.title,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "devices": {serial: entry.to_dict() for serial, entry in self.devices.items()},
        }

    def has_running_device(self) -> bool:
        return any(entry.status == "running" for entry in self.devices.values())


@dataclass(frozen=True)
class TaskState:
    items: Tuple[Task, ...] = ()
    max_items: int = DEFAULT_MAX_ITEMS

    def get(self, task_id: str) -> Optional[Task]:
        for item in self.items:
            if item.id == task_id:
                return item
        return None


def create_initial_state(max_items: int = DEFAULT_MAX_ITEMS) -> TaskState:
    return TaskState(items=(), max_items=max_items)


def create_task(
    id: str,
    kind: str,
    title: str,
    serials: Sequence[str],
    trace_id: Optional[str] = None,
    started_at: Optional[int] = None,
) -> Task:
    """Build a task with every device in ``running``."""
    devices = {serial: DeviceTaskStatus(serial=serial) for serial in serials}
    return Task(
        id=id,
        kind=kind,
        title=title,
        status="running",
        started_at=started_at if started_at is not None else _now_ms(),
        finished_at=None,
        trace_id=trace_id,
        devices=devices,
    )


def summarize_task(task: Task) -> Tuple[List[str], Dict[str, int]]:
    """Return the task's serials and a count of devices per status."""
    serials = list(task.devices.keys())
    counts = {"running": 0, "success": 0, "error": 0, "cancelled": 0}
    for serial in serials:
        status = task.devices[serial].status
        counts[status if status in counts else "running"] += 1
    return serials, counts


# ── Reducers ─────────────────────────────────────────────────

def _map_task(state: TaskState, task_id: str, fn) -> TaskState:
    changed = False
    items = []
    for item in state.items:
        if item.id == task_id:
            updated = fn(item)
            changed = changed or updated is not item
            items.append(updated)
        else:
            items.append(item)
    if not changed:
        return state
    return replace(state, items=tuple(items))


def add_task(state: TaskState, task: Task) -> TaskState:
    rest = tuple(item for item in state.items if item.id != task.id)
    items = ((task,) + rest)[: max(0, state.max_items)]
    return replace(state, items=items)


def replace_all(state: TaskState, items: Sequence[Task], max_items: Optional[int] = None) -> TaskState:
    limit = max_items if max_items is not None else state.max_items
    return TaskState(items=tuple(items)[: max(0, limit)], max_items=limit)


def set_trace(state: TaskState, task_id: str, trace_id: str) -> TaskState:
    def _apply(task: Task) -> Task:
        if task.trace_id == trace_id:
            return task
        return replace(task, trace_id=trace_id)

    return _map_task(state, task_id, _apply)


def set_status(
    state: TaskState,
    task_id: str,
    status: str,
    finished_at: Optional[int] = None,
) -> TaskState:
    """Set the task-level status.

    A terminal task never goes back to ``running`` and keeps the
    ``finished_at`` stamped on its first terminal transition.  Between
    terminal values only ``error`` may replace an earlier outcome.
    """
    if status not in TASK_STATUSES:
        return state

    def _apply(task: Task) -> Task:
        if task.status == status:
            return task
        if status == "running":
            return task
        if is_terminal(task.status):
            if status != "error":
                return task
            return replace(task, status=status)
        stamp = finished_at if finished_at is not None else _now_ms()
        return replace(task, status=status, finished_at=stamp)

    return _map_task(state, task_id, _apply)


def _clean_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in patch.items():
        if key not in _DEVICE_FIELDS or key == "serial":
            continue
        if key == "status" and value not in TASK_STATUSES:
            continue
        cleaned[key] = value
    return cleaned


def update_device(
    state: TaskState,
    task_id: str,
    serial: str,
    patch: Mapping[str, Any],
) -> TaskState:
    """Merge ``patch`` into one device entry, creating it when absent."""
    cleaned = _clean_patch(patch)

    def _apply(task: Task) -> Task:
        current = task.devices.get(serial)
        if current is None:
            current = DeviceTaskStatus(serial=serial)
        elif all(getattr(current, key) == value for key, value in cleaned.items()):
            return task
        devices = dict(task.devices)
        devices[serial] = replace(current, **cleaned)
        return replace(task, devices=devices)

    return _map_task(state, task_id, _apply)


def clear_completed(state: TaskState) -> TaskState:
    items = tuple(item for item in state.items if item.status == "running")
    if len(items) == len(state.items):
        return state
    return replace(state, items=items)


# ── Action dispatch ──────────────────────────────────────────

@dataclass(frozen=True)
class TaskAdd:
    task: Task


@dataclass(frozen=True)
class TaskSetAll:
    items: Tuple[Task, ...]
    max_items: Optional[int] = None


@dataclass(frozen=True)
class TaskSetTrace:
    id: str
    trace_id: str


@dataclass(frozen=True)
class TaskSetStatus:
    id: str
    status: str
    finished_at: Optional[int] = None


@dataclass(frozen=True)
class TaskUpdateDevice:
    id: str
    serial: str
    patch: Mapping[str, Any]


@dataclass(frozen=True)
class TaskClearCompleted:
    pass


TaskAction = Union[TaskAdd, TaskSetAll, TaskSetTrace, TaskSetStatus, TaskUpdateDevice, TaskClearCompleted]


def reduce(state: TaskState, action: TaskAction) -> TaskState:
    """Apply a single action.  Unknown actions leave the state unchanged."""
    if isinstance(action, TaskAdd):
        return add_task(state, action.task)
    if isinstance(action, TaskSetAll):
        return replace_all(state, action.items, action.max_items)
    if isinstance(action, TaskSetTrace):
        return set_trace(state, action.id, action.trace_id)
    if isinstance(action, TaskSetStatus):
        return set_status(state, action.id, action.status, action.finished_at)
    if isinstance(action, TaskUpdateDevice):
        return update_device(state, action.id, action.serial, action.patch)
    if isinstance(action, TaskClearCompleted):
        return clear_completed(state)
    return state
