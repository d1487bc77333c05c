"""Bounded, debounced persistence of the task history.

The stored form is a trimmed projection of ``TaskState``: long strings are
truncated and per-device output (``progress``, ``stdout``, ``stderr``) is
dropped.  Loading is guarded: oversized or malformed files are discarded
as a whole and the application starts with an empty history.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from typing import Callable, Dict, Literal, Optional

from pydantic import BaseModel, ValidationError

from fleettasks.core.tasks import (
    DEFAULT_MAX_ITEMS,
    DeviceTaskStatus,
    Task,
    TaskState,
)
from fleettasks.core.timers import ThreadTimer, Timer

logger = logging.getLogger("fleettasks.persistence")

MIN_STORED_ITEMS = 1
MAX_STORED_ITEMS = 200
MAX_TITLE_LEN = 160
MAX_MESSAGE_LEN = 240
MAX_OUTPUT_PATH_LEN = 500
MAX_STORED_CHARS = 800_000
DEFAULT_DEBOUNCE = 1.2
ELLIPSIS = "…"

StatusLiteral = Literal["running", "success", "error", "cancelled"]
KindLiteral = Literal[
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
]


# ---------- stored schema ----------

class StoredDevice(BaseModel):
    serial: str
    status: StatusLiteral
    message: Optional[str] = None
    output_path: Optional[str] = None
    exit_code: Optional[int] = None


class StoredTask(BaseModel):
    id: str
    trace_id: Optional[str] = None
    kind: KindLiteral
    title: str
    status: StatusLiteral
    started_at: int
    finished_at: Optional[int] = None
    devices: Dict[str, StoredDevice]


class StoredTaskState(BaseModel):
    max_items: int
    items: list[StoredTask]


# ---------- codec ----------

def _clean_text(value: str) -> str:
    # lone surrogates are not encodable as UTF-8
    return value.encode("utf-8", "replace").decode("utf-8")


def truncate_text(value: str, max_len: int) -> str:
    """Cut ``value`` to at most ``max_len`` characters, ending in an ellipsis."""
    value = _clean_text(value)
    if len(value) <= max_len:
        return value
    return value[: max(0, max_len - 1)] + ELLIPSIS


def _clamp_max_items(value: int) -> int:
    return max(MIN_STORED_ITEMS, min(MAX_STORED_ITEMS, value))


def sanitize_state(state: TaskState) -> StoredTaskState:
    max_items = _clamp_max_items(state.max_items)
    items: list[StoredTask] = []
    for task in state.items[:max_items]:
        devices: Dict[str, StoredDevice] = {}
        for serial, entry in task.devices.items():
            devices[_clean_text(serial)] = StoredDevice(
                serial=_clean_text(serial),
                status=entry.status,
                message=truncate_text(entry.message, MAX_MESSAGE_LEN) if entry.message else entry.message,
                output_path=(
                    truncate_text(entry.output_path, MAX_OUTPUT_PATH_LEN)
                    if entry.output_path
                    else entry.output_path
                ),
                exit_code=entry.exit_code,
            )
        items.append(
            StoredTask(
                id=_clean_text(task.id),
                trace_id=_clean_text(task.trace_id) if task.trace_id else task.trace_id,
                kind=task.kind,
                title=truncate_text(task.title, MAX_TITLE_LEN),
                status=task.status,
                started_at=task.started_at,
                finished_at=task.finished_at,
                devices=devices,
            )
        )
    return StoredTaskState(max_items=max_items, items=items)


def encode_state(state: TaskState) -> str:
    return sanitize_state(state).model_dump_json()


def parse_stored_state(raw: str, max_chars: int = MAX_STORED_CHARS) -> Optional[StoredTaskState]:
    """Validate a stored payload. Returns None when it must be discarded."""
    if len(raw) > max_chars:
        logger.warning("Stored task state too large (%d chars > %d), ignoring", len(raw), max_chars)
        return None
    try:
        return StoredTaskState.model_validate_json(raw)
    except ValidationError as exc:
        logger.warning("Stored task state rejected: %d validation error(s)", exc.error_count())
        return None
    except ValueError as exc:
        logger.warning("Stored task state unreadable: %s", exc)
        return None


def inflate_state(stored: StoredTaskState, fallback_max_items: int = DEFAULT_MAX_ITEMS) -> TaskState:
    max_items = _clamp_max_items(stored.max_items) if stored.max_items > 0 else fallback_max_items
    items = []
    for item in stored.items[:max_items]:
        devices = {
            serial: DeviceTaskStatus(
                serial=serial,
                status=entry.status,
                progress=None,
                message=entry.message,
                output_path=entry.output_path,
                stdout=None,
                stderr=None,
                exit_code=entry.exit_code,
            )
            for serial, entry in item.devices.items()
        }
        items.append(
            Task(
                id=item.id,
                kind=item.kind,
                title=item.title,
                status=item.status,
                started_at=item.started_at,
                finished_at=item.finished_at,
                trace_id=item.trace_id,
                devices=devices,
            )
        )
    return TaskState(items=tuple(items), max_items=max_items)


# ---------- file store ----------

class TaskStateStore:
    """JSON file holding the trimmed task history, written on a debounce."""

    def __init__(
        self,
        path: str,
        timer: Optional[Timer] = None,
        debounce: float = DEFAULT_DEBOUNCE,
        max_chars: int = MAX_STORED_CHARS,
    ) -> None:
        self.path = path
        self.debounce = debounce
        self.max_chars = max_chars
        self._timer: Timer = timer if timer is not None else ThreadTimer("task-state-save")
        self._save_lock = threading.RLock()
        self._provider: Optional[Callable[[], TaskState]] = None

    def load(self, fallback_max_items: int = DEFAULT_MAX_ITEMS) -> Optional[TaskState]:
        stored = read_stored_file(self.path, self.max_chars)
        if stored is None:
            return None
        state = inflate_state(stored, fallback_max_items)
        logger.info("Loaded %d task(s) from %s", len(state.items), self.path)
        return state

    def schedule(self, provider: Callable[[], TaskState]) -> None:
        """Write ``provider()`` once the debounce delay elapses."""
        self._provider = provider
        if not self._timer.is_armed():
            self._timer.arm(self.debounce, self._flush_scheduled)

    def _flush_scheduled(self) -> None:
        provider = self._provider
        if provider is None:
            return
        try:
            self.flush(provider())
        except OSError as exc:
            logger.error("Failed to save task state %s: %s", self.path, exc)

    def flush(self, state: TaskState) -> None:
        self._timer.cancel()
        payload = encode_state(state)
        dir_path = os.path.dirname(self.path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with self._save_lock:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        logger.debug("Saved %d task(s) to %s", len(state.items), self.path)

    def pending(self) -> bool:
        return self._timer.is_armed()

    def close(self) -> None:
        self._timer.cancel()
        self._provider = None


def read_stored_file(path: str, max_chars: int = MAX_STORED_CHARS) -> Optional[StoredTaskState]:
    """Read and validate a stored file without inflating it."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = handle.read(max_chars + 1)
    except UnicodeDecodeError as exc:
        logger.warning("Stored task state %s is not valid UTF-8: %s", path, exc)
        return None
    except OSError as exc:
        logger.error("Failed to read task state %s: %s", path, exc)
        return None
    return parse_stored_state(raw, max_chars)


def dump_stored(stored: StoredTaskState) -> str:
    return json.dumps(stored.model_dump(), indent=2, ensure_ascii=False)
