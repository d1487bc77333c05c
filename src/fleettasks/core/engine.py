"""Task engine: the single owner of task state.

Command issuance registers tasks here (``begin_task``, ``bind_trace``,
``bind_serial_for_kind``); asynchronous device events are fed through
``handle_event``.  Every state change goes through a pure reducer from
``fleettasks.core.tasks`` and is committed under one lock, after which
notifications are derived and a persistence write is scheduled.

Event handling never raises: malformed payloads, correlation misses and
events for serials outside a task's device set are logged and dropped.
"""
from __future__ import annotations

from collections import deque
import logging
import threading
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import BaseModel

from fleettasks.core.aggregator import BatchAggregator
from fleettasks.core.config import Settings
from fleettasks.core.correlation import CorrelationRouter
from fleettasks.core.events import (
    CompleteEvent,
    DeviceStateEvent,
    InvalidEvent,
    LineBatchEvent,
    ProgressEvent,
    parse_event,
)
from fleettasks.core.log_buffer import LogCoalescer, LogLine
from fleettasks.core.logging_config import log_task_event
from fleettasks.core.notifications import TaskNotification, derive_notifications
from fleettasks.core.persistence import TaskStateStore
from fleettasks.core.recovery import find_running_task_for_serial, resolve_task_id
from fleettasks.core.tasks import (
    DEFAULT_MAX_ITEMS,
    TASK_KINDS,
    TASK_STATUSES,
    Task,
    TaskState,
    add_task,
    clear_completed,
    create_initial_state,
    create_task,
    is_terminal,
    new_task_id,
    replace_all,
    set_status,
    set_trace,
    update_device,
)
from fleettasks.core.timers import ThreadTimer, Timer

logger = logging.getLogger("fleettasks.engine")

NotificationListener = Callable[[TaskNotification], None]


def _outcome_from_devices(task: Task) -> Optional[str]:
    statuses = [entry.status for entry in task.devices.values()]
    if not statuses or any(s == "running" for s in statuses):
        return None
    if "error" in statuses:
        return "error"
    if "cancelled" in statuses:
        return "cancelled"
    return "success"


class TaskEngine:
    """Owns task state, correlations, log buffers and persistence."""

    def __init__(
        self,
        max_items: int = DEFAULT_MAX_ITEMS,
        store: Optional[TaskStateStore] = None,
        logs: Optional[LogCoalescer] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._state: TaskState = create_initial_state(max_items)
        self.router = CorrelationRouter()
        self.aggregator = BatchAggregator()
        self.logs = logs if logs is not None else LogCoalescer()
        self._store = store
        self._device_states: Dict[str, str] = {}
        self._listeners: List[NotificationListener] = []
        self._recent: Deque[TaskNotification] = deque(maxlen=100)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        timer_factory: Callable[[str], Timer] = ThreadTimer,
    ) -> "TaskEngine":
        store = TaskStateStore(
            settings.state_path,
            timer=timer_factory("task-state-save"),
            debounce=settings.persist_debounce_ms / 1000.0,
            max_chars=settings.persist_max_chars,
        )
        logs = LogCoalescer(
            timer=timer_factory("log-flush"),
            flush_delay=settings.log_flush_ms / 1000.0,
            max_lines=settings.log_max_lines,
        )
        return cls(max_items=settings.max_items, store=store, logs=logs)

    # ── Lifecycle ─────────────────────────────────────────────

    def load(self) -> int:
        """Restore persisted history. Returns the number of tasks loaded."""
        if self._store is None:
            return 0
        loaded = self._store.load(fallback_max_items=self._state.max_items)
        if loaded is None:
            return 0
        with self._lock:
            state = replace_all(self._state, loaded.items, loaded.max_items)
            for task in state.items:
                if task.status != "running":
                    continue
                self.aggregator.begin(task.id, len(task.devices))
                for serial, entry in task.devices.items():
                    if is_terminal(entry.status):
                        outcome = self.aggregator.record(task.id, serial, entry.status)
                        if outcome is not None:
                            # saved between the last device finishing and the task status
                            state = set_status(state, task.id, outcome)
            self._state = state
            return len(state.items)

    def flush(self) -> None:
        self.logs.flush()
        if self._store is not None:
            with self._lock:
                state = self._state
            self._store.flush(state)

    def close(self) -> None:
        try:
            self.flush()
        finally:
            self.logs.close()
            if self._store is not None:
                self._store.close()

    # ── Listeners ─────────────────────────────────────────────

    def add_notification_listener(self, listener: NotificationListener) -> None:
        self._listeners.append(listener)

    def add_log_listener(self, listener: Callable[[Set[str]], None]) -> None:
        self.logs.add_listener(listener)

    def recent_notifications(self) -> List[TaskNotification]:
        with self._lock:
            return list(self._recent)

    # ── Commit ────────────────────────────────────────────────

    def _commit(self, next_state: TaskState) -> None:
        prev = self._state
        if next_state is prev:
            return
        self._state = next_state

        kept = {item.id for item in next_state.items}
        for item in prev.items:
            if item.id not in kept:
                self.router.forget_task(item.id)
                self.aggregator.discard(item.id)
                logger.debug("Task %s left the history", item.id)

        for notification in derive_notifications(prev.items, next_state.items):
            self._recent.append(notification)
            logger.info("Task %s finished: %s", notification.task_id, notification.body)
            log_task_event(notification.task_id, "finished", status=notification.status, body=notification.body)
            for listener in list(self._listeners):
                try:
                    listener(notification)
                except Exception:  # noqa: BLE001
                    logger.exception("Notification listener failed for %s", notification.task_id)

        if self._store is not None:
            self._store.schedule(self.snapshot)

    # ── Dispatch-time registration ────────────────────────────

    def begin_task(
        self,
        kind: str,
        title: str,
        serials: Sequence[str],
        trace_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> str:
        """Create a running task for ``serials`` and return its id."""
        if kind not in TASK_KINDS:
            raise ValueError(f"Invalid task kind: {kind}")
        unique = list(dict.fromkeys(s for s in serials if s))
        if not unique:
            raise ValueError("A task needs at least one device serial")
        task = create_task(id=task_id or new_task_id(), kind=kind, title=title, serials=unique)
        with self._lock:
            self._commit(add_task(self._state, task))
            self.aggregator.begin(task.id, len(unique))
            if trace_id:
                self.bind_trace(task.id, trace_id)
        logger.info("Task created: %s [%s] %s on %d device(s)", task.id, kind, title, len(unique))
        log_task_event(task.id, "created", kind=kind, title=title, serials=unique)
        return task.id

    def bind_trace(self, task_id: str, trace_id: Optional[str] = None, serial: Optional[str] = None) -> Optional[str]:
        """Correlate ``trace_id`` (minted when omitted) with a task."""
        with self._lock:
            task = self._state.get(task_id)
            if task is None:
                logger.warning("bind_trace for unknown task %s", task_id)
                return None
            trace_id = trace_id or self.router.mint_trace_id()
            self.router.bind_trace(trace_id, task_id, serial)
            self._commit(set_trace(self._state, task_id, trace_id))
            return trace_id

    def bind_serial_for_kind(self, kind: str, serial: str, task_id: str) -> bool:
        with self._lock:
            task = self._state.get(task_id)
            if task is None or serial not in task.devices:
                logger.warning("bind_serial_for_kind ignored: %s/%s not in task %s", kind, serial, task_id)
                return False
            self.router.bind_serial(kind, serial, task_id)
            return True

    # ── Inbound events ────────────────────────────────────────

    def handle_event(self, payload: Union[Mapping[str, Any], BaseModel]) -> bool:
        """Apply one inbound event. Returns False when it was dropped."""
        if isinstance(payload, BaseModel):
            event = payload
        else:
            try:
                event = parse_event(payload)
            except InvalidEvent as exc:
                logger.warning("Dropping malformed event: %s", exc)
                return False

        if isinstance(event, LineBatchEvent):
            self.logs.extend(event.serial, event.all_lines())
            return True
        if isinstance(event, DeviceStateEvent):
            with self._lock:
                self._device_states[event.serial] = event.summary
            return True
        if isinstance(event, ProgressEvent):
            return self._on_progress(event)
        if isinstance(event, CompleteEvent):
            return self._on_complete(event)
        logger.warning("Dropping unsupported event type: %s", type(event).__name__)
        return False

    def _route(self, kind: str, serial: Optional[str], trace_id: Optional[str]) -> Optional[Tuple[str, str]]:
        task_id: Optional[str] = None
        if trace_id:
            binding = self.router.lookup_trace(trace_id)
            if binding is not None:
                task_id = binding.task_id
                serial = serial or binding.serial
        if task_id is None and serial:
            task_id = self.router.lookup_serial(kind, serial)
            if task_id is None:
                task_id = find_running_task_for_serial(self._state.items, kind, serial)
        if task_id is None:
            logger.debug("No task for event (kind=%s serial=%s trace=%s), dropped", kind, serial, trace_id)
            return None

        task = self._state.get(task_id)
        if task is None:
            logger.debug("Task %s no longer in history, event dropped", task_id)
            return None
        if serial is None and len(task.devices) == 1:
            serial = next(iter(task.devices))
        if serial is None or serial not in task.devices:
            logger.debug("Serial %s not part of task %s, event dropped", serial, task_id)
            return None
        return task_id, serial

    def _on_progress(self, event: ProgressEvent) -> bool:
        with self._lock:
            target = self._route(event.kind, event.serial, event.trace_id)
            if target is None:
                return False
            task_id, serial = target
            patch: Dict[str, Any] = {"progress": event.progress}
            if event.message is not None:
                patch["message"] = event.message
            self._commit(update_device(self._state, task_id, serial, patch))
            return True

    def _on_complete(self, event: CompleteEvent) -> bool:
        with self._lock:
            target = self._route(event.kind, event.serial, event.trace_id)
            if target is None:
                return False
            task_id, serial = target
            result = event.result
            patch: Dict[str, Any] = {}
            if result.output_path is not None:
                patch["output_path"] = result.output_path
            if result.error is not None:
                patch["message"] = result.error
            if result.exit_code is not None:
                patch["exit_code"] = result.exit_code
            if result.status == "success":
                patch["progress"] = 100
            self._finish_device(task_id, serial, result.status, patch)
            return True

    # ── Synchronous result path ───────────────────────────────

    def _finish_device(self, task_id: str, serial: str, status: str, patch: Mapping[str, Any]) -> None:
        merged = dict(patch)
        merged["status"] = status
        self._commit(update_device(self._state, task_id, serial, merged))

        task = self._state.get(task_id)
        if task is None:
            return
        self.router.unbind_serial(task.kind, serial, task_id)
        still_running = task.has_running_device()
        for trace_id in self.router.traces_for_task(task_id):
            binding = self.router.lookup_trace(trace_id)
            if binding is not None and (binding.serial == serial or (binding.serial is None and not still_running)):
                self.router.unbind_trace(trace_id)

        outcome = self.aggregator.record(task_id, serial, status)
        if outcome is None and self.aggregator.pending(task_id) is None and task.status == "running":
            outcome = _outcome_from_devices(task)
        if outcome is not None:
            self._commit(set_status(self._state, task_id, outcome))

    def update_device(self, task_id: str, serial: str, **patch: Any) -> bool:
        """Patch one device of a task; a terminal ``status`` finishes it."""
        with self._lock:
            task = self._state.get(task_id)
            if task is None or serial not in task.devices:
                logger.debug("update_device dropped for %s/%s", task_id, serial)
                return False
            status = patch.pop("status", None)
            if status is not None and is_terminal(status):
                self._finish_device(task_id, serial, status, patch)
            else:
                self._commit(update_device(self._state, task_id, serial, patch))
            return True

    def complete_device(
        self,
        task_id: str,
        serial: str,
        status: str,
        message: Optional[str] = None,
        output_path: Optional[str] = None,
        stdout: Optional[str] = None,
        stderr: Optional[str] = None,
        exit_code: Optional[int] = None,
    ) -> bool:
        if not is_terminal(status):
            logger.warning("complete_device with non-terminal status %s ignored", status)
            return False
        fields = {
            "message": message,
            "output_path": output_path,
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": exit_code,
        }
        return self.update_device(
            task_id,
            serial,
            status=status,
            **{key: value for key, value in fields.items() if value is not None},
        )

    def set_task_status(self, task_id: str, status: str) -> bool:
        """Set a task-level status directly, bypassing device aggregation."""
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        with self._lock:
            if self._state.get(task_id) is None:
                return False
            if is_terminal(status):
                self.aggregator.discard(task_id)
            self._commit(set_status(self._state, task_id, status))
            return True

    def cancel_task(self, task_id: str) -> bool:
        """Mark every still-running device of a task as cancelled."""
        with self._lock:
            task = self._state.get(task_id)
            if task is None:
                return False
            for serial, entry in task.devices.items():
                if entry.status == "running":
                    self._finish_device(task_id, serial, "cancelled", {})
            return True

    def clear_completed(self) -> int:
        with self._lock:
            before = len(self._state.items)
            self._commit(clear_completed(self._state))
            return before - len(self._state.items)

    # ── Queries ───────────────────────────────────────────────

    def snapshot(self) -> TaskState:
        with self._lock:
            return self._state

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._state.get(task_id)

    def list_tasks(self, kind: Optional[str] = None, status: Optional[str] = None) -> List[Task]:
        with self._lock:
            tasks = list(self._state.items)
        if kind:
            tasks = [t for t in tasks if t.kind == kind]
        if status:
            tasks = [t for t in tasks if t.status == status]
        return tasks

    def resolve_task_id(self, kind: str, preferred_id: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return resolve_task_id(self._state.items, kind, preferred_id)

    def device_summary(self, serial: str) -> Optional[str]:
        with self._lock:
            return self._device_states.get(serial)

    def log_lines(self, serial: str) -> Tuple[LogLine, ...]:
        return self.logs.lines(serial)

    def clear_logs(self, serial: str) -> None:
        self.logs.clear(serial)
