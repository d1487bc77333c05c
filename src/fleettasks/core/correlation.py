"""Correlation of inbound events to the task that owns them.

Inbound events never carry a task id.  File transfers report progress by a
trace id minted at dispatch time; long-running per-device operations such
as bugreports report by device serial.  A serial is in flight in at most one
operation of a given kind, so ``(kind, serial)`` is a safe key.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, Optional, Tuple
import uuid

logger = logging.getLogger("fleettasks.correlation")


@dataclass(frozen=True)
class TraceBinding:
    task_id: str
    serial: Optional[str] = None


class CorrelationRouter:
    """Two independent maps: trace id -> task, and (kind, serial) -> task."""

    def __init__(self) -> None:
        self._by_trace: Dict[str, TraceBinding] = {}
        self._by_serial: Dict[Tuple[str, str], str] = {}

    @staticmethod
    def mint_trace_id() -> str:
        return f"trace-{uuid.uuid4().hex}"

    # ── Trace ids ─────────────────────────────────────────────

    def bind_trace(self, trace_id: str, task_id: str, serial: Optional[str] = None) -> TraceBinding:
        binding = TraceBinding(task_id=task_id, serial=serial)
        previous = self._by_trace.get(trace_id)
        if previous is not None and previous != binding:
            logger.warning("Trace %s rebound from %s to %s", trace_id, previous.task_id, task_id)
        self._by_trace[trace_id] = binding
        return binding

    def lookup_trace(self, trace_id: str) -> Optional[TraceBinding]:
        return self._by_trace.get(trace_id)

    def unbind_trace(self, trace_id: str) -> bool:
        return self._by_trace.pop(trace_id, None) is not None

    # ── Serials scoped to an operation kind ───────────────────

    def bind_serial(self, kind: str, serial: str, task_id: str) -> None:
        previous = self._by_serial.get((kind, serial))
        if previous is not None and previous != task_id:
            logger.info("Serial %s (%s) moved from %s to %s", serial, kind, previous, task_id)
        self._by_serial[(kind, serial)] = task_id

    def lookup_serial(self, kind: str, serial: str) -> Optional[str]:
        return self._by_serial.get((kind, serial))

    def unbind_serial(self, kind: str, serial: str, task_id: Optional[str] = None) -> bool:
        """Drop a serial binding; with ``task_id`` only if it still owns it."""
        key = (kind, serial)
        current = self._by_serial.get(key)
        if current is None or (task_id is not None and current != task_id):
            return False
        del self._by_serial[key]
        return True

    def forget_task(self, task_id: str) -> int:
        """Drop every binding owned by ``task_id``. Returns the number removed."""
        traces = [t for t, b in self._by_trace.items() if b.task_id == task_id]
        serials = [k for k, owner in self._by_serial.items() if owner == task_id]
        for trace_id in traces:
            del self._by_trace[trace_id]
        for key in serials:
            del self._by_serial[key]
        return len(traces) + len(serials)

    def traces_for_task(self, task_id: str) -> list[str]:
        return [t for t, b in self._by_trace.items() if b.task_id == task_id]

    def __len__(self) -> int:
        return len(self._by_trace) + len(self._by_serial)
