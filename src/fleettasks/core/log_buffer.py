"""Coalescing buffer for per-device log lines.

Devices can emit thousands of lines per second.  Lines first land in a
per-device pending list; a single timer, armed by the first line after a
flush, moves every pending line into the visible ring buffer in one batch.
Listeners therefore see at most one update per flush interval.

Line ids are per device, start at 1 and are never reused for the lifetime
of the buffer, even across ``clear``.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
import threading
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from fleettasks.core.timers import ThreadTimer, Timer

logger = logging.getLogger("fleettasks.log_buffer")

DEFAULT_FLUSH_DELAY = 0.120
DEFAULT_MAX_LINES = 2000

FlushListener = Callable[[Set[str]], None]


@dataclass(frozen=True)
class LogLine:
    id: int
    text: str


class LogCoalescer:
    def __init__(
        self,
        timer: Optional[Timer] = None,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
        max_lines: int = DEFAULT_MAX_LINES,
    ) -> None:
        self.flush_delay = flush_delay
        self.max_lines = max(1, max_lines)
        self._timer: Timer = timer if timer is not None else ThreadTimer("log-flush")
        self._lock = threading.RLock()
        self._pending: Dict[str, List[str]] = {}
        self._visible: Dict[str, Deque[LogLine]] = {}
        self._last_id: Dict[str, int] = {}
        self._listeners: List[FlushListener] = []

    def add_listener(self, listener: FlushListener) -> None:
        self._listeners.append(listener)

    def append(self, serial: str, line: str) -> None:
        self.extend(serial, (line,))

    def extend(self, serial: str, lines: Iterable[str]) -> None:
        with self._lock:
            pending = self._pending.setdefault(serial, [])
            pending.extend(lines)
            if pending and not self._timer.is_armed():
                self._timer.arm(self.flush_delay, self.flush)

    def flush(self) -> Set[str]:
        """Move pending lines into the visible buffers. Returns flushed serials."""
        with self._lock:
            self._timer.cancel()
            flushed: Set[str] = set()
            for serial, lines in self._pending.items():
                if not lines:
                    continue
                visible = self._visible.get(serial)
                if visible is None:
                    visible = deque(maxlen=self.max_lines)
                    self._visible[serial] = visible
                next_id = self._last_id.get(serial, 0)
                for text in lines:
                    next_id += 1
                    visible.append(LogLine(id=next_id, text=text))
                self._last_id[serial] = next_id
                flushed.add(serial)
            self._pending.clear()
        if flushed:
            for listener in list(self._listeners):
                try:
                    listener(flushed)
                except Exception:  # noqa: BLE001
                    logger.exception("Log flush listener failed")
        return flushed

    def clear(self, serial: str) -> None:
        """Drop pending and visible lines for a device; ids keep counting."""
        with self._lock:
            self._pending.pop(serial, None)
            self._visible.pop(serial, None)

    def lines(self, serial: str) -> Tuple[LogLine, ...]:
        with self._lock:
            return tuple(self._visible.get(serial, ()))

    def pending_count(self, serial: str) -> int:
        with self._lock:
            return len(self._pending.get(serial, ()))

    def last_id(self, serial: str) -> int:
        with self._lock:
            return self._last_id.get(serial, 0)

    def serials(self) -> List[str]:
        with self._lock:
            return sorted(set(self._visible) | set(self._pending))

    def close(self) -> None:
        self._timer.cancel()
