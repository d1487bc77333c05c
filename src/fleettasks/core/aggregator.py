from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Dict, Optional, Set

logger = logging.getLogger("fleettasks.aggregator")


@dataclass
class BatchCounter:
    total: int
    done: int = 0
    has_error: bool = False
    has_cancelled: bool = False
    seen: Set[str] = field(default_factory=set)

    def outcome(self) -> str:
        if self.has_error:
            return "error"
        if self.has_cancelled:
            return "cancelled"
        return "success"


class BatchAggregator:
    """Defers a fan-out task's outcome until every device has finished."""

    def __init__(self) -> None:
        self._counters: Dict[str, BatchCounter] = {}

    def begin(self, task_id: str, total: int) -> None:
        self._counters[task_id] = BatchCounter(total=max(0, total))

    def pending(self, task_id: str) -> Optional[BatchCounter]:
        return self._counters.get(task_id)

    def discard(self, task_id: str) -> bool:
        return self._counters.pop(task_id, None) is not None

    def record(self, task_id: str, serial: str, status: str) -> Optional[str]:
        """Count one device's terminal status.

        Returns the task's final status once the last device reports, and
        None otherwise.  A serial is counted only once per task.
        """
        counter = self._counters.get(task_id)
        if counter is None:
            return None
        if status not in ("success", "error", "cancelled"):
            return None
        if serial in counter.seen:
            logger.debug("Duplicate terminal status for %s/%s ignored", task_id, serial)
            return None
        counter.seen.add(serial)
        counter.done += 1
        if status == "error":
            counter.has_error = True
        elif status == "cancelled":
            counter.has_cancelled = True
        if counter.done < counter.total:
            return None
        del self._counters[task_id]
        return counter.outcome()

    def __len__(self) -> int:
        return len(self._counters)
