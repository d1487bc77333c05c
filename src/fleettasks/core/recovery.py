"""Pick which task of a kind should be shown after a reload.

Candidates are compared on ``started_at`` with a strict "greater than", so
on equal timestamps the earlier entry in the newest-first collection wins.
"""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from fleettasks.core.tasks import Task


def _most_recent(candidates: Iterable[Task]) -> Optional[Task]:
    best: Optional[Task] = None
    for task in candidates:
        if best is None or task.started_at > best.started_at:
            best = task
    return best


def _is_running(task: Task) -> bool:
    # A terminal task with a device still marked running is treated as
    # running. TODO: find out whether upstream event ordering can leave a
    # device running after the task finished, and fix it there.
    return task.status == "running" or task.has_running_device()


def find_most_recent_task_id(tasks: Sequence[Task], kind: str) -> Optional[str]:
    best = _most_recent(t for t in tasks if t.kind == kind)
    return best.id if best else None


def find_most_recent_running_task_id(tasks: Sequence[Task], kind: str) -> Optional[str]:
    best = _most_recent(t for t in tasks if t.kind == kind and _is_running(t))
    return best.id if best else None


def resolve_task_id(tasks: Sequence[Task], kind: str, preferred_id: Optional[str] = None) -> Optional[str]:
    if preferred_id and any(t.id == preferred_id and t.kind == kind for t in tasks):
        return preferred_id
    return find_most_recent_running_task_id(tasks, kind) or find_most_recent_task_id(tasks, kind)


def find_running_task_for_serial(tasks: Sequence[Task], kind: str, serial: str) -> Optional[str]:
    """Most recent task of ``kind`` that still has work for ``serial``."""

    def _has_work(task: Task) -> bool:
        entry = task.devices.get(serial)
        if entry is None:
            return False
        return entry.status == "running" or task.status == "running"

    best = _most_recent(t for t in tasks if t.kind == kind and _has_work(t))
    return best.id if best else None
