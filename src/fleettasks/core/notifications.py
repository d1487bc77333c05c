"""User-facing notifications for finished tasks."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from fleettasks.core.tasks import Task, is_terminal, summarize_task


@dataclass(frozen=True)
class TaskNotification:
    task_id: str
    status: str             # success|error|cancelled
    title: str
    body: str

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "title": self.title,
            "body": self.body,
        }


_STATUS_LABELS = {"success": "Success", "cancelled": "Cancelled", "error": "Error"}


def detect_newly_completed(prev_items: Sequence[Task], next_items: Sequence[Task]) -> List[Task]:
    """Tasks that were running in ``prev_items`` and are terminal in ``next_items``."""
    prev_status = {item.id: item.status for item in prev_items}
    return [
        item
        for item in next_items
        if prev_status.get(item.id) == "running" and is_terminal(item.status)
    ]


def _counts_label(task: Task) -> str:
    serials, counts = summarize_task(task)
    parts = []
    if counts["success"]:
        parts.append(f"{counts['success']} ok")
    if counts["error"]:
        parts.append(f"{counts['error']} error")
    if counts["cancelled"]:
        parts.append(f"{counts['cancelled']} cancelled")
    if counts["running"]:
        parts.append(f"{counts['running']} running")
    total = len(serials)
    device_label = "1 device" if total == 1 else f"{total} devices"
    details = f" ({', '.join(parts)})" if parts else ""
    return f"{device_label}{details}"


def build_notification(task: Task) -> Optional[TaskNotification]:
    if not is_terminal(task.status):
        return None
    label = _STATUS_LABELS.get(task.status, "Error")
    return TaskNotification(
        task_id=task.id,
        status=task.status,
        title=task.title,
        body=f"{label} - {_counts_label(task)}. Check Task Center.",
    )


def derive_notifications(prev_items: Sequence[Task], next_items: Sequence[Task]) -> List[TaskNotification]:
    notifications = []
    for task in detect_newly_completed(prev_items, next_items):
        notification = build_notification(task)
        if notification is not None:
            notifications.append(notification)
    return notifications
