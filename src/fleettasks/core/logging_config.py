"""Logging setup for the task service.

Everything under the ``fleettasks`` logger namespace goes to stdout and to
a size-rotated file.  Task lifecycle records (created / finished) are also
written, one JSON object per line, to a separate file so they can be
tailed or grepped without the surrounding debug noise::

    <log_dir>/
    ├── fleettasks.log     # human readable, rotating
    └── task-events.log    # JSONL task lifecycle records, rotating
"""
from __future__ import annotations

import glob
import json
import logging
import logging.handlers
import os
import time
from typing import Any

MAIN_LOG = "fleettasks.log"
TASK_EVENTS_LOG = "task-events.log"
ROTATE_BYTES = 10 * 1024 * 1024
ROTATE_BACKUPS = 5
MAX_FIELD_CHARS = 2000

task_event_logger = logging.getLogger("fleettasks._task_events")

_FORMAT = logging.Formatter(
    "%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)


def _rotating(path: str, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=ROTATE_BYTES, backupCount=ROTATE_BACKUPS, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def clear_logs(log_dir: str) -> int:
    """Delete rotated and current log files. Returns how many were removed."""
    removed = 0
    for path in glob.glob(os.path.join(log_dir, "*.log*")):
        try:
            os.remove(path)
            removed += 1
        except OSError:
            continue
    return removed


def setup_logging(log_dir: str, log_level: str = "info", *, clear_on_launch: bool = False) -> None:
    """Attach stdout, file and task-event handlers. Call once at startup."""
    if clear_on_launch and os.path.isdir(log_dir):
        clear_logs(log_dir)
    os.makedirs(log_dir, exist_ok=True)

    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(_FORMAT)
    root.addHandler(console)
    root.addHandler(_rotating(os.path.join(log_dir, MAIN_LOG), logging.DEBUG, _FORMAT))

    # records are pre-serialized JSON; keep them out of the main log
    task_event_logger.setLevel(logging.INFO)
    task_event_logger.propagate = False
    task_event_logger.handlers.clear()
    task_event_logger.addHandler(
        _rotating(os.path.join(log_dir, TASK_EVENTS_LOG), logging.INFO, logging.Formatter("%(message)s"))
    )

    logging.getLogger("fleettasks").info("Logging to %s at level %s", log_dir, log_level)


def log_task_event(task_id: str, event: str, **fields: Any) -> None:
    """Append one lifecycle record for ``task_id`` to the task-events log."""
    record: dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "task_id": task_id,
        "event": event,
    }
    for key, value in fields.items():
        record[key] = value[:MAX_FIELD_CHARS] if isinstance(value, str) else value
    task_event_logger.info(json.dumps(record, default=str))
