"""Single-shot timers used for log flushing and persistence debounce.

A timer is armed on the leading edge only: ``arm`` while already armed is
a no-op and returns False.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

logger = logging.getLogger("fleettasks.timers")


class Timer(Protocol):
    def arm(self, delay: float, callback: Callable[[], None]) -> bool: ...

    def is_armed(self) -> bool: ...

    def cancel(self) -> None: ...


class ThreadTimer:
    """``Timer`` backed by a daemon ``threading.Timer``."""

    def __init__(self, name: str = "fleettasks-timer") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def arm(self, delay: float, callback: Callable[[], None]) -> bool:
        with self._lock:
            if self._timer is not None:
                return False
            timer = threading.Timer(max(0.0, delay), self._fire)
            timer.args = (timer, callback)
            timer.daemon = True
            timer.name = self.name
            self._timer = timer
        timer.start()
        return True

    def _fire(self, timer: threading.Timer, callback: Callable[[], None]) -> None:
        with self._lock:
            # a cancel followed by a re-arm may have replaced the handle
            if self._timer is timer:
                self._timer = None
        try:
            callback()
        except Exception:  # noqa: BLE001
            logger.exception("Timer %s callback failed", self.name)

    def is_armed(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
