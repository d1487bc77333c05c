from __future__ import annotations

from typing import Callable, Optional

import pytest


class FakeTimer:
    """Manually fired stand-in for ``ThreadTimer``."""

    def __init__(self, name: str = "fake") -> None:
        self.name = name
        self.delay: Optional[float] = None
        self.arm_count = 0
        self._callback: Optional[Callable[[], None]] = None

    def arm(self, delay: float, callback: Callable[[], None]) -> bool:
        if self._callback is not None:
            return False
        self.delay = delay
        self.arm_count += 1
        self._callback = callback
        return True

    def is_armed(self) -> bool:
        return self._callback is not None

    def cancel(self) -> None:
        self._callback = None

    def fire(self) -> None:
        callback, self._callback = self._callback, None
        if callback is not None:
            callback()


@pytest.fixture
def fake_timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def timer_factory():
    timers: dict[str, FakeTimer] = {}

    def _factory(name: str) -> FakeTimer:
        timers[name] = FakeTimer(name)
        return timers[name]

    _factory.timers = timers  # type: ignore[attr-defined]
    return _factory
