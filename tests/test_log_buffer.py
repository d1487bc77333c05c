"""Tests for the coalescing log line buffer."""
from __future__ import annotations

from fleettasks.core.log_buffer import LogCoalescer, LogLine


def _texts(coalescer: LogCoalescer, serial: str) -> list[str]:
    return [line.text for line in coalescer.lines(serial)]


class TestCoalescing:
    def test_lines_hidden_until_flush(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer)
        logs.append("X", "a")
        assert logs.lines("X") == ()
        assert logs.pending_count("X") == 1

    def test_single_timer_armed_per_batch(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer, flush_delay=0.12)
        for text in ("a", "b", "c"):
            logs.append("X", text)
        logs.append("Y", "z")
        assert fake_timer.arm_count == 1
        assert fake_timer.delay == 0.12
        fake_timer.fire()
        assert not fake_timer.is_armed()
        logs.append("X", "d")
        assert fake_timer.arm_count == 2

    def test_flush_assigns_sequential_ids(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer)
        for text in ("a", "b", "c"):
            logs.append("X", text)
        fake_timer.fire()
        assert logs.lines("X") == (LogLine(1, "a"), LogLine(2, "b"), LogLine(3, "c"))
        logs.append("X", "d")
        fake_timer.fire()
        assert logs.lines("X")[-1] == LogLine(4, "d")
        assert [line.id for line in logs.lines("X")] == [1, 2, 3, 4]

    def test_ids_are_per_device(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer)
        logs.append("X", "a")
        logs.append("Y", "b")
        logs.append("X", "c")
        flushed = logs.flush()
        assert flushed == {"X", "Y"}
        assert [line.id for line in logs.lines("X")] == [1, 2]
        assert [line.id for line in logs.lines("Y")] == [1]

    def test_visible_buffer_is_bounded(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer, max_lines=5)
        logs.extend("X", [str(i) for i in range(12)])
        logs.flush()
        assert _texts(logs, "X") == ["7", "8", "9", "10", "11"]
        assert [line.id for line in logs.lines("X")] == [8, 9, 10, 11, 12]

    def test_clear_keeps_counting(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer)
        logs.extend("X", ["a", "b"])
        logs.flush()
        logs.append("X", "pending")
        logs.clear("X")
        assert logs.lines("X") == ()
        assert logs.pending_count("X") == 0
        logs.append("X", "c")
        logs.flush()
        assert logs.lines("X") == (LogLine(3, "c"),)

    def test_ids_strictly_increase_over_many_cycles(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer, max_lines=3)
        last_ids: list[int] = []
        for cycle in range(6):
            logs.extend("X", [f"{cycle}-{i}" for i in range(cycle + 1)])
            if cycle == 3:
                logs.clear("X")
                logs.append("X", "after-clear")
            fake_timer.fire()
            ids = [line.id for line in logs.lines("X")]
            assert ids == sorted(set(ids))
            last_ids.append(logs.last_id("X"))
        assert last_ids == sorted(set(last_ids))
        # clear() in cycle 3 drops its four pending lines before they get ids
        assert last_ids[-1] == 1 + 2 + 3 + 1 + 5 + 6

    def test_flush_notifies_listeners(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer)
        calls: list[set[str]] = []
        logs.add_listener(calls.append)
        logs.flush()
        assert calls == []
        logs.append("X", "a")
        fake_timer.fire()
        assert calls == [{"X"}]

    def test_failing_listener_does_not_break_flush(self, fake_timer):
        logs = LogCoalescer(timer=fake_timer)

        def _boom(serials):
            raise RuntimeError("listener broke")

        logs.add_listener(_boom)
        logs.append("X", "a")
        fake_timer.fire()
        assert _texts(logs, "X") == ["a"]
