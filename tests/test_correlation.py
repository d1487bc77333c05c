"""Tests for trace and serial correlation."""
from __future__ import annotations

from fleettasks.core.correlation import CorrelationRouter, TraceBinding


class TestTraceBindings:
    def test_minted_ids_are_unique(self):
        router = CorrelationRouter()
        ids = {router.mint_trace_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(trace_id.startswith("trace-") for trace_id in ids)

    def test_bind_and_lookup(self):
        router = CorrelationRouter()
        router.bind_trace("trace-1", "task-1", serial="A")
        assert router.lookup_trace("trace-1") == TraceBinding(task_id="task-1", serial="A")
        assert router.lookup_trace("trace-2") is None

    def test_unbind(self):
        router = CorrelationRouter()
        router.bind_trace("trace-1", "task-1")
        assert router.unbind_trace("trace-1") is True
        assert router.unbind_trace("trace-1") is False
        assert router.lookup_trace("trace-1") is None

    def test_traces_for_task(self):
        router = CorrelationRouter()
        router.bind_trace("t1", "task-1", serial="A")
        router.bind_trace("t2", "task-1", serial="B")
        router.bind_trace("t3", "task-2")
        assert sorted(router.traces_for_task("task-1")) == ["t1", "t2"]


class TestSerialBindings:
    def test_scoped_by_kind(self):
        router = CorrelationRouter()
        router.bind_serial("bugreport", "A", "task-1")
        assert router.lookup_serial("bugreport", "A") == "task-1"
        assert router.lookup_serial("screen_record_stop", "A") is None

    def test_rebinding_moves_ownership(self):
        router = CorrelationRouter()
        router.bind_serial("bugreport", "A", "task-1")
        router.bind_serial("bugreport", "A", "task-2")
        assert router.lookup_serial("bugreport", "A") == "task-2"
        assert len(router) == 1

    def test_unbind_only_when_owner_matches(self):
        router = CorrelationRouter()
        router.bind_serial("bugreport", "A", "task-2")
        assert router.unbind_serial("bugreport", "A", task_id="task-1") is False
        assert router.lookup_serial("bugreport", "A") == "task-2"
        assert router.unbind_serial("bugreport", "A", task_id="task-2") is True
        assert router.unbind_serial("bugreport", "A") is False

    def test_forget_task_drops_everything_it_owns(self):
        router = CorrelationRouter()
        router.bind_trace("t1", "task-1")
        router.bind_serial("bugreport", "A", "task-1")
        router.bind_serial("bugreport", "B", "task-2")
        assert router.forget_task("task-1") == 2
        assert router.lookup_trace("t1") is None
        assert router.lookup_serial("bugreport", "A") is None
        assert router.lookup_serial("bugreport", "B") == "task-2"
        assert len(router) == 1
