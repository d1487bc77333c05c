"""Tests for multi-device outcome aggregation."""
from __future__ import annotations

import pytest

from fleettasks.core.aggregator import BatchAggregator


class TestBatchAggregator:
    def test_waits_for_every_device(self):
        agg = BatchAggregator()
        agg.begin("T", 3)
        assert agg.record("T", "A", "success") is None
        assert agg.record("T", "B", "success") is None
        assert agg.record("T", "C", "success") == "success"
        assert agg.pending("T") is None

    def test_error_beats_success(self):
        agg = BatchAggregator()
        agg.begin("T", 3)
        agg.record("T", "A", "success")
        agg.record("T", "B", "error")
        assert agg.record("T", "C", "success") == "error"

    def test_error_beats_cancelled(self):
        agg = BatchAggregator()
        agg.begin("T", 2)
        agg.record("T", "A", "cancelled")
        assert agg.record("T", "B", "error") == "error"

    def test_cancelled_beats_success(self):
        agg = BatchAggregator()
        agg.begin("T", 2)
        agg.record("T", "A", "success")
        assert agg.record("T", "B", "cancelled") == "cancelled"

    def test_duplicate_serial_counted_once(self):
        agg = BatchAggregator()
        agg.begin("T", 2)
        agg.record("T", "A", "success")
        assert agg.record("T", "A", "error") is None
        counter = agg.pending("T")
        assert counter.done == 1
        assert counter.has_error is False
        assert agg.record("T", "B", "success") == "success"

    def test_unknown_task_and_non_terminal_status(self):
        agg = BatchAggregator()
        assert agg.record("missing", "A", "success") is None
        agg.begin("T", 1)
        assert agg.record("T", "A", "running") is None
        assert agg.pending("T").done == 0

    def test_discard(self):
        agg = BatchAggregator()
        agg.begin("T", 2)
        assert agg.discard("T") is True
        assert agg.discard("T") is False
        assert len(agg) == 0

    @pytest.mark.parametrize(
        "statuses, expected",
        [
            (["success"], "success"),
            (["cancelled", "success", "success"], "cancelled"),
            (["success", "cancelled", "error", "success"], "error"),
        ],
    )
    def test_outcome_priority(self, statuses, expected):
        agg = BatchAggregator()
        agg.begin("T", len(statuses))
        results = [agg.record("T", f"S{i}", status) for i, status in enumerate(statuses)]
        assert results[:-1] == [None] * (len(statuses) - 1)
        assert results[-1] == expected
