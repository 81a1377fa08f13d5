"""Test engine metrics collection."""

from datetime import datetime, timezone

import pytest

from flowengine.metrics import EngineMetrics, ExecutionStatistics


@pytest.mark.unit
class TestEngineMetrics:
    """Counters, gauges and histograms."""

    def test_counters_with_tags(self):
        metrics = EngineMetrics()
        metrics.increment("requests")
        metrics.increment("requests", 2, tags={"status": "ok"})

        assert metrics.get_counter("requests") == 1
        assert metrics.get_counter("requests", {"status": "ok"}) == 2
        assert metrics.get_counter("missing") == 0

    def test_gauges_and_histograms(self):
        metrics = EngineMetrics()
        metrics.gauge("queue_depth", 3)
        metrics.histogram("latency_ms", 10)
        metrics.histogram("latency_ms", 30)

        assert metrics.get_gauge("queue_depth") == 3
        assert metrics.get_histogram("latency_ms") == [10, 30]

        metrics.reset()
        assert metrics.get_gauge("queue_depth") is None
        assert metrics.get_histogram("latency_ms") == []

    def test_statistics(self):
        metrics = EngineMetrics()
        finished = datetime(2024, 1, 1, tzinfo=timezone.utc)
        metrics.record_execution("success", 100, finished)
        metrics.record_execution("success", 300, finished)
        metrics.record_execution("timeout", None, finished)
        metrics.record_node("set", "success", duration_ms=20)
        metrics.record_node("set", "error", duration_ms=40, error="bad value")
        metrics.record_node("set", "skipped")

        stats = metrics.statistics()

        assert stats.total_executions == 3
        assert stats.success_count == 2
        assert stats.timeout_count == 1
        assert stats.average_time_ms == 200
        assert stats.last_execution == finished
        node = stats.node_stats["set"]
        assert node.execution_count == 2
        assert node.skipped_count == 1
        assert node.average_time_ms == 30
        assert node.last_error == "bad value"

    def test_success_rate(self):
        assert ExecutionStatistics().success_rate == 0.0
        assert ExecutionStatistics(total_executions=4, success_count=3).success_rate == 75.0

    def test_histograms_are_bounded(self):
        metrics = EngineMetrics(histogram_size=3)
        for duration in range(1, 201):
            metrics.record_execution("success", duration, None)
            metrics.record_node("noOp", "success", duration_ms=duration)

        assert metrics.get_histogram("execution_duration_ms") == [198, 199, 200]
        assert len(metrics.get_histogram("node_duration_ms", {"node_type": "noOp"})) == 3

        stats = metrics.statistics()
        assert stats.total_executions == 200
        assert stats.average_time_ms == 100
        assert stats.node_stats["noOp"].average_time_ms == 100

    def test_node_type_with_separators(self):
        metrics = EngineMetrics()
        metrics.record_node("vendor,ok", "success", duration_ms=10)
        metrics.record_node("key=value", "error", error="boom")

        stats = metrics.statistics()

        assert set(stats.node_stats) == {"vendor,ok", "key=value"}
        assert stats.node_stats["vendor,ok"].success_count == 1
        assert stats.node_stats["key=value"].last_error == "boom"

        metrics.reset()
        assert metrics.statistics().node_stats == {}
