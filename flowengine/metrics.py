"""Execution metrics and statistics."""

from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class NodeStats(BaseModel):
    """Statistics for a single node type."""

    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    average_time_ms: int = 0
    last_error: Optional[str] = None


class ExecutionStatistics(BaseModel):
    """Aggregated execution statistics."""

    total_executions: int = 0
    success_count: int = 0
    error_count: int = 0
    cancelled_count: int = 0
    timeout_count: int = 0
    running_count: int = 0
    average_time_ms: int = 0
    last_execution: Optional[datetime] = None
    node_stats: Dict[str, NodeStats] = Field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Calculate success rate."""
        if self.total_executions == 0:
            return 0.0
        return (self.success_count / self.total_executions) * 100


class EngineMetrics:
    """Simple metrics collector for the execution engine.

    Histograms keep only the most recent ``histogram_size`` samples; averages
    come from running totals so they still cover every recorded value.
    """

    def __init__(self, histogram_size: int = 1000):
        self.histogram_size = histogram_size
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Deque[float]] = {}
        self._totals: Dict[str, Tuple[int, float]] = {}
        self._node_types: Dict[str, None] = {}
        self._last_execution: Optional[datetime] = None
        self._last_errors: Dict[str, str] = {}

    def increment(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, tags)
        self._counters[key] = self._counters.get(key, 0) + value

    def gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Set a gauge metric."""
        key = self._make_key(name, tags)
        self._gauges[key] = value

    def histogram(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a histogram metric."""
        key = self._make_key(name, tags)
        if key not in self._histograms:
            self._histograms[key] = deque(maxlen=self.histogram_size)
        self._histograms[key].append(value)
        count, total = self._totals.get(key, (0, 0.0))
        self._totals[key] = (count + 1, total + value)

    def _make_key(self, name: str, tags: Optional[Dict[str, str]] = None) -> str:
        """Create a metric key with optional tags."""
        if not tags:
            return name
        tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name},{tag_str}"

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> int:
        """Get counter value."""
        key = self._make_key(name, tags)
        return self._counters.get(key, 0)

    def get_gauge(self, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Get gauge value."""
        key = self._make_key(name, tags)
        return self._gauges.get(key)

    def get_histogram(self, name: str, tags: Optional[Dict[str, str]] = None) -> List[float]:
        """Get the retained histogram samples, oldest first."""
        key = self._make_key(name, tags)
        return list(self._histograms.get(key, ()))

    def get_average(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        """Mean of every value ever recorded for a histogram."""
        count, total = self._totals.get(self._make_key(name, tags), (0, 0.0))
        return total / count if count else 0.0

    def record_execution(self, status: str, duration_ms: Optional[int], finished_at: Optional[datetime]) -> None:
        """Record a finished execution."""
        self.increment("executions_total")
        self.increment("executions_total", tags={"status": status})
        if duration_ms is not None:
            self.histogram("execution_duration_ms", duration_ms)
        if finished_at is not None:
            self._last_execution = finished_at

    def record_node(
        self,
        node_type: str,
        status: str,
        duration_ms: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a node reaching a terminal status."""
        self._node_types[node_type] = None
        self.increment("node_runs_total", tags={"node_type": node_type, "status": status})
        if duration_ms is not None:
            self.histogram("node_duration_ms", duration_ms, tags={"node_type": node_type})
        if error:
            self._last_errors[node_type] = error

    def statistics(self) -> ExecutionStatistics:
        """Build an aggregated statistics snapshot."""
        stats = ExecutionStatistics(
            total_executions=self.get_counter("executions_total"),
            success_count=self.get_counter("executions_total", {"status": "success"}),
            error_count=self.get_counter("executions_total", {"status": "error"}),
            cancelled_count=self.get_counter("executions_total", {"status": "cancelled"}),
            timeout_count=self.get_counter("executions_total", {"status": "timeout"}),
            average_time_ms=int(self.get_average("execution_duration_ms")),
            last_execution=self._last_execution,
        )

        for node_type in sorted(self._node_types):
            counts = {
                status: self.get_counter(
                    "node_runs_total", {"node_type": node_type, "status": status}
                )
                for status in ("success", "error", "skipped")
            }
            stats.node_stats[node_type] = NodeStats(
                execution_count=counts["success"] + counts["error"],
                success_count=counts["success"],
                error_count=counts["error"],
                skipped_count=counts["skipped"],
                average_time_ms=int(self.get_average("node_duration_ms", {"node_type": node_type})),
                last_error=self._last_errors.get(node_type),
            )

        return stats

    def reset(self) -> None:
        """Reset all metrics."""
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()
        self._totals.clear()
        self._node_types.clear()
        self._last_errors.clear()
        self._last_execution = None
