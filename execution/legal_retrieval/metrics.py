"""
Metrics Collection for Hybrid Legal Retrieval

Tracks latency, result counts and degrade events (branch failures,
timeouts, all-branches-failed, cancellations) per retrieve() call.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class RetrievalMetrics:
    """Metrics for a single retrieve() call."""
    query_hash: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    results_count: int = 0
    merged_count: int = 0
    failed_methods: list = field(default_factory=list)
    all_branches_failed: bool = False
    cancelled: bool = False
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated retrieval metrics."""
    total_retrievals: int = 0
    successful_retrievals: int = 0
    degraded_retrievals: int = 0  # at least one branch failed
    empty_retrievals: int = 0
    cancelled_retrievals: int = 0
    all_branches_failed: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    total_results: int = 0

    # Branch failures by method ("vector", "keyword", "graph_citation")
    branch_failures: dict = field(default_factory=lambda: defaultdict(int))
    branch_timeouts: dict = field(default_factory=lambda: defaultdict(int))

    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average retrieval latency."""
        if self.total_retrievals == 0:
            return 0
        return self.total_latency_ms / self.total_retrievals

    def _percentile(self, fraction: float) -> float:
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * fraction)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p95_latency_ms(self) -> float:
        return self._percentile(0.95)

    @property
    def p99_latency_ms(self) -> float:
        return self._percentile(0.99)

    @property
    def avg_results(self) -> float:
        if self.successful_retrievals == 0:
            return 0
        return self.total_results / self.successful_retrievals

    @property
    def degraded_rate(self) -> float:
        if self.total_retrievals == 0:
            return 0
        return self.degraded_retrievals / self.total_retrievals

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "retrievals": {
                "total": self.total_retrievals,
                "successful": self.successful_retrievals,
                "degraded": self.degraded_retrievals,
                "empty": self.empty_retrievals,
                "cancelled": self.cancelled_retrievals,
                "all_branches_failed": self.all_branches_failed,
                "degraded_rate": f"{self.degraded_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "results": {
                "total": self.total_results,
                "avg_per_retrieval": round(self.avg_results, 2),
            },
            "branches": {
                "failures": dict(self.branch_failures),
                "timeouts": dict(self.branch_timeouts),
            },
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates retrieval metrics.

    Usage:
        collector = get_metrics_collector()

        with collector.track_retrieval(query_hash) as tracker:
            result = retriever.retrieve(query)
            tracker.set_result(result.retrieval_stats)

        metrics = collector.get_metrics_dict()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._lock = threading.Lock()
        self._history: list[RetrievalMetrics] = []
        self._max_history = 1000
        self._start_time = datetime.now()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._history = []
            self._start_time = datetime.now()

    class RetrievalTracker:
        """Context manager for tracking one retrieve() call."""

        def __init__(self, collector: 'MetricsCollector', query_hash: str):
            self.collector = collector
            self.record = RetrievalMetrics(query_hash=query_hash, start_time=time.time())

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.record.end_time = time.time()
            self.record.latency_ms = (self.record.end_time - self.record.start_time) * 1000

            if exc_type:
                if exc_type.__name__ == "RetrievalCancelled":
                    self.record.cancelled = True
                else:
                    self.record.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_retrieval(self.record)
            return False  # Don't suppress exceptions

        def set_result(self, stats) -> None:
            """Copy counts and degrade flags from a RetrievalStats."""
            self.record.results_count = stats.final_count
            self.record.merged_count = stats.merged_count
            self.record.failed_methods = list(stats.failed_methods)
            self.record.all_branches_failed = stats.all_branches_failed

    def track_retrieval(self, query_hash: str) -> RetrievalTracker:
        return self.RetrievalTracker(self, query_hash)

    def _record_retrieval(self, record: RetrievalMetrics):
        with self._lock:
            m = self.metrics
            m.total_retrievals += 1

            if record.cancelled:
                m.cancelled_retrievals += 1
            elif not record.error:
                m.successful_retrievals += 1
                m.total_results += record.results_count
                if record.results_count == 0:
                    m.empty_retrievals += 1
            if record.failed_methods:
                m.degraded_retrievals += 1
                for method in record.failed_methods:
                    m.branch_failures[method] += 1
            if record.all_branches_failed:
                m.all_branches_failed += 1

            m.total_latency_ms += record.latency_ms
            m.min_latency_ms = min(m.min_latency_ms, record.latency_ms)
            m.max_latency_ms = max(m.max_latency_ms, record.latency_ms)
            m.latencies.append(record.latency_ms)
            if len(m.latencies) > self._max_history:
                m.latencies = m.latencies[-self._max_history:]

            self._history.append(record)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

    def _record_error(self, error_type: str):
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def record_branch_timeout(self, method: str):
        """Record a branch that exceeded the branch timeout."""
        with self._lock:
            self.metrics.branch_timeouts[method] += 1

    def get_metrics(self) -> SystemMetrics:
        return self.metrics

    def get_metrics_dict(self) -> dict:
        with self._lock:
            return self.metrics.to_dict()

    def get_recent_retrievals(self, limit: int = 10) -> list[RetrievalMetrics]:
        return self._history[-limit:]

    def get_uptime(self) -> timedelta:
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
