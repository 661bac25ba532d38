"""
Metrics Collector - Prometheus + Internal Metrics
==================================================

Centralized metrics for pipeline executions and stage attempts.

Design:
  - One CollectorRegistry per collector, so tests can build isolated instances
  - Pre-defined metrics for executions, attempts, stage results and durations
  - Rolling latency percentiles per service type for the summary endpoint

Metric Naming Convention:
  - visualflow_{component}_{metric}_{unit}
  - e.g., visualflow_stage_duration_seconds
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ── Percentile Tracker ─────────────────────────────────────────────


class PercentileTracker:
    """Thread-safe rolling window percentile calculator with cached sorting."""

    __slots__ = ("_lock", "_sorted_cache", "_sorted_dirty", "_values")

    def __init__(self, window_size: int = 1000):
        self._values: deque[float] = deque(maxlen=window_size)
        self._lock = threading.Lock()
        self._sorted_dirty = True
        self._sorted_cache: list[float] = []

    def record(self, value: float) -> None:
        with self._lock:
            self._values.append(value)
            self._sorted_dirty = True

    def percentile(self, p: float) -> float:
        """Get percentile value (0-100). Only re-sorts when data changed."""
        with self._lock:
            if not self._values:
                return 0.0
            if self._sorted_dirty:
                self._sorted_cache = sorted(self._values)
                self._sorted_dirty = False
            idx = int(len(self._sorted_cache) * p / 100)
            return self._sorted_cache[min(idx, len(self._sorted_cache) - 1)]

    @property
    def count(self) -> int:
        return len(self._values)

    def mean(self) -> float:
        with self._lock:
            if not self._values:
                return 0.0
            return sum(self._values) / len(self._values)


# ── Collector ──────────────────────────────────────────────────────


class MetricsCollector:
    """
    Centralized metrics collection.

    Pre-defines all orchestration metrics with their labels and keeps
    internal percentile trackers alongside the Prometheus series.
    """

    CONTENT_TYPE = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self._lock = threading.Lock()
        self._latency_trackers: dict[str, PercentileTracker] = {}

        # ── Execution Metrics ──
        self.executions = Counter(
            "visualflow_pipeline_executions_total",
            "Pipeline executions by terminal status",
            labelnames=["status"],
            registry=self.registry,
        )

        self.active_executions = Gauge(
            "visualflow_active_executions",
            "Executions currently running",
            registry=self.registry,
        )

        # ── Stage Metrics ──
        self.stage_attempts = Counter(
            "visualflow_stage_attempts_total",
            "Individual service attempts made by the stage executor",
            labelnames=["service_type", "outcome"],  # outcome: success/error/timeout
            registry=self.registry,
        )

        self.stage_results = Counter(
            "visualflow_stage_results_total",
            "Stage outcomes",
            labelnames=["service_type", "outcome"],  # outcome: success/failure/cache
            registry=self.registry,
        )

        self.stage_duration = Histogram(
            "visualflow_stage_duration_seconds",
            "Wall-clock stage duration including fallbacks",
            labelnames=["service_type"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self.registry,
        )

    # ── Recording Methods ──────────────────────────────────────────

    def record_attempt(self, *, service_type: str, outcome: str) -> None:
        self.stage_attempts.labels(service_type=service_type, outcome=outcome).inc()

    def record_stage(self, *, service_type: str, outcome: str, duration_s: float) -> None:
        """Record a finished stage (after all its attempts)."""
        self._get_latency_tracker(service_type).record(duration_s)
        self.stage_results.labels(service_type=service_type, outcome=outcome).inc()
        self.stage_duration.labels(service_type=service_type).observe(duration_s)

    def execution_started(self) -> None:
        self.active_executions.inc()

    def execution_finished(self, status: str) -> None:
        self.active_executions.dec()
        self.executions.labels(status=status).inc()

    # ── Percentile Access ──────────────────────────────────────────

    def _get_latency_tracker(self, service_type: str) -> PercentileTracker:
        if service_type not in self._latency_trackers:
            with self._lock:
                if service_type not in self._latency_trackers:
                    self._latency_trackers[service_type] = PercentileTracker()
        return self._latency_trackers[service_type]

    def get_summary(self) -> dict[str, Any]:
        """Per service type stage latency percentiles, in seconds."""
        return {
            service_type: {
                "p50": tracker.percentile(50),
                "p95": tracker.percentile(95),
                "p99": tracker.percentile(99),
                "mean": tracker.mean(),
                "count": tracker.count,
            }
            for service_type, tracker in self._latency_trackers.items()
        }

    def render(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)


# ── Singleton ──────────────────────────────────────────────────────

_metrics: MetricsCollector | None = None


def get_metrics() -> MetricsCollector:
    # Lock-free benign-race singleton.
    global _metrics
    if _metrics is not None:
        return _metrics
    _metrics = MetricsCollector()
    return _metrics
