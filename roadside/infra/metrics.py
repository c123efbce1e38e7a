from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from roadside.infra.logging_config import get_logger

logger = get_logger(__name__)

# The monitor and HTTP layer observe forever; keep only recent samples.
HISTOGRAM_WINDOW = 1000


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Rolling window of observations (latencies, tick durations)"""
    values: deque = field(default_factory=lambda: deque(maxlen=HISTOGRAM_WINDOW))
    total_count: int = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}

        window = sorted(self.values)
        n = len(window)

        def pct(p: float) -> float:
            return window[min(int(n * p), n - 1)]

        return {
            "count": self.total_count,
            "min": window[0],
            "max": window[-1],
            "avg": round(sum(window) / n, 6),
            "p50": pct(0.50),
            "p95": pct(0.95),
        }


class MetricsCollector:
    """
    Lightweight in-process metrics collection.
    Each process keeps its own numbers; scrape every instance.
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_counter(self, name: str, **labels) -> int:
        """Current value of a single counter (0 if never incremented)"""
        key = self._make_key(name, labels or None)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


# Global metrics collector
_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    """Increment a counter metric"""
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    """Record a histogram value"""
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager to time operations"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            observe_histogram(self.metric_name, duration, **self.labels)


class DispatchMetrics:
    """Dispatch-level metrics tracking"""

    @staticmethod
    def bid_submission(outcome: str) -> None:
        inc_counter("bid_submissions_total", outcome=outcome)

    @staticmethod
    def bid_selection(outcome: str) -> None:
        inc_counter("bid_selections_total", outcome=outcome)

    @staticmethod
    def status_transition(from_status: str, to_status: str) -> None:
        inc_counter("job_transitions_total", from_status=from_status, to_status=to_status)

    @staticmethod
    def transition_rejected() -> None:
        inc_counter("job_transitions_rejected_total")

    @staticmethod
    def unbid_alert(outcome: str) -> None:
        inc_counter("unbid_alerts_total", outcome=outcome)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_submission_time() -> Timer:
        return Timer("bid_submission_seconds")

    @staticmethod
    def track_selection_time() -> Timer:
        return Timer("bid_selection_seconds")

    @staticmethod
    def track_tick_time() -> Timer:
        return Timer("unbid_monitor_tick_seconds")
