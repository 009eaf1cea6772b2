# chatpush/infra/metrics.py
"""
In-process counters and timing histograms, served as JSON on GET /metrics.

Keys read ``name{label=value,...}`` with labels sorted, e.g.
``push_sends_total{status=failed}``. Histograms keep a sliding window of
the most recent samples so a long-running worker does not grow without
bound.
"""
from __future__ import annotations

import time
from collections import Counter, defaultdict, deque
from threading import Lock
from typing import Iterable

from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

HISTOGRAM_WINDOW = 1000


def metric_key(name: str, labels: dict | None = None) -> str:
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in sorted(labels.items())) + "}"


def summarize(samples: Iterable[float]) -> dict:
    ordered = sorted(samples)
    if not ordered:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

    last = len(ordered) - 1
    return {
        "count": len(ordered),
        "min": ordered[0],
        "max": ordered[-1],
        "avg": sum(ordered) / len(ordered),
        "p95": ordered[min(int(len(ordered) * 0.95), last)],
        "p99": ordered[min(int(len(ordered) * 0.99), last)],
    }


class MetricsCollector:
    """Thread-safe: the job worker and request handlers share one instance."""

    def __init__(self, window: int = HISTOGRAM_WINDOW):
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._samples: defaultdict[str, deque] = defaultdict(lambda: deque(maxlen=window))

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        with self._lock:
            self._counters[metric_key(name, labels)] += amount

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        with self._lock:
            self._samples[metric_key(name, labels)].append(value)

    def get_metrics(self) -> dict:
        with self._lock:
            counters = dict(self._counters)
            samples = {key: list(values) for key, values in self._samples.items()}
        return {
            "counters": counters,
            "histograms": {key: summarize(values) for key, values in samples.items()},
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._samples.clear()
        logger.debug("Metrics reset")


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Records the wall time of a ``with`` block into a histogram (seconds)."""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self._started = 0.0

    def __enter__(self) -> "Timer":
        self._started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        observe_histogram(self.metric_name, time.monotonic() - self._started, **self.labels)


class DispatchMetrics:
    """Named metrics of the fan-out path."""

    @staticmethod
    def send_attempted(success: bool) -> None:
        inc_counter("push_sends_total", status="sent" if success else "failed")

    @staticmethod
    def dispatch_completed(path: str, outcome: str) -> None:
        # path: "trigger" | "direct"
        inc_counter("dispatches_total", path=path, outcome=outcome)

    @staticmethod
    def writeback_failed() -> None:
        inc_counter("writeback_failures_total")

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_dispatch_time(path: str) -> Timer:
        return Timer("dispatch_seconds", path=path)
