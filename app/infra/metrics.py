# app/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Histograms keep a bounded window so a long-running process does not grow without limit
_HISTOGRAM_WINDOW = 5000


@dataclass
class Counter:
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Track distribution of values (e.g., settlement latency)"""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)
        if len(self.values) > _HISTOGRAM_WINDOW:
            del self.values[: len(self.values) - _HISTOGRAM_WINDOW]

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0}

        ordered = sorted(self.values)
        count = len(ordered)
        p95 = ordered[min(int(count * 0.95), count - 1)]

        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p95": p95,
        }


class MetricsCollector:
    """In-process counters and histograms, exposed via GET /metrics."""

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def counter_value(self, name: str, **labels) -> int:
        key = self._make_key(name, labels or None)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
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
    def bid_submitted(bid_mode: str) -> None:
        inc_counter("bids_submitted_total", bid_mode=bid_mode)

    @staticmethod
    def bid_selected(outcome: str) -> None:
        # outcome: selected | idempotent | conflict
        inc_counter("bid_selections_total", outcome=outcome)

    @staticmethod
    def job_transition(target: str) -> None:
        inc_counter("job_transitions_total", target=target)

    @staticmethod
    def job_completed(flagged: bool) -> None:
        inc_counter("jobs_completed_total", under_report=str(flagged).lower())

    @staticmethod
    def commission_charge(status: str) -> None:
        inc_counter("commission_charges_total", status=status)

    @staticmethod
    def notification(channel: str, result: str) -> None:
        # result: sent | queued | failed | dropped
        inc_counter("notifications_total", channel=channel, result=result)

    @staticmethod
    def breaker_rejected(channel: str) -> None:
        inc_counter("breaker_rejections_total", channel=channel)

    @staticmethod
    def unbid_alert(result: str) -> None:
        inc_counter("unbid_alerts_total", result=result)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def track_settlement_time() -> Timer:
        return Timer("settlement_seconds")

    @staticmethod
    def track_notification_time(channel: str) -> Timer:
        return Timer("notification_send_seconds", channel=channel)
