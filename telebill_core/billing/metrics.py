"""
Billing Metrics
===============

Metrics recorder interface injected into the rater, ledger and billing-cycle
orchestrator. Production wiring can adapt it to any metrics backend; tests
use the no-op or in-memory recorders.
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Tuple


# Metric names
CDRS_RATED_TOTAL = "cdrs_rated_total"
INVOICES_GENERATED_TOTAL = "invoices_generated_total"
PAYMENTS_APPLIED_TOTAL = "payments_applied_total"
BILLING_CYCLE_SUBSCRIPTIONS_TOTAL = "billing_cycle_subscriptions_total"
BILLING_CYCLE_DURATION_SECONDS = "billing_cycle_duration_seconds"


def _labels_key(labels: Dict[str, str]) -> str:
    """Create a unique key from labels"""
    if not labels:
        return ""
    return "|".join(f"{k}={v}" for k, v in sorted(labels.items()))


class MetricsRecorder(ABC):
    """Metrics recorder interface."""

    @abstractmethod
    def increment(self, name: str, value: float = 1.0, **labels: str) -> None:
        """Increment a counter."""
        pass

    @abstractmethod
    def observe(self, name: str, value: float, **labels: str) -> None:
        """Record an observation (durations, sizes)."""
        pass


class NoopMetricsRecorder(MetricsRecorder):
    """Recorder that discards everything."""

    def increment(self, name: str, value: float = 1.0, **labels: str) -> None:
        pass

    def observe(self, name: str, value: float, **labels: str) -> None:
        pass


class InMemoryMetricsRecorder(MetricsRecorder):
    """
    Recorder that keeps counters and observations in memory.

    Usage:
        metrics = InMemoryMetricsRecorder()
        metrics.increment("cdrs_rated_total", status="processed")
        metrics.counter_value("cdrs_rated_total", status="processed")  # 1.0
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], float] = defaultdict(float)
        self._observations: Dict[str, List[float]] = defaultdict(list)

    def increment(self, name: str, value: float = 1.0, **labels: str) -> None:
        if value < 0:
            raise ValueError("Counter can only be incremented with non-negative values")
        with self._lock:
            self._counters[(name, _labels_key(labels))] += value

    def observe(self, name: str, value: float, **labels: str) -> None:
        with self._lock:
            self._observations[name].append(value)

    def counter_value(self, name: str, **labels: str) -> float:
        """Get a counter value for an exact label set."""
        with self._lock:
            return self._counters.get((name, _labels_key(labels)), 0.0)

    def counter_total(self, name: str) -> float:
        """Sum a counter across all label sets."""
        with self._lock:
            return sum(v for (n, _), v in self._counters.items() if n == name)

    def observations(self, name: str) -> List[float]:
        with self._lock:
            return list(self._observations.get(name, []))

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._observations.clear()
