"""
Core Metrics System
===================

Counters, gauges and histograms kept in process memory. Exporting them to a
monitoring backend is left to the embedding application; ``snapshot()``
returns plain dictionaries for that purpose.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

Labels = Optional[Dict[str, str]]


class MetricType(str, Enum):
    """Types of metrics"""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


class Metric(ABC):
    """Base class for all metrics"""

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.label_names = labels or []
        self._lock = threading.RLock()

    @property
    @abstractmethod
    def type(self) -> MetricType:
        pass

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Current values keyed by label set"""
        pass

    @abstractmethod
    def reset(self) -> None:
        pass

    def _key(self, labels: Labels) -> str:
        labels = labels or {}
        if self.label_names and set(labels) != set(self.label_names):
            raise ValueError(
                f"Label mismatch for {self.name}: expected {set(self.label_names)}, got {set(labels)}"
            )
        return "|".join(f"{k}={v}" for k, v in sorted(labels.items()))


class Counter(Metric):
    """
    A monotonically increasing counter.

    Usage:
        matches = Counter("matches_total", labels=["outcome"])
        matches.inc(labels={"outcome": "success"})
    """

    def __init__(self, name: str, description: str = "", labels: Optional[List[str]] = None):
        super().__init__(name, description, labels)
        self._values: Dict[str, float] = defaultdict(float)

    @property
    def type(self) -> MetricType:
        return MetricType.COUNTER

    def inc(self, amount: float = 1.0, labels: Labels = None) -> None:
        if amount < 0:
            raise ValueError("Counter can only be incremented with non-negative values")
        key = self._key(labels)
        with self._lock:
            self._values[key] += amount

    def get(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Gauge(Metric):
    """A value that can go up or down."""

    def __init__(self, name: str, description: str = "", labels: Optional[List[str]] = None):
        super().__init__(name, description, labels)
        self._values: Dict[str, float] = defaultdict(float)

    @property
    def type(self) -> MetricType:
        return MetricType.GAUGE

    def set(self, value: float, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, amount: float = 1.0, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] += amount

    def dec(self, amount: float = 1.0, labels: Labels = None) -> None:
        self.inc(-amount, labels)

    def get(self, labels: Labels = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        with self._lock:
            self._values.clear()


class Histogram(Metric):
    """
    Distribution of observed values.

    Keeps cumulative bucket counts plus a bounded window of the most recent
    samples, which is what rolling averages are computed from.
    """

    DEFAULT_BUCKETS = (5.0, 10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, 10000.0)

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
        window: int = 100,
    ):
        super().__init__(name, description, labels)
        self._buckets = tuple(sorted(buckets or self.DEFAULT_BUCKETS))
        self._window = window
        self._counts: Dict[str, Dict[float, int]] = {}
        self._totals: Dict[str, Tuple[int, float]] = {}
        self._recent: Dict[str, Deque[float]] = {}

    @property
    def type(self) -> MetricType:
        return MetricType.HISTOGRAM

    def observe(self, value: float, labels: Labels = None) -> None:
        key = self._key(labels)
        with self._lock:
            counts = self._counts.setdefault(key, {b: 0 for b in self._buckets})
            for bound in self._buckets:
                if value <= bound:
                    counts[bound] += 1
            count, total = self._totals.get(key, (0, 0.0))
            self._totals[key] = (count + 1, total + value)
            self._recent.setdefault(key, deque(maxlen=self._window)).append(value)

    def recent(self, labels: Labels = None) -> List[float]:
        key = self._key(labels)
        with self._lock:
            return list(self._recent.get(key, ()))

    def recent_mean(self, labels: Labels = None) -> float:
        samples = self.recent(labels)
        return sum(samples) / len(samples) if samples else 0.0

    def count(self, labels: Labels = None) -> int:
        key = self._key(labels)
        with self._lock:
            return self._totals.get(key, (0, 0.0))[0]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            result = {}
            for key, (count, total) in self._totals.items():
                result[key] = {
                    "buckets": dict(self._counts.get(key, {})),
                    "count": count,
                    "sum": total,
                    "mean": total / count if count else 0.0,
                }
            return result

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._totals.clear()
            self._recent.clear()


class MetricsRegistry:
    """
    Named collection of metrics. Asking twice for the same name returns the
    same metric.
    """

    def __init__(self, prefix: str = ""):
        self._prefix = prefix
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.RLock()

    def _full_name(self, name: str) -> str:
        return f"{self._prefix}_{name}" if self._prefix else name

    def _get_or_create(self, cls, name: str, **kwargs: Any) -> Metric:
        full_name = self._full_name(name)
        with self._lock:
            metric = self._metrics.get(full_name)
            if metric is None:
                metric = cls(full_name, **kwargs)
                self._metrics[full_name] = metric
            elif not isinstance(metric, cls):
                raise ValueError(f"Metric {full_name} already registered as {metric.type.value}")
            return metric

    def counter(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Counter:
        return self._get_or_create(Counter, name, description=description, labels=labels)

    def gauge(self, name: str, description: str = "", labels: Optional[List[str]] = None) -> Gauge:
        return self._get_or_create(Gauge, name, description=description, labels=labels)

    def histogram(
        self,
        name: str,
        description: str = "",
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
        window: int = 100,
    ) -> Histogram:
        return self._get_or_create(
            Histogram, name, description=description, labels=labels, buckets=buckets, window=window
        )

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {"type": metric.type.value, "values": metric.snapshot()}
                for name, metric in self._metrics.items()
            }

    def reset_all(self) -> None:
        with self._lock:
            for metric in self._metrics.values():
                metric.reset()


__all__ = ["MetricType", "Metric", "Counter", "Gauge", "Histogram", "MetricsRegistry"]
