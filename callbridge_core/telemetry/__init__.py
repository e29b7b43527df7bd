"""In-process metrics primitives."""

from callbridge_core.telemetry.metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    MetricType,
)

__all__ = ["Counter", "Gauge", "Histogram", "MetricsRegistry", "MetricType"]
