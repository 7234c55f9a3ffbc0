"""dagmesh Observability: in-memory metrics with percentile statistics."""

from dagmesh.observability.metrics import MetricPoint, MetricsCollector

__all__ = [
    "MetricPoint",
    "MetricsCollector",
]
