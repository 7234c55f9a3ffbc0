"""
Metrics Collection for dagmesh
==============================

Latency and outcome metrics for node dispatches, scheduled tasks and event
deliveries, with percentile statistics and Prometheus text export.

Metric names used by the package:
- node_duration_seconds        (labels: dag, node, status)
- task_duration_seconds        (labels: task_type, status)
- event_delivery_seconds       (labels: event_type, target, status)
- workflow_duration_seconds    (labels: workflow, status)

Usage:
    collector = MetricsCollector()
    await collector.record("node_duration_seconds", 0.42, dag="etl", status="succeeded")
    stats = await collector.get_stats("node_duration_seconds", dag="etl")
    print(f"p95: {stats['p95']:.3f}s")
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger("dagmesh.observability.metrics")


@dataclass
class MetricPoint:
    """
    A single metric observation.

    Attributes:
        name: Metric name (e.g., "node_duration_seconds")
        value: Numeric value
        timestamp: Unix timestamp when metric was recorded
        labels: Key-value pairs for filtering (e.g., {"dag": "etl"})
    """

    name: str
    value: float
    timestamp: float
    labels: Dict[str, str] = field(default_factory=dict)


class MetricsCollector:
    """
    Collects and aggregates metrics in memory.

    One collector is owned by each mesh (or engine) instance and injected
    into the components that record into it.
    """

    def __init__(self, retention_hours: float = 24.0, max_points: int = 100_000):
        self._metrics: List[MetricPoint] = []
        self._lock = asyncio.Lock()
        self._retention_seconds = retention_hours * 3600
        self._max_points = max_points

    async def record(self, name: str, value: float, **labels: Any) -> None:
        """
        Record a metric point.

        Args:
            name: Metric name (lowercase with underscores)
            value: Numeric value to record
            **labels: Key-value pairs for filtering; values are stringified
        """
        async with self._lock:
            self._metrics.append(
                MetricPoint(
                    name=name,
                    value=float(value),
                    timestamp=time.time(),
                    labels={k: str(v) for k, v in labels.items()},
                )
            )
            if len(self._metrics) > self._max_points:
                self._metrics = self._metrics[-self._max_points:]

    async def get_stats(self, name: str, **filter_labels: Any) -> Dict[str, Any]:
        """
        Get statistics for a metric.

        Returns:
            Dict with count, sum, min, max, mean, median, p50, p95, p99.
            Empty dict if nothing matches.
        """
        wanted = {k: str(v) for k, v in filter_labels.items()}
        async with self._lock:
            values = [
                m.value for m in self._metrics
                if m.name == name and all(m.labels.get(k) == v for k, v in wanted.items())
            ]

        if not values:
            return {}

        return {
            "count": len(values),
            "sum": sum(values),
            "min": min(values),
            "max": max(values),
            "mean": statistics.mean(values),
            "median": statistics.median(values),
            "p50": self._percentile(values, 0.50),
            "p95": self._percentile(values, 0.95),
            "p99": self._percentile(values, 0.99),
        }

    async def count(self, name: str, **filter_labels: Any) -> int:
        stats = await self.get_stats(name, **filter_labels)
        return stats.get("count", 0)

    async def cleanup_old_metrics(self) -> int:
        """Remove metrics older than the retention period. Returns number removed."""
        cutoff_time = time.time() - self._retention_seconds

        async with self._lock:
            original_count = len(self._metrics)
            self._metrics = [m for m in self._metrics if m.timestamp >= cutoff_time]
            removed = original_count - len(self._metrics)

        if removed > 0:
            logger.info(f"Cleaned up {removed} old metrics")
        return removed

    async def export_prometheus(self, output_path: Path) -> None:
        """
        Export metrics in Prometheus text format.

        Format:
            # TYPE metric_name gauge
            metric_name{label1="value1",label2="value2"} 123.45 1234567890000
        """
        async with self._lock:
            by_name: Dict[str, List[MetricPoint]] = {}
            for m in self._metrics:
                by_name.setdefault(m.name, []).append(m)

            lines = []
            for name, points in sorted(by_name.items()):
                lines.append(f"# TYPE {name} gauge")
                for p in points:
                    if p.labels:
                        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(p.labels.items()))
                        lines.append(f"{name}{{{label_str}}} {p.value} {int(p.timestamp * 1000)}")
                    else:
                        lines.append(f"{name} {p.value} {int(p.timestamp * 1000)}")
                lines.append("")

        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text("\n".join(lines), encoding="utf-8")
        logger.info(f"Exported {sum(len(p) for p in by_name.values())} metrics to {output_path}")

    async def get_summary(self) -> Dict[str, Any]:
        """Per-metric count/mean/min/max over everything collected."""
        async with self._lock:
            by_name: Dict[str, List[float]] = {}
            for m in self._metrics:
                by_name.setdefault(m.name, []).append(m.value)
            total = len(self._metrics)

        return {
            "total_metrics": total,
            "metrics": {
                name: {
                    "count": len(values),
                    "mean": statistics.mean(values),
                    "min": min(values),
                    "max": max(values),
                }
                for name, values in by_name.items()
            },
        }

    async def clear(self) -> None:
        async with self._lock:
            self._metrics.clear()

    @staticmethod
    def _percentile(values: List[float], p: float) -> float:
        if not values:
            return 0.0
        sorted_values = sorted(values)
        index = min(int(len(sorted_values) * p), len(sorted_values) - 1)
        return sorted_values[index]
