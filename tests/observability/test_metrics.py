"""
Tests for metrics collection.
"""

import time

import pytest

from dagmesh.observability.metrics import MetricsCollector


@pytest.mark.asyncio
async def test_metrics_basic():
    collector = MetricsCollector()

    await collector.record("node_duration_seconds", 1.5, dag="etl")
    await collector.record("node_duration_seconds", 2.5, dag="etl")
    await collector.record("node_duration_seconds", 3.5, dag="etl")

    stats = await collector.get_stats("node_duration_seconds", dag="etl")

    assert stats["count"] == 3
    assert stats["sum"] == 7.5
    assert stats["mean"] == 2.5
    assert stats["min"] == 1.5
    assert stats["max"] == 3.5


@pytest.mark.asyncio
async def test_metrics_percentiles():
    collector = MetricsCollector()
    for i in range(100):
        await collector.record("event_delivery_seconds", float(i), target="worker")

    stats = await collector.get_stats("event_delivery_seconds", target="worker")

    assert stats["count"] == 100
    assert stats["p50"] == pytest.approx(49, abs=1)
    assert stats["p95"] == pytest.approx(94, abs=1)
    assert stats["p99"] == pytest.approx(98, abs=1)


@pytest.mark.asyncio
async def test_label_values_are_stringified():
    collector = MetricsCollector()
    await collector.record("task_duration_seconds", 1.0, task_type="email", attempt=1)
    await collector.record("task_duration_seconds", 2.0, task_type="email", attempt=2)

    assert await collector.count("task_duration_seconds", attempt=2) == 1
    assert await collector.count("task_duration_seconds", attempt="2") == 1
    assert await collector.get_stats("task_duration_seconds", task_type="sms") == {}


@pytest.mark.asyncio
async def test_max_points_caps_memory():
    collector = MetricsCollector(max_points=5)
    for i in range(8):
        await collector.record("m", float(i))
    stats = await collector.get_stats("m")
    assert stats["count"] == 5
    assert stats["min"] == 3.0


@pytest.mark.asyncio
async def test_export_prometheus(tmp_path):
    collector = MetricsCollector()
    await collector.record("workflow_duration_seconds", 0.5, workflow="etl", status="completed")
    await collector.record("workflow_duration_seconds", 1.5, workflow="etl", status="failed")

    output = tmp_path / "metrics" / "dagmesh.prom"
    await collector.export_prometheus(output)

    content = output.read_text()
    assert "# TYPE workflow_duration_seconds gauge" in content
    assert 'workflow_duration_seconds{status="completed",workflow="etl"} 0.5' in content


@pytest.mark.asyncio
async def test_cleanup_and_summary():
    collector = MetricsCollector(retention_hours=1)
    await collector.record("old", 1.0)
    await collector.record("fresh", 2.0)
    collector._metrics[0].timestamp = time.time() - 7200

    assert await collector.cleanup_old_metrics() == 1
    summary = await collector.get_summary()
    assert summary["total_metrics"] == 1
    assert summary["metrics"]["fresh"]["mean"] == 2.0

    await collector.clear()
    assert (await collector.get_summary())["total_metrics"] == 0
