#!/usr/bin/env python3
"""
dagmesh Example
===============

Demonstrates the mesh end to end:
- Registering agents and routing events between them
- Running a cross-agent workflow with a flaky step and retries
- Snapshotting and restoring the mesh
- Reading latency statistics from the metrics collector

Usage:
    python examples/mesh_example.py
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dagmesh import ActionAgent, AgentMesh, MeshWorkflow, RetryPolicy, WorkflowStep


def build_agents():
    """Three agents forming a small extract/transform/load pipeline."""
    calls = {"transform": 0}

    async def extract(payload):
        await asyncio.sleep(0.05)
        return {"rows": 120}

    async def transform(payload):
        # Fails once so the retry policy has something to do.
        calls["transform"] += 1
        if calls["transform"] == 1:
            raise RuntimeError("upstream schema drift")
        await asyncio.sleep(0.02)
        return {"rows": 118}

    def load(payload):
        return {"loaded": True, "table": payload["parameters"]["table"]}

    return [
        ActionAgent("extractor", role="source", actions={"extract": extract}),
        ActionAgent("transformer", role="worker", actions={"transform": transform}, dependencies=["extractor"]),
        ActionAgent("loader", role="sink", actions={"load": load}),
    ]


def build_workflow():
    return MeshWorkflow(
        id="nightly-etl",
        name="Nightly ETL",
        steps=[
            WorkflowStep(id="extract", agent_id="extractor", action="extract"),
            WorkflowStep(
                id="transform",
                agent_id="transformer",
                action="transform",
                dependencies=["extract"],
                retry_policy=RetryPolicy(max_attempts=3, backoff_strategy="constant", initial_delay=0.1),
            ),
            WorkflowStep(
                id="load",
                agent_id="loader",
                action="load",
                parameters={"table": "facts"},
                dependencies=["transform"],
            ),
        ],
    )


async def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    print("=" * 60)
    print("dagmesh Example")
    print("=" * 60)

    mesh = AgentMesh({"mesh": {"id": "example-mesh"}})
    await mesh.initialize()
    for agent in build_agents():
        await mesh.register_agent(agent)

    print("\n1. Routing a single event...")
    routed = await mesh.route_event("extract", {}, "extractor")
    print(f"   success={routed.success} response={routed.response}")

    print("\n2. Running a workflow...")
    result = await mesh.orchestrate_workflow(build_workflow())
    print(f"   status={result.status} completed={result.completed_steps}")
    for step in result.steps:
        print(f"   - {step.step_id}: {step.status.value} after {step.attempts} attempt(s)")

    print("\n3. Snapshot and restore...")
    snapshot = mesh.create_system_snapshot()
    restored = mesh.restore_system_snapshot(snapshot.id)
    print(f"   snapshot={snapshot.id} restored_agents={restored.restored_agents}")

    print("\n4. Metrics")
    stats = await mesh.metrics.get_stats("event_delivery_seconds")
    if stats:
        print(f"   deliveries={stats['count']} p50={stats['p50'] * 1000:.1f}ms p95={stats['p95'] * 1000:.1f}ms")
    mesh_metrics = mesh.get_system_metrics()
    print(f"   workflows={mesh_metrics.total_workflows} success_rate={mesh_metrics.success_rate:.0f}%")

    integrity = mesh.validate_system_integrity()
    print(f"\n5. Integrity: {integrity.reason}")

    await mesh.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
