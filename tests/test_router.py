"""Tests for dagmesh.messaging.router."""

import asyncio

import pytest

from dagmesh.agents import ActionAgent
from dagmesh.messaging import EventRouter
from dagmesh.observability.metrics import MetricsCollector
from dagmesh.registry import AgentRegistry


def _router(*agents, **kwargs):
    registry = AgentRegistry()
    for agent in agents:
        registry.register_agent(agent)
    return EventRouter(registry, **kwargs)


class TestRouteEvent:
    @pytest.mark.asyncio
    async def test_unknown_target(self):
        result = await _router().route_event("ping", {}, "ghost")
        assert result.success is False
        assert result.failed_routes == ["ghost"]
        assert "ghost" in result.error

    @pytest.mark.asyncio
    async def test_response_is_returned(self):
        agent = ActionAgent("echo", actions={"ping": lambda p: {"pong": p["n"]}})
        result = await _router(agent).route_event("ping", {"n": 1}, "echo", source_id="caller")
        assert result.success is True
        assert result.routed_to == ["echo"]
        assert result.routing_path == ["caller", "echo"]
        assert result.response == {"pong": 1}

    @pytest.mark.asyncio
    async def test_handler_error_is_delivery_failure(self):
        def explode(payload):
            raise ValueError("bad payload")

        router = _router(ActionAgent("fragile", actions={"ping": explode}))
        result = await router.route_event("ping", {}, "fragile")
        assert result.success is False
        assert "bad payload" in result.error
        [interaction] = router.get_agent_interactions("fragile")
        assert interaction.success is False

    @pytest.mark.asyncio
    async def test_delivery_timeout(self):
        async def hang(payload):
            await asyncio.sleep(1.0)

        router = _router(ActionAgent("slow", actions={"ping": hang}), event_timeout=0.02)
        result = await router.route_event("ping", {}, "slow")
        assert result.success is False
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_per_target_order_preserved(self):
        seen = []

        async def record(payload):
            await asyncio.sleep(0.01 if payload["i"] == 0 else 0)
            seen.append(payload["i"])

        router = _router(ActionAgent("seq", actions={"ev": record}))
        await asyncio.gather(*(router.route_event("ev", {"i": i}, "seq") for i in range(4)))
        assert seen == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        metrics = MetricsCollector()
        router = _router(ActionAgent("m", actions={"ev": lambda p: None}), metrics=metrics)
        await router.route_event("ev", {}, "m")
        assert await metrics.count("event_delivery_seconds", target="m", status="success") == 1


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_any_success_semantics(self):
        def explode(payload):
            raise RuntimeError("no")

        router = _router(
            ActionAgent("good", actions={"news": lambda p: "ok"}),
            ActionAgent("bad", actions={"news": explode}),
        )
        result = await router.broadcast_event("news", {})
        assert result.success is True
        assert result.broadcast_to == ["good"]
        assert result.failed_broadcasts == ["bad"]

    @pytest.mark.asyncio
    async def test_no_recipients_is_failure(self):
        result = await _router().broadcast_event("news", {})
        assert result.success is False

    @pytest.mark.asyncio
    async def test_source_excluded(self):
        router = _router(ActionAgent("src"), ActionAgent("dst"))
        result = await router.broadcast_event("news", {}, source_id="src")
        assert result.broadcast_to == ["dst"]
        included = await router.broadcast_event("news", {}, source_id="src", exclude_source=False)
        assert sorted(included.broadcast_to) == ["dst", "src"]

    @pytest.mark.asyncio
    async def test_subscriptions_filter_recipients(self):
        router = _router(ActionAgent("all"), ActionAgent("picky"))
        assert router.subscribe_to_events("picky", ["alerts"]) is True
        assert router.subscribe_to_events("ghost", ["alerts"]) is False

        news = await router.broadcast_event("news", {})
        assert news.broadcast_to == ["all"]
        assert news.filtered == ["picky"]

        alerts = await router.broadcast_event("alerts", {})
        assert sorted(alerts.broadcast_to) == ["all", "picky"]

        # An emptied interest set still filters everything.
        assert router.unsubscribe_from_events("picky", ["alerts"]) is True
        assert router.get_subscriptions("picky") == []
        alerts = await router.broadcast_event("alerts", {})
        assert alerts.broadcast_to == ["all"]

    def test_export_import_and_drop(self):
        router = _router(ActionAgent("a"))
        router.subscribe_to_events("a", ["x", "y"])
        exported = router.export_subscriptions()
        router.drop_agent("a")
        assert router.get_subscriptions("a") is None
        router.import_subscriptions(exported)
        assert router.get_subscriptions("a") == ["x", "y"]

    @pytest.mark.asyncio
    async def test_interaction_history_is_bounded(self):
        router = _router(ActionAgent("h"), interaction_limit=3)
        for _ in range(5):
            await router.route_event("ping", {}, "h")
        assert len(router.get_agent_interactions()) == 3
