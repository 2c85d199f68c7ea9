"""
Heartbeat monitor: debounced health, failover and switch-back.
"""

import asyncio

import pytest

from relay.core.heartbeat import HeartbeatMonitor
from relay.core.registry import ProviderRegistry
from relay.models.base import DoneEvent, ErrorEvent, FallbackEvent, QueryRequest, TextEvent

OK = [DoneEvent("ok")]
DOWN = [ErrorEvent("503 Service Unavailable")]


def build(make_provider, make_store, scripts, fallbacks=("b", "c")):
    providers = {key: make_provider(key, script) for key, script in scripts.items()}
    store = make_store("a", list(fallbacks))
    registry = ProviderRegistry(providers, store)
    monitor = HeartbeatMonitor(registry, store, interval=3600, initial_delay=3600, probe_timeout=1)
    return monitor, registry, providers


class TestProbing:
    @pytest.mark.asyncio
    async def test_single_failure_is_debounced(self, make_provider, make_store):
        monitor, registry, _ = build(make_provider, make_store, {"a": DOWN, "b": OK, "c": OK})
        await monitor.run_round()
        assert monitor.health["a"].healthy is True
        assert monitor.health["a"].fail_count == 1
        assert registry.get_active_key() == "a"

    @pytest.mark.asyncio
    async def test_success_resets_fail_count(self, make_provider, make_store):
        monitor, _, providers = build(make_provider, make_store, {"a": DOWN, "b": OK, "c": OK})
        await monitor.run_round()
        providers["a"].script = OK
        await monitor.run_round()
        assert monitor.health["a"].fail_count == 0
        assert monitor.health["a"].last_error is None

    @pytest.mark.asyncio
    async def test_unavailable_backend_fails_without_query(self, make_provider, make_store):
        monitor, _, providers = build(make_provider, make_store, {"a": OK, "b": OK, "c": OK})
        providers["b"].available = False
        await monitor.run_round()
        assert monitor.health["b"].fail_count == 1
        assert providers["b"].requests == []

    @pytest.mark.asyncio
    async def test_probe_timeout(self, make_provider, make_store):
        monitor, _, providers = build(make_provider, make_store, {"a": OK, "b": OK, "c": OK})
        monitor.probe_timeout = 0.05

        async def slow():
            await asyncio.sleep(1)
            return True

        providers["c"].is_available = slow
        await monitor.run_round()
        assert monitor.health["c"].fail_count == 1

    @pytest.mark.asyncio
    async def test_chain_follows_fallback_order(self, make_provider, make_store):
        monitor, _, _ = build(make_provider, make_store, {"a": OK, "b": OK, "c": OK, "d": OK})
        await monitor.run_round()
        assert set(monitor.health) == {"a", "b", "c"}
        monitor.fallback_store.save("a", ["d"])
        await monitor.run_round()
        assert set(monitor.health) == {"a", "d"}


class TestFailover:
    @pytest.mark.asyncio
    async def test_fails_over_to_first_healthy_fallback(self, make_provider, make_store):
        monitor, registry, providers = build(make_provider, make_store, {"a": DOWN, "b": DOWN, "c": OK})
        await monitor.run_round()
        await monitor.run_round()
        assert monitor.health["a"].healthy is False
        assert monitor.health["b"].healthy is False
        assert registry.get_active_key() == "c"
        assert registry.failover_from == "a"
        assert monitor.is_failed_over is True

    @pytest.mark.asyncio
    async def test_stays_when_everything_is_unhealthy(self, make_provider, make_store):
        monitor, registry, _ = build(make_provider, make_store, {"a": DOWN, "b": DOWN, "c": DOWN})
        await monitor.run_round()
        await monitor.run_round()
        assert registry.get_active_key() == "a"
        assert monitor.failed_over is False

    @pytest.mark.asyncio
    async def test_switches_back_when_primary_recovers(self, make_provider, make_store):
        monitor, registry, providers = build(make_provider, make_store, {"a": DOWN, "b": OK, "c": OK})
        await monitor.run_round()
        await monitor.run_round()
        assert registry.get_active_key() == "b"

        providers["a"].script = OK
        await monitor.run_round()
        assert registry.get_active_key() == "a"
        assert registry.failover_from is None
        assert monitor.failed_over is False

    @pytest.mark.asyncio
    async def test_health_status_report(self, make_provider, make_store):
        monitor, _, _ = build(make_provider, make_store, {"a": OK, "b": DOWN, "c": OK})
        await monitor.run_round()
        report = {row["key"]: row for row in monitor.get_health_status()}
        assert report["a"]["healthy"] is True
        assert report["b"]["failCount"] == 1
        assert report["b"]["lastError"] == "503 Service Unavailable"

    @pytest.mark.asyncio
    async def test_failover_uses_saved_primary(self, make_provider, make_store):
        monitor, registry, _ = build(make_provider, make_store, {"a": OK, "b": DOWN, "c": OK})
        monitor.fallback_store.save("b", ["c"])
        registry.reset_to_default()
        await monitor.run_round()
        await monitor.run_round()
        assert monitor.chain() == ["b", "c"]
        assert registry.get_active_key() == "c"
        assert registry.failover_from == "b"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_provider, make_store):
        monitor, _, _ = build(make_provider, make_store, {"a": OK, "b": OK, "c": OK})
        monitor.start()
        assert monitor.running
        await monitor.stop()
        assert not monitor.running


class TestFailoverRouting:
    @pytest.mark.asyncio
    async def test_queries_follow_failover_and_recovery(self, make_provider, make_store, drain):
        monitor, registry, providers = build(
            make_provider,
            make_store,
            {"a": DOWN, "b": [TextEvent("from b", "from b"), DoneEvent("from b")], "c": OK},
        )
        await monitor.run_round()
        await monitor.run_round()

        events = await drain(registry.query_with_fallback(QueryRequest(prompt="hello")))
        assert isinstance(events[0], FallbackEvent)
        assert (events[0].from_key, events[0].to_key) == ("a", "b")
        assert isinstance(events[1], TextEvent)
        assert events[-1] == DoneEvent("from b", backend="b")
        assert [r.prompt for r in providers["a"].requests] == ["Hi", "Hi"]

        providers["a"].script = [TextEvent("from a", "from a"), DoneEvent("from a")]
        await monitor.run_round()
        assert registry.get_active_key() == "a"

        events = await drain(registry.query_with_fallback(QueryRequest(prompt="again")))
        assert not any(isinstance(event, FallbackEvent) for event in events)
        assert events[-1] == DoneEvent("from a", backend="a")
