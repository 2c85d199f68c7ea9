"""
Provider registry: attempt order, fallback decisions and switching.
"""

import pytest

from relay.core.registry import ProviderRegistry
from relay.models.base import DoneEvent, ErrorEvent, FallbackEvent, QueryRequest, TextEvent, ToolCallEvent


def build(make_provider, make_store, scripts, primary="a", fallbacks=("b", "c")):
    providers = {key: make_provider(key, script) for key, script in scripts.items()}
    registry = ProviderRegistry(providers, make_store(primary, list(fallbacks)))
    return registry, providers


class TestAttemptOrder:
    def test_active_then_fallbacks_without_repeats(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": [], "c": []}, fallbacks=["b", "a", "c", "b"])
        assert registry.attempt_order() == ["a", "b", "c"]

    def test_unconfigured_keys_are_skipped(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "c": []})
        assert registry.attempt_order() == ["a", "c"]

    def test_switched_active_leads(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": [], "c": []})
        assert registry.switch_to("c")
        assert registry.attempt_order() == ["c", "b"]


class TestSwitching:
    def test_unknown_key_is_rejected(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": []})
        assert registry.switch_to("zzz") is False
        assert registry.get_active_key() == "a"

    def test_switch_to_active_is_a_no_op(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": []})
        registry.switch_to("b", failover=True)
        assert registry.switch_to("b") is True
        assert registry.get_active_key() == "b"
        assert registry.failover_from == "a"

    def test_reset_to_default(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": []})
        registry.switch_to("b", failover=True)
        registry.reset_to_default()
        assert registry.get_active_key() == "a"
        assert registry.failover_from is None

    def test_reset_follows_saved_primary(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": [], "c": []})
        registry.fallback_store.save("c", ["a"])
        assert registry.primary_key == "c"
        registry.reset_to_default()
        assert registry.get_active_key() == "c"


class TestQueryWithFallback:
    @pytest.mark.asyncio
    async def test_primary_success(self, make_provider, make_store, drain):
        registry, providers = build(
            make_provider, make_store, {"a": [TextEvent("hi", "hi"), DoneEvent("hi", cost_usd=0.01)], "b": []}
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert events == [TextEvent("hi", "hi"), DoneEvent("hi", cost_usd=0.01, backend="a")]
        assert providers["b"].requests == []
        assert registry.usage["a"].queries == 1

    @pytest.mark.asyncio
    async def test_falls_back_before_content(self, make_provider, make_store, drain):
        registry, providers = build(
            make_provider,
            make_store,
            {
                "a": [ErrorEvent("a is down")],
                "b": [TextEvent("ok", "ok"), DoneEvent("ok")],
                "c": [],
            },
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert events[0] == FallbackEvent(from_key="a", to_key="b", error="a is down")
        assert events[1] == TextEvent("ok", "ok")
        assert events[-1].backend == "b"
        assert providers["c"].requests == []
        assert registry.get_active_key() == "a"

    @pytest.mark.asyncio
    async def test_exception_counts_as_failure(self, make_provider, make_store, drain):
        registry, _ = build(
            make_provider, make_store, {"a": [RuntimeError("boom")], "b": [DoneEvent("ok")]}, fallbacks=["b"]
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert isinstance(events[0], FallbackEvent)
        assert "boom" in events[0].error
        assert events[-1].backend == "b"

    @pytest.mark.asyncio
    async def test_error_after_content_is_terminal(self, make_provider, make_store, drain):
        registry, providers = build(
            make_provider,
            make_store,
            {"a": [TextEvent("par", "par"), ErrorEvent("connection reset")], "b": [DoneEvent("ok")]},
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert events == [TextEvent("par", "par"), ErrorEvent("connection reset")]
        assert providers["b"].requests == []

    @pytest.mark.asyncio
    async def test_error_after_tool_call_is_terminal(self, make_provider, make_store, drain):
        registry, providers = build(
            make_provider,
            make_store,
            {"a": [ToolCallEvent("run_shell", "{}"), ErrorEvent("failed")], "b": [DoneEvent("ok")]},
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert events[-1] == ErrorEvent("failed")
        assert providers["b"].requests == []

    @pytest.mark.asyncio
    async def test_aborted_is_terminal(self, make_provider, make_store, drain):
        registry, providers = build(
            make_provider,
            make_store,
            {"a": [ErrorEvent("Request aborted", aborted=True)], "b": [DoneEvent("ok")]},
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert events == [ErrorEvent("Request aborted", aborted=True)]
        assert providers["b"].requests == []

    @pytest.mark.asyncio
    async def test_all_fail_names_every_backend(self, make_provider, make_store, drain):
        registry, _ = build(
            make_provider,
            make_store,
            {"a": [ErrorEvent("e1")], "b": [ErrorEvent("e2")], "c": [ErrorEvent("e3")]},
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert [type(e) for e in events] == [FallbackEvent, FallbackEvent, ErrorEvent]
        assert events[-1].error == "All backends failed (a, b, c): e3"

    @pytest.mark.asyncio
    async def test_failover_notice_precedes_content(self, make_provider, make_store, drain):
        registry, _ = build(make_provider, make_store, {"a": [], "b": [TextEvent("hi", "hi"), DoneEvent("hi")]})
        registry.switch_to("b", failover=True)
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert events[0] == FallbackEvent(from_key="a", to_key="b", error="a is unhealthy")
        assert events[1] == TextEvent("hi", "hi")

    @pytest.mark.asyncio
    async def test_single_terminal_and_streams_closed(self, make_provider, make_store, drain):
        registry, providers = build(
            make_provider,
            make_store,
            {"a": [ErrorEvent("down")], "b": [DoneEvent("ok"), TextEvent("late")]},
        )
        events = await drain(registry.query_with_fallback(QueryRequest(prompt="x")))
        assert sum(isinstance(e, (DoneEvent, ErrorEvent)) for e in events) == 1
        assert providers["a"].closed and providers["b"].closed


class TestListing:
    def test_list_all_marks_active(self, make_provider, make_store):
        registry, _ = build(make_provider, make_store, {"a": [], "b": []})
        rows = {row["key"]: row for row in registry.list_all()}
        assert rows["a"]["active"] is True
        assert rows["b"]["active"] is False
        assert rows["a"]["healthy"] is None
        assert rows["a"]["model"] == "a-model"
