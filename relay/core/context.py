"""
Process-wide context.

Built once at start-up from `Settings` and handed to every handler; it
owns the registry, the fallback order store, the heartbeat monitor, the
session store and the tool executor. There are no module-level
singletons.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Dict, List

from relay.config import Settings
from relay.core.fallback_order import FallbackOrder, FallbackOrderStore
from relay.core.heartbeat import HeartbeatMonitor
from relay.core.prompts import PromptManager
from relay.core.registry import ProviderRegistry
from relay.core.session import SessionStore
from relay.models.base import BaseProvider, QueryRequest, StreamEvent
from relay.models.presets import BackendKind, build_catalog, create_provider
from relay.tools.executor import ToolExecutor, build_tool_registry

logger = logging.getLogger(__name__)


class RelayContext:
    def __init__(
        self,
        settings: Settings,
        registry: ProviderRegistry,
        fallback_store: FallbackOrderStore,
        heartbeat: HeartbeatMonitor,
        sessions: SessionStore,
        prompts: PromptManager,
        executor: ToolExecutor,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.fallback_store = fallback_store
        self.heartbeat = heartbeat
        self.sessions = sessions
        self.prompts = prompts
        self.executor = executor

    @classmethod
    def build(
        cls,
        settings: Settings,
        provider_factory: Callable[..., BaseProvider] = create_provider,
    ) -> "RelayContext":
        fallback_store = FallbackOrderStore(
            path=settings.fallback_order_file,
            default_primary=settings.primary,
            default_fallbacks=settings.fallbacks,
            env_file=settings.env_file,
        )
        order = fallback_store.load()
        prompts = PromptManager(settings.prompts)
        executor = ToolExecutor(build_tool_registry(settings.tools))

        catalog = build_catalog(
            order.primary, order.fallbacks, settings.api_keys, settings.custom_backends
        )
        providers = {
            key: provider_factory(
                key, config, executor=executor, base_prompt=prompts.get_agent_base_prompt()
            )
            for key, config in catalog.items()
        }
        registry = ProviderRegistry(providers, fallback_store)

        hb = settings.heartbeat
        heartbeat = HeartbeatMonitor(
            registry,
            fallback_store,
            interval=float(hb.get("interval", 300)),
            initial_delay=float(hb.get("initial_delay", 30)),
            probe_timeout=float(hb.get("timeout", 15)),
            fail_threshold=int(hb.get("fail_threshold", 2)),
        )
        sessions = SessionStore(settings.working_dir)
        logger.info(
            "Relay ready: %d backends, chain %s", len(providers), " > ".join(registry.attempt_order())
        )
        return cls(settings, registry, fallback_store, heartbeat, sessions, prompts, executor)

    # -- entry points for handlers -------------------------------------------

    def get_registry(self) -> ProviderRegistry:
        return self.registry

    def query_with_fallback(self, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        return self.registry.query_with_fallback(request)

    def active_is_stateful(self) -> bool:
        provider = self.registry.get(self.registry.get_active_key())
        return provider is not None and provider.config.kind is BackendKind.STATEFUL_AGENT

    def system_prompt(self) -> str:
        provider = self.registry.get(self.registry.get_active_key())
        uses_tools = bool(provider is not None and getattr(provider, "uses_tools", lambda: False)())
        return self.prompts.get_system_prompt(stateful=self.active_is_stateful(), uses_tools=uses_tools)

    # -- entry points for diagnostics ----------------------------------------

    def get_health_status(self) -> List[Dict[str, Any]]:
        return self.heartbeat.get_health_status()

    def get_fallback_order(self) -> FallbackOrder:
        return self.fallback_store.load()

    def status_lines(self) -> List[str]:
        lines = [f"Active backend: {self.registry.get_active_key()}"]
        for row in self.registry.list_all(self.heartbeat.health):
            marker = "->" if row["active"] else "  "
            health = {True: "healthy", False: "UNHEALTHY", None: "unprobed"}[row["healthy"]]
            lines.append(
                f"{marker} {row['key']}: {row['name']} ({row['model']}) {row['status']}, {health}"
            )
        return lines

    # -- lifecycle -----------------------------------------------------------

    def start(self, heartbeat: bool = True) -> None:
        if heartbeat:
            self.heartbeat.start()

    async def stop(self) -> None:
        await self.heartbeat.stop()
