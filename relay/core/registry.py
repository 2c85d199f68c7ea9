"""
Provider registry and fallback engine.

The registry owns one driver per configured backend and the active key.
`query_with_fallback` is the single place that decides whether a failed
backend is retried on the next one or the failure is surfaced: a backend
that fails before producing any content is skipped (with a `FallbackEvent`
notice), a backend that fails after producing content ends the turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from relay.core.fallback_order import FallbackOrderStore
from relay.models.base import (
    CONTENT_EVENTS,
    BaseProvider,
    DoneEvent,
    ErrorEvent,
    FallbackEvent,
    ProviderError,
    QueryRequest,
    StreamEvent,
    terminated,
)

logger = logging.getLogger(__name__)


@dataclass
class BackendUsage:
    queries: int = 0
    cost_usd: float = 0.0


class ProviderRegistry:
    """
    ProviderRegistry keeps track of backend drivers and routes queries.

    The backend used by a query is resolved when the query starts; a
    concurrent `switch_to` only affects later queries.
    """

    def __init__(self, providers: Mapping[str, BaseProvider], fallback_store: FallbackOrderStore) -> None:
        self.providers: Dict[str, BaseProvider] = dict(providers)
        self.fallback_store = fallback_store
        self.active_key = fallback_store.load().primary
        self.failover_from: Optional[str] = None
        self.usage: Dict[str, BackendUsage] = {}
        if self.active_key not in self.providers:
            logger.warning("Primary backend %r is not configured", self.active_key)

    def register(self, key: str, provider: BaseProvider) -> None:
        self.providers[key] = provider

    def get(self, key: str) -> Optional[BaseProvider]:
        return self.providers.get(key)

    def get_active(self) -> BaseProvider:
        provider = self.providers.get(self.active_key)
        if provider is None:
            raise ProviderError(f"Active backend '{self.active_key}' is not configured.")
        return provider

    def get_active_key(self) -> str:
        return self.active_key

    def switch_to(self, key: str, failover: bool = False) -> bool:
        """
        Make `key` the active backend. Returns False for unknown keys.

        Switching to the already active key changes nothing. `failover`
        marks an automatic switch away from an unhealthy backend.
        """
        if key not in self.providers:
            return False
        if key == self.active_key:
            return True
        previous = self.active_key
        self.active_key = key
        if failover:
            self.failover_from = previous
        else:
            self.failover_from = None
        logger.info("Active backend: %s -> %s%s", previous, key, " (failover)" if failover else "")
        return True

    @property
    def primary_key(self) -> str:
        """Primary of the saved fallback order."""
        return self.fallback_store.load().primary

    def reset_to_default(self) -> None:
        self.switch_to(self.primary_key)

    def attempt_order(self) -> List[str]:
        """`[active] + fallbacks`, deduplicated, configured backends only."""
        order: List[str] = []
        for key in [self.active_key, *self.fallback_store.load().fallbacks]:
            if key in order:
                continue
            if key not in self.providers:
                logger.debug("Skipping unconfigured backend %r", key)
                continue
            order.append(key)
        return order

    async def query_with_fallback(self, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        order = self.attempt_order()
        if self.failover_from and order and order[0] == self.active_key:
            yield FallbackEvent(
                from_key=self.failover_from,
                to_key=self.active_key,
                error=f"{self.failover_from} is unhealthy",
            )

        attempted: List[str] = []
        last_error = "no backend is configured"
        for idx, key in enumerate(order):
            provider = self.providers[key]
            attempted.append(key)
            produced = False
            failure: Optional[ErrorEvent] = None

            stream = terminated(provider.query(request), source=key)
            try:
                async for event in stream:
                    if isinstance(event, ErrorEvent):
                        if event.aborted or produced:
                            yield event
                            return
                        failure = event
                        break
                    if isinstance(event, DoneEvent):
                        self._track(key, event.cost_usd)
                        yield DoneEvent(
                            text=event.text,
                            session_id=event.session_id,
                            cost_usd=event.cost_usd,
                            backend=key,
                        )
                        return
                    if isinstance(event, CONTENT_EVENTS):
                        produced = True
                    yield event
            finally:
                await stream.aclose()

            last_error = failure.error if failure else last_error
            logger.warning("Backend %s failed: %s", key, last_error)
            if idx + 1 < len(order):
                yield FallbackEvent(from_key=key, to_key=order[idx + 1], error=last_error)

        names = ", ".join(attempted) if attempted else "none"
        yield ErrorEvent(error=f"All backends failed ({names}): {last_error}")

    def _track(self, key: str, cost_usd: float) -> None:
        usage = self.usage.setdefault(key, BackendUsage())
        usage.queries += 1
        usage.cost_usd += cost_usd or 0.0

    def list_all(self, health: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        """Configured backends with active and health markers, for diagnostics."""
        rows: List[Dict[str, Any]] = []
        for key, provider in self.providers.items():
            info = provider.describe()
            state = health.get(key) if health else None
            usage = self.usage.get(key, BackendUsage())
            rows.append(
                {
                    "key": key,
                    **info,
                    "active": key == self.active_key,
                    "healthy": getattr(state, "healthy", None),
                    "queries": usage.queries,
                    "costUsd": usage.cost_usd,
                }
            )
        return rows
