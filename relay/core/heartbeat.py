"""
Heartbeat monitor: periodic backend health probes with auto-failover.

Every round probes each backend of the configured chain (primary plus
fallbacks) with its availability check followed by a tiny real query.
A backend is marked unhealthy only after `fail_threshold` consecutive
failures and healthy again after one success. After each round, if the
primary is unhealthy and still active the registry is switched to the
first healthy fallback; once the primary recovers it is switched back.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from relay.core.fallback_order import FallbackOrderStore
from relay.core.registry import ProviderRegistry
from relay.models.base import BaseProvider, DoneEvent, ErrorEvent, QueryRequest, terminated

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 5 * 60.0
INITIAL_DELAY = 30.0
PROBE_TIMEOUT = 15.0
FAIL_THRESHOLD = 2

PING_PROMPT = "Hi"
PING_SYSTEM_PROMPT = "Reply with exactly: ok"


class ProbeError(Exception):
    """A health probe did not complete successfully."""


@dataclass
class BackendHealth:
    key: str
    healthy: bool = True
    last_check: Optional[float] = None
    last_latency_ms: int = 0
    fail_count: int = 0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        last_check = (
            datetime.fromtimestamp(self.last_check, tz=timezone.utc).isoformat()
            if self.last_check
            else "never"
        )
        return {
            "key": self.key,
            "healthy": self.healthy,
            "latencyMs": self.last_latency_ms,
            "failCount": self.fail_count,
            "lastCheck": last_check,
            "lastError": self.last_error,
        }


class HeartbeatMonitor:
    def __init__(
        self,
        registry: ProviderRegistry,
        fallback_store: FallbackOrderStore,
        interval: float = HEARTBEAT_INTERVAL,
        initial_delay: float = INITIAL_DELAY,
        probe_timeout: float = PROBE_TIMEOUT,
        fail_threshold: int = FAIL_THRESHOLD,
    ) -> None:
        self.registry = registry
        self.fallback_store = fallback_store
        self.interval = interval
        self.initial_delay = initial_delay
        self.probe_timeout = probe_timeout
        self.fail_threshold = fail_threshold
        self.failed_over = False
        self.health: Dict[str, BackendHealth] = {}
        self._task: Optional[asyncio.Task] = None

    # -- lifecycle ----------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._sync_chain()
        self._task = asyncio.create_task(self._loop(), name="heartbeat")
        logger.info(
            "Heartbeat monitor started (%ds interval, %d backends)", self.interval, len(self.health)
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Heartbeat monitor stopped")

    async def _loop(self) -> None:
        await asyncio.sleep(self.initial_delay)
        while True:
            try:
                await self.run_round()
            except Exception:  # noqa: BLE001
                logger.exception("Heartbeat round failed")
            await asyncio.sleep(self.interval)

    # -- probing ------------------------------------------------------------

    def chain(self) -> List[str]:
        """Primary plus fallbacks, deduplicated, configured backends only."""
        order = self.fallback_store.load()
        keys: List[str] = []
        for key in [order.primary, *order.fallbacks]:
            if key not in keys and self.registry.get(key) is not None:
                keys.append(key)
        return keys

    def _sync_chain(self) -> None:
        chain = self.chain()
        for key in chain:
            self.health.setdefault(key, BackendHealth(key=key))
        for key in list(self.health):
            if key not in chain:
                del self.health[key]

    async def run_round(self) -> None:
        self._sync_chain()
        for key, health in self.health.items():
            provider = self.registry.get(key)
            if provider is not None:
                await self.probe(provider, health)
        self.handle_failover()

    async def probe(self, provider: BaseProvider, health: BackendHealth) -> None:
        start = time.monotonic()
        try:
            available = await asyncio.wait_for(provider.is_available(), timeout=self.probe_timeout)
            if not available:
                raise ProbeError("backend reported unavailable")
            await asyncio.wait_for(self.ping(provider), timeout=self.probe_timeout)
        except (ProbeError, asyncio.TimeoutError) as exc:
            self._record_failure(health, start, str(exc) or "timeout")
        except Exception as exc:  # noqa: BLE001
            self._record_failure(health, start, f"{type(exc).__name__}: {exc}")
        else:
            self._record_success(health, start)

    async def ping(self, provider: BaseProvider) -> str:
        request = QueryRequest(prompt=PING_PROMPT, system_prompt=PING_SYSTEM_PROMPT)
        stream = terminated(provider.query(request), source=provider.key)
        try:
            async for event in stream:
                if isinstance(event, ErrorEvent):
                    raise ProbeError(event.error)
                if isinstance(event, DoneEvent):
                    return event.text or "ok"
        finally:
            await stream.aclose()
        raise ProbeError("probe ended without a result")

    def _record_success(self, health: BackendHealth, start: float) -> None:
        health.last_latency_ms = int((time.monotonic() - start) * 1000)
        health.last_check = time.time()
        health.last_error = None
        if health.fail_count > 0 or not health.healthy:
            logger.info("%s: recovered (%dms)", health.key, health.last_latency_ms)
        health.fail_count = 0
        health.healthy = True

    def _record_failure(self, health: BackendHealth, start: float, error: str) -> None:
        health.fail_count += 1
        health.last_latency_ms = int((time.monotonic() - start) * 1000)
        health.last_check = time.time()
        health.last_error = error
        if health.fail_count >= self.fail_threshold:
            if health.healthy:
                logger.warning("%s: unhealthy (%d failures: %s)", health.key, health.fail_count, error)
            health.healthy = False
        else:
            logger.warning(
                "%s: failure %d/%d (%s)", health.key, health.fail_count, self.fail_threshold, error
            )

    # -- failover -----------------------------------------------------------

    @property
    def is_failed_over(self) -> bool:
        return self.failed_over

    def handle_failover(self) -> None:
        order = self.fallback_store.load()
        primary = order.primary
        primary_health = self.health.get(primary)
        if primary_health is None:
            return
        active = self.registry.get_active_key()

        if not primary_health.healthy and active == primary:
            for key in order.fallbacks:
                candidate = self.health.get(key)
                if candidate is not None and candidate.healthy:
                    logger.warning("Auto-failover: %s -> %s", primary, key)
                    self.registry.switch_to(key, failover=True)
                    self.failed_over = True
                    return
            logger.error("All backends unhealthy, staying on %s", primary)
            return

        if primary_health.healthy and self.failed_over:
            if active != primary:
                logger.info("Primary recovered, switching back to %s", primary)
                self.registry.switch_to(primary)
            self.failed_over = False

    def get_health_status(self) -> List[Dict[str, Any]]:
        return [health.to_dict() for health in self.health.values()]
