"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from relay.core.fallback_order import FallbackOrderStore  # noqa: E402
from relay.models.base import BaseProvider, QueryRequest  # noqa: E402
from relay.models.presets import BackendConfig, BackendKind  # noqa: E402


class ScriptedProvider(BaseProvider):
    """
    Backend that replays a fixed list of events.

    An Exception instance in the script is raised at that point. Every
    request is recorded in `requests`.
    """

    def __init__(
        self,
        key: str,
        script: List[object],
        kind: BackendKind = BackendKind.STATELESS_HTTP,
        available: bool = True,
    ) -> None:
        super().__init__(key, BackendConfig(kind=kind, name=key.title(), model=f"{key}-model"))
        self.script = list(script)
        self.available = available
        self.requests: List[QueryRequest] = []
        self.closed = False

    async def query(self, request: QueryRequest):
        self.requests.append(request)
        try:
            for item in self.script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed = True

    async def is_available(self) -> bool:
        return self.available

    def describe(self):
        return {"name": self.config.name, "model": self.config.model, "status": "scripted"}


@pytest.fixture
def make_provider():
    def _make(key: str, script: List[object], kind: Optional[BackendKind] = None, available: bool = True):
        return ScriptedProvider(key, script, kind=kind or BackendKind.STATELESS_HTTP, available=available)

    return _make


@pytest.fixture
def make_store(tmp_path):
    def _make(primary: str, fallbacks: List[str], env_file: Optional[str] = None) -> FallbackOrderStore:
        return FallbackOrderStore(
            path=str(tmp_path / "docs" / "fallback-order.json"),
            default_primary=primary,
            default_fallbacks=fallbacks,
            env_file=env_file,
        )

    return _make


async def collect(stream) -> list:
    return [event async for event in stream]


@pytest.fixture
def drain():
    return collect
