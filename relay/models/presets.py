"""
Backend configuration and the catalog of named presets.

A backend *instance* is data: a `BackendConfig` selected by key. A backend
*kind* is code: adding one means adding a `BackendKind` member and a branch
in `create_provider`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional

from relay.models.agent_sdk import AgentSDKProvider
from relay.models.base import BaseProvider
from relay.models.openai_compatible import OpenAICompatibleProvider

logger = logging.getLogger(__name__)


class BackendKind(str, enum.Enum):
    STATEFUL_AGENT = "stateful-agent"
    STATELESS_HTTP = "stateless-http"


@dataclass(frozen=True)
class BackendConfig:
    """
    Immutable description of one configured backend.

    `api_key` is supplied out of band (environment or config file) and is
    never part of a preset.
    """

    kind: BackendKind
    name: str
    model: str
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    supports_tools: bool = False
    supports_vision: bool = False
    supports_streaming: bool = True
    max_tokens: int = 4096
    temperature: float = 0.7

    def with_api_key(self, api_key: Optional[str]) -> "BackendConfig":
        return replace(self, api_key=api_key)

    @classmethod
    def from_dict(cls, cfg: Mapping[str, Any]) -> "BackendConfig":
        """Build a config from a `backends:` entry of the YAML file."""
        kind = BackendKind(cfg.get("kind", BackendKind.STATELESS_HTTP.value))
        if "model" not in cfg:
            raise ValueError("Backend entries require a 'model'.")
        return cls(
            kind=kind,
            name=cfg.get("name", cfg["model"]),
            model=cfg["model"],
            api_key=cfg.get("api_key"),
            base_url=cfg.get("base_url"),
            supports_tools=bool(cfg.get("supports_tools", False)),
            supports_vision=bool(cfg.get("supports_vision", False)),
            supports_streaming=bool(cfg.get("supports_streaming", True)),
            max_tokens=int(cfg.get("max_tokens", 4096)),
            temperature=float(cfg.get("temperature", 0.7)),
        )


def _http(name: str, model: str, base_url: str, vision: bool = True, tools: bool = True) -> BackendConfig:
    return BackendConfig(
        kind=BackendKind.STATELESS_HTTP,
        name=name,
        model=model,
        base_url=base_url,
        supports_tools=tools,
        supports_vision=vision,
    )


OPENAI_URL = "https://api.openai.com/v1"
GROQ_URL = "https://api.groq.com/openai/v1"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
NVIDIA_URL = "https://integrate.api.nvidia.com/v1"
ANTHROPIC_URL = "https://api.anthropic.com/v1"

PRESETS: Dict[str, BackendConfig] = {
    "claude-agent": BackendConfig(
        kind=BackendKind.STATEFUL_AGENT,
        name="Claude (Agent SDK)",
        model="claude-opus-4-6",
        supports_tools=True,
        supports_vision=True,
    ),
    "claude-sonnet": _http("Claude Sonnet 4", "claude-sonnet-4-20250514", ANTHROPIC_URL),
    "gpt-4o": _http("GPT-4o", "gpt-4o", OPENAI_URL),
    "gpt-4o-mini": _http("GPT-4o Mini", "gpt-4o-mini", OPENAI_URL),
    "gpt-4.1": _http("GPT-4.1", "gpt-4.1", OPENAI_URL),
    "gpt-4.1-mini": _http("GPT-4.1 Mini", "gpt-4.1-mini", OPENAI_URL),
    "o3-mini": _http("o3 Mini", "o3-mini", OPENAI_URL, vision=False),
    "groq": _http("Groq (Llama 3.3 70B)", "llama-3.3-70b-versatile", GROQ_URL, vision=False),
    "groq-llama-3.1-8b": _http("Llama 3.1 8B (Groq)", "llama-3.1-8b-instant", GROQ_URL, vision=False),
    "gemini-2.5-pro": _http("Gemini 2.5 Pro", "gemini-2.5-pro", GEMINI_URL),
    "gemini-2.5-flash": _http("Gemini 2.5 Flash", "gemini-2.5-flash", GEMINI_URL),
    "nvidia-llama-3.3-70b": _http(
        "Llama 3.3 70B (NVIDIA)", "meta/llama-3.3-70b-instruct", NVIDIA_URL, vision=False
    ),
    "openrouter": _http("OpenRouter", "anthropic/claude-sonnet-4", "https://openrouter.ai/api/v1"),
    "ollama": _http("Ollama (Local)", "llama3.2", "http://localhost:11434/v1", vision=False, tools=False),
}

# Which API key unlocks which presets.
KEYED_PRESETS: Dict[str, Iterable[str]] = {
    "openai": ("gpt-4o", "gpt-4o-mini", "gpt-4.1", "gpt-4.1-mini", "o3-mini"),
    "groq": ("groq", "groq-llama-3.1-8b"),
    "google": ("gemini-2.5-pro", "gemini-2.5-flash"),
    "nvidia": ("nvidia-llama-3.3-70b",),
    "openrouter": ("openrouter",),
    "anthropic": ("claude-sonnet",),
}


def build_catalog(
    primary: str,
    fallbacks: Iterable[str],
    api_keys: Mapping[str, Optional[str]],
    custom: Optional[Mapping[str, BackendConfig]] = None,
) -> Dict[str, BackendConfig]:
    """
    Assemble the configured backends keyed by name.

    The stateful agent preset is included only when the chain references it;
    keyed presets are included when their API key is present; the local
    Ollama preset is always included; custom entries win over presets.
    """
    chain = [primary, *fallbacks]
    catalog: Dict[str, BackendConfig] = {}

    if "claude-agent" in chain:
        catalog["claude-agent"] = PRESETS["claude-agent"]

    for vendor, keys in KEYED_PRESETS.items():
        api_key = api_keys.get(vendor)
        if not api_key:
            continue
        for key in keys:
            catalog[key] = PRESETS[key].with_api_key(api_key)

    catalog["ollama"] = PRESETS["ollama"]

    if custom:
        catalog.update(custom)

    missing = [key for key in chain if key and key not in catalog]
    if missing:
        logger.warning("Backends referenced but not configured: %s", ", ".join(missing))
    return catalog


def create_provider(key: str, config: BackendConfig, **deps: Any) -> BaseProvider:
    """Instantiate the driver for `config.kind`."""
    if config.kind is BackendKind.STATEFUL_AGENT:
        return AgentSDKProvider(key, config, base_prompt=deps.get("base_prompt", ""))
    if config.kind is BackendKind.STATELESS_HTTP:
        return OpenAICompatibleProvider(key, config, executor=deps.get("executor"))
    raise ValueError(f"Unknown backend kind: {config.kind!r}")
