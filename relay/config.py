"""
Configuration loader for the relay service.

Bootstrap selection (primary backend, fallback list, working directory)
and per-backend API keys come from environment variables, usually via a
`.env` file. An optional YAML file adds custom backends and tunes the
heartbeat, prompts and tools. Secrets belong in the environment, not in
the YAML file.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from relay.models.presets import BackendConfig

API_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "groq": "GROQ_API_KEY",
    "nvidia": "NVIDIA_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
DEFAULT_ENV_FILE = ".env"


def load_app_config(path: str) -> Dict[str, Any]:
    """
    Load the application configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A dictionary representing the configuration.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the top-level configuration is not a mapping.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found at: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError("Top-level configuration must be a mapping/dictionary.")

    return data


def env_file_path(environ: Optional[Mapping[str, str]] = None) -> str:
    """The bootstrap env file, `ENV_FILE` or `.env`."""
    env = os.environ if environ is None else environ
    return env.get("ENV_FILE") or DEFAULT_ENV_FILE


def load_environment() -> str:
    """
    Load the bootstrap env file into `os.environ` without overriding
    variables that are already set. Returns the path that was read; the
    fallback order store writes its changes back to the same file.
    """
    path = env_file_path()
    load_dotenv(path)
    return path

def split_keys(raw: Optional[str]) -> List[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


@dataclass
class Settings:
    primary: str = "groq"
    fallbacks: List[str] = field(default_factory=list)
    working_dir: str = field(default_factory=lambda: os.path.expanduser("~"))
    api_keys: Dict[str, Optional[str]] = field(default_factory=dict)
    custom_backends: Dict[str, BackendConfig] = field(default_factory=dict)
    fallback_order_file: str = os.path.join("docs", "fallback-order.json")
    env_file: str = DEFAULT_ENV_FILE
    heartbeat: Dict[str, Any] = field(default_factory=dict)
    prompts: Dict[str, Any] = field(default_factory=dict)
    tools: Dict[str, Any] = field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def from_env(
        cls,
        cfg: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        cfg = cfg or {}
        env = os.environ if environ is None else environ

        custom: Dict[str, BackendConfig] = {}
        for key, entry in (cfg.get("backends") or {}).items():
            entry = dict(entry or {})
            key_env = entry.pop("api_key_env", None)
            if key_env and not entry.get("api_key"):
                entry["api_key"] = env.get(key_env)
            custom[key] = BackendConfig.from_dict(entry)

        return cls(
            primary=env.get("PRIMARY_PROVIDER") or cfg.get("primary") or "groq",
            fallbacks=split_keys(env.get("FALLBACK_PROVIDERS")) or list(cfg.get("fallbacks") or []),
            working_dir=env.get("WORKING_DIR") or os.path.expanduser("~"),
            api_keys={vendor: env.get(var) or None for vendor, var in API_KEY_VARS.items()},
            custom_backends=custom,
            fallback_order_file=env.get("FALLBACK_ORDER_FILE")
            or os.path.join("docs", "fallback-order.json"),
            env_file=env_file_path(env),
            heartbeat=dict(cfg.get("heartbeat") or {}),
            prompts=dict(cfg.get("prompts") or {}),
            tools=dict(cfg.get("tools") or {}),
            log_level=env.get("LOG_LEVEL") or "INFO",
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # The HTTP client logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
