"""
Relay package root.

This package provides configuration loading, the backend drivers and
their presets, the local tool catalog, and the core routing logic
(registry with ordered fallback, heartbeat monitor, sessions).
"""

__all__ = [
    "config",
    "core",
    "models",
    "tools",
]
