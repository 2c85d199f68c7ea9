"""
Core logic for the relay.

This subpackage provides the provider registry with ordered fallback,
the persisted fallback order, the heartbeat monitor, per-user sessions,
prompt management, the conversation handler and the context object
that ties them together.
"""

__all__ = [
    "context",
    "fallback_order",
    "handler",
    "heartbeat",
    "prompts",
    "registry",
    "session",
]
