"""
Backend drivers.

`base.py` holds the request and stream-event types shared by every
driver and the `BaseProvider` interface. `presets.py` describes the
known backends and builds drivers for them. Two drivers exist: an
OpenAI-compatible HTTP driver for stateless backends and an Agent SDK
driver for the stateful backend.
"""

__all__ = [
    "base",
    "presets",
    "openai_compatible",
    "agent_sdk",
]
