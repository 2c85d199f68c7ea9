"""
Persistent, user-editable backend fallback order.

The order is a small JSON document (`primary`, `fallbacks`, `updatedAt`,
`updatedBy`) written by the CLI, web and chat commands alike. Every write
is mirrored into the bootstrap `.env` file (`PRIMARY_PROVIDER`,
`FALLBACK_PROVIDERS`) so a restart starts from the same order.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from dotenv import set_key

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_fallbacks(primary: str, fallbacks: Iterable[str]) -> List[str]:
    """Drop blanks, duplicates and the primary, keeping first-seen order."""
    seen = {primary}
    result: List[str] = []
    for key in fallbacks:
        key = key.strip()
        if key and key not in seen:
            seen.add(key)
            result.append(key)
    return result


@dataclass
class FallbackOrder:
    primary: str
    fallbacks: List[str] = field(default_factory=list)
    updated_at: str = field(default_factory=_now)
    updated_by: str = "unknown"

    @property
    def chain(self) -> List[str]:
        return [self.primary, *self.fallbacks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "fallbacks": list(self.fallbacks),
            "updatedAt": self.updated_at,
            "updatedBy": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FallbackOrder":
        primary = str(data["primary"])
        return cls(
            primary=primary,
            fallbacks=normalize_fallbacks(primary, data.get("fallbacks") or []),
            updated_at=data.get("updatedAt") or _now(),
            updated_by=data.get("updatedBy") or "unknown",
        )


class FallbackOrderStore:
    """
    Reads and writes the fallback order file.

    When the file is missing or unreadable, the order comes from the
    bootstrap defaults (normally `PRIMARY_PROVIDER`/`FALLBACK_PROVIDERS`).
    """

    def __init__(
        self,
        path: str,
        default_primary: str,
        default_fallbacks: Iterable[str] = (),
        env_file: Optional[str] = None,
    ) -> None:
        self.path = path
        self.env_file = env_file
        self.default_primary = default_primary
        self.default_fallbacks = list(default_fallbacks)

    def load(self) -> FallbackOrder:
        if os.path.exists(self.path):
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    return FallbackOrder.from_dict(json.load(f))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Ignoring unreadable fallback order file %s: %s", self.path, exc)
        return FallbackOrder(
            primary=self.default_primary,
            fallbacks=normalize_fallbacks(self.default_primary, self.default_fallbacks),
            updated_by="env",
        )

    def save(self, primary: str, fallbacks: Iterable[str], updated_by: str = "unknown") -> FallbackOrder:
        order = FallbackOrder(
            primary=primary,
            fallbacks=normalize_fallbacks(primary, fallbacks),
            updated_by=updated_by,
        )
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(order.to_dict(), f, indent=2)
        self._sync_env(order)
        logger.info("Fallback order updated by %s: %s", updated_by, " > ".join(order.chain))
        return order

    def move_up(self, key: str, updated_by: str = "unknown") -> FallbackOrder:
        """Swap `key` with its predecessor; the first fallback becomes primary."""
        order = self.load()
        fallbacks = list(order.fallbacks)
        primary = order.primary
        if key in fallbacks:
            idx = fallbacks.index(key)
            if idx > 0:
                fallbacks[idx - 1], fallbacks[idx] = fallbacks[idx], fallbacks[idx - 1]
            else:
                primary, fallbacks[0] = key, primary
        return self.save(primary, fallbacks, updated_by)

    def move_down(self, key: str, updated_by: str = "unknown") -> FallbackOrder:
        """Swap `key` with its successor; the primary trades places with the first fallback."""
        order = self.load()
        fallbacks = list(order.fallbacks)
        primary = order.primary
        if key == primary and fallbacks:
            primary, fallbacks[0] = fallbacks[0], key
        elif key in fallbacks:
            idx = fallbacks.index(key)
            if idx < len(fallbacks) - 1:
                fallbacks[idx], fallbacks[idx + 1] = fallbacks[idx + 1], fallbacks[idx]
        return self.save(primary, fallbacks, updated_by)

    def add(self, key: str, updated_by: str = "unknown") -> FallbackOrder:
        order = self.load()
        return self.save(order.primary, [*order.fallbacks, key], updated_by)

    def remove(self, key: str, updated_by: str = "unknown") -> FallbackOrder:
        order = self.load()
        return self.save(order.primary, [k for k in order.fallbacks if k != key], updated_by)

    def format_order(self) -> str:
        order = self.load()
        lines = [f"1. {order.primary} (primary)"]
        for idx, key in enumerate(order.fallbacks, start=2):
            lines.append(f"{idx}. {key}")
        return "\n".join(lines)

    def _sync_env(self, order: FallbackOrder) -> None:
        if not self.env_file or not os.path.exists(self.env_file):
            return
        try:
            set_key(self.env_file, "PRIMARY_PROVIDER", order.primary, quote_mode="never")
            set_key(self.env_file, "FALLBACK_PROVIDERS", ",".join(order.fallbacks), quote_mode="never")
        except OSError as exc:
            logger.error("Failed to sync fallback order to %s: %s", self.env_file, exc)
