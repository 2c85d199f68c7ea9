"""
Per-user conversational state.

Sessions are created on first contact and live for the process lifetime.
A busy session queues (up to `QUEUE_CAPACITY`) messages that arrive while
a query is running; they are answered together once it finishes, before
the session is released.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from relay.models.base import CancelToken, ChatMessage, Effort, SessionState

logger = logging.getLogger(__name__)

MAX_HISTORY = 20
QUEUE_CAPACITY = 3


class QueueFullError(Exception):
    """Raised when a busy session's pending-message queue is full."""


@dataclass
class UserSession:
    user_id: str
    working_dir: str
    effort: Effort = Effort.HIGH
    session_id: Optional[str] = None
    busy: bool = False
    cancel_token: Optional[CancelToken] = None
    total_cost: float = 0.0
    cost_by_backend: Dict[str, float] = field(default_factory=dict)
    history: List[ChatMessage] = field(default_factory=list)
    queue: List[str] = field(default_factory=list)
    message_count: int = 0
    tool_use_count: int = 0
    last_activity: float = field(default_factory=time.time)
    max_history: int = MAX_HISTORY
    queue_capacity: int = QUEUE_CAPACITY

    def add_to_history(self, message: ChatMessage) -> None:
        self.history.append(message)
        overflow = len(self.history) - self.max_history
        if overflow > 0:
            del self.history[:overflow]

    def enqueue(self, text: str) -> int:
        """Queue a message for later; returns the queue length."""
        if len(self.queue) >= self.queue_capacity:
            raise QueueFullError(f"Queue is full ({self.queue_capacity} pending messages).")
        self.queue.append(text)
        return len(self.queue)

    def drain_queue(self) -> Optional[str]:
        """Remove all pending messages, coalesced into one prompt."""
        if not self.queue:
            return None
        pending, self.queue = self.queue, []
        return "\n\n".join(pending)

    def acquire(self) -> CancelToken:
        if self.busy:
            raise RuntimeError(f"Session {self.user_id} is already busy.")
        self.busy = True
        self.cancel_token = CancelToken()
        return self.cancel_token

    def renew_token(self) -> CancelToken:
        """Fresh token for the next turn of a session that stays busy."""
        if not self.busy:
            raise RuntimeError(f"Session {self.user_id} is not busy.")
        self.cancel_token = CancelToken()
        return self.cancel_token

    def release(self) -> None:
        self.busy = False
        self.cancel_token = None
        self.last_activity = time.time()

    def cancel(self) -> bool:
        if self.busy and self.cancel_token is not None:
            self.cancel_token.cancel()
            return True
        return False

    def track_usage(self, backend: Optional[str], cost: float) -> None:
        self.total_cost += cost
        if backend:
            self.cost_by_backend[backend] = self.cost_by_backend.get(backend, 0.0) + cost

    def state(self) -> SessionState:
        return SessionState(message_count=self.message_count, tool_use_count=self.tool_use_count)

    def reset(self) -> None:
        """Start a new conversation; working dir and effort are preferences and stay."""
        self.session_id = None
        self.total_cost = 0.0
        self.cost_by_backend = {}
        self.history = []
        self.message_count = 0
        self.tool_use_count = 0


class SessionStore:
    def __init__(self, default_working_dir: str, max_history: int = MAX_HISTORY) -> None:
        self.default_working_dir = default_working_dir
        self.max_history = max_history
        self._sessions: Dict[str, UserSession] = {}

    def get(self, user_id: str) -> UserSession:
        session = self._sessions.get(user_id)
        if session is None:
            session = UserSession(
                user_id=user_id,
                working_dir=self.default_working_dir,
                max_history=self.max_history,
            )
            self._sessions[user_id] = session
            logger.debug("Created session for %s", user_id)
        return session

    def reset(self, user_id: str) -> UserSession:
        session = self.get(user_id)
        session.reset()
        return session

    def all(self) -> List[UserSession]:
        return list(self._sessions.values())
