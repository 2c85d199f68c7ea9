"""
Base types shared by every backend driver.

Defines the request vocabulary (`QueryRequest`, `ChatMessage`, effort and
cancellation), the normalized streaming protocol (`StreamEvent` and its
variants), and the `BaseProvider` interface implemented by both backend
kinds. A caller consuming a stream never needs to know which kind of
backend produced it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

ABORTED = "Request aborted"

T = TypeVar("T")


class ProviderError(Exception):
    """Raised when a provider cannot execute a request (e.g. missing API key)."""


class QueryAborted(Exception):
    """Raised by `until_cancelled` when the request's `CancelToken` fires first."""


class Effort(enum.IntEnum):
    """Thinking effort, ordered from cheapest to most thorough."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3
    MAX = 4

    @classmethod
    def parse(cls, value: Union[str, "Effort"]) -> "Effort":
        if isinstance(value, Effort):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown effort level: {value!r}") from None

    @property
    def label(self) -> str:
        return self.name.lower()


class CancelToken:
    """
    Cooperative cancellation flag threaded through a `QueryRequest`.

    Drivers race their network reads and tool runs against it with
    `until_cancelled` and end the stream with an aborted `ErrorEvent`
    once it is set.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def until_cancelled(awaitable: Awaitable[T], token: CancelToken) -> T:
    """
    Await `awaitable` unless `token` fires first.

    The losing side is cancelled. Raises `QueryAborted` when the token is
    set, even if the awaitable finished in the same step.
    """
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if token.cancelled:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise QueryAborted(ABORTED)
    return task.result()


@dataclass
class ChatMessage:
    """One role-tagged turn of conversation history."""

    role: str
    content: str
    images: List[str] = field(default_factory=list)


@dataclass
class SessionState:
    """Usage counters a stateful backend uses to decide on a checkpoint."""

    message_count: int = 0
    tool_use_count: int = 0


@dataclass
class QueryRequest:
    prompt: str
    history: List[ChatMessage] = field(default_factory=list)
    system_prompt: Optional[str] = None
    working_dir: Optional[str] = None
    session_id: Optional[str] = None
    effort: Effort = Effort.HIGH
    cancel: CancelToken = field(default_factory=CancelToken)
    session_state: Optional[SessionState] = None


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextEvent:
    """Cumulative text so far plus the newly produced delta."""

    text: str
    delta: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "text", "text": self.text, "delta": self.delta}


@dataclass(frozen=True)
class ToolCallEvent:
    tool_name: str
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "tool-call", "toolName": self.tool_name, "toolInput": self.arguments}


@dataclass(frozen=True)
class ToolResultEvent:
    tool_name: str
    result: str
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "tool-result",
            "toolName": self.tool_name,
            "text": self.result,
            "isError": self.is_error,
        }


@dataclass(frozen=True)
class FallbackEvent:
    """Notice that `to_key` is answering because `from_key` failed."""

    from_key: str
    to_key: str
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "fallback", "from": self.from_key, "to": self.to_key, "error": self.error}


@dataclass(frozen=True)
class DoneEvent:
    text: str = ""
    session_id: Optional[str] = None
    cost_usd: float = 0.0
    backend: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "done",
            "text": self.text,
            "sessionId": self.session_id,
            "costUsd": self.cost_usd,
            "backend": self.backend,
        }


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    aborted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "error", "error": self.error, "aborted": self.aborted}


StreamEvent = Union[TextEvent, ToolCallEvent, ToolResultEvent, FallbackEvent, DoneEvent, ErrorEvent]

TERMINAL_EVENTS = (DoneEvent, ErrorEvent)
CONTENT_EVENTS = (TextEvent, ToolCallEvent)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


def aborted_error() -> ErrorEvent:
    return ErrorEvent(error=ABORTED, aborted=True)


async def terminated(
    events: AsyncIterator[StreamEvent], source: str = "backend"
) -> AsyncIterator[StreamEvent]:
    """
    Yield from `events` so that exactly one terminal event ends the stream.

    Anything after the first `DoneEvent`/`ErrorEvent` is dropped, an
    exception escaping the driver becomes an `ErrorEvent`, and a stream that
    runs dry without a terminal event gets one appended.
    """
    try:
        async for event in events:
            yield event
            if is_terminal(event):
                return
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s raised while streaming", source)
        yield ErrorEvent(error=f"{source} error: {exc}")
        return
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()
    yield ErrorEvent(error=f"{source} ended the stream without a result")


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class BaseProvider:
    """
    Abstract base class for all backend drivers.

    Drivers implement `query`, an async generator of `StreamEvent`s ending
    in exactly one `DoneEvent` or `ErrorEvent`. Drivers never retry; the
    registry decides whether a failure is retried on another backend.
    """

    def __init__(self, key: str, config: Any) -> None:
        self.key = key
        self.config = config

    def query(self, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    async def is_available(self) -> bool:
        raise NotImplementedError

    def describe(self) -> Dict[str, str]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r}, model={self.config.model!r})"
