"""
Platform-independent conversation handler.

Takes a user's message from any front end (the CLI, a chat adapter),
runs it through the registry with the user's session state and hands the
rendered result back to the adapter. While a user's query is running
further messages are queued and answered together afterwards.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Protocol

from relay.core.context import RelayContext
from relay.core.session import QueueFullError, UserSession
from relay.models.agent_sdk import needs_checkpoint
from relay.models.base import (
    CancelToken,
    ChatMessage,
    DoneEvent,
    ErrorEvent,
    FallbackEvent,
    QueryRequest,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGE_LENGTH = 4096


class PlatformAdapter(Protocol):
    """
    What the handler needs from a front end.

    `set_typing(active)` is optional; `max_message_length` and `verbose`
    (render tool calls) are read with `getattr` when present.
    """

    async def send_text(self, text: str) -> Any:
        ...


def split_message(text: str, max_len: int) -> List[str]:
    """Split at a newline or space in the second half of each chunk, else hard."""
    chunks: List[str] = []
    remaining = text
    while len(remaining) > max_len:
        split_at = remaining.rfind("\n", 0, max_len)
        if split_at < max_len * 0.5:
            split_at = remaining.rfind(" ", 0, max_len)
        if split_at < max_len * 0.5:
            split_at = max_len
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    if remaining:
        chunks.append(remaining)
    return chunks


def render_notice(event: StreamEvent, verbose: bool = False) -> Optional[str]:
    if isinstance(event, FallbackEvent):
        return f"[{event.from_key} failed ({event.error}), switching to {event.to_key}]"
    if isinstance(event, ToolCallEvent) and verbose:
        return f"[tool] {event.tool_name} {event.arguments}".rstrip()
    if isinstance(event, ErrorEvent):
        return "Cancelled." if event.aborted else f"Error: {event.error}"
    return None


async def _set_typing(adapter: PlatformAdapter, active: bool) -> None:
    set_typing = getattr(adapter, "set_typing", None)
    if set_typing is None:
        return
    try:
        await set_typing(active)
    except Exception as exc:  # noqa: BLE001
        logger.debug("set_typing failed: %s", exc)


async def _send(adapter: PlatformAdapter, text: str) -> None:
    max_len = getattr(adapter, "max_message_length", None) or DEFAULT_MAX_MESSAGE_LENGTH
    for chunk in split_message(text, max_len):
        await adapter.send_text(chunk)


async def handle_message(
    ctx: RelayContext, user_id: str, text: str, adapter: PlatformAdapter
) -> Optional[str]:
    """
    Answer one message for `user_id` through `adapter`.

    Returns the final answer text, or None when the message was queued,
    rejected or the query failed.
    """
    text = (text or "").strip()
    if not text:
        return None

    session = ctx.sessions.get(user_id)
    if session.busy:
        try:
            pending = session.enqueue(text)
        except QueueFullError as exc:
            await adapter.send_text(f"Still working on your previous message. {exc}")
            return None
        await adapter.send_text(f"Queued ({pending}/{session.queue_capacity}), I will get to it next.")
        return None

    # The session stays busy until the queue is empty, so messages arriving
    # while an answer is being sent are queued behind the older ones.
    token = session.acquire()
    try:
        answer = await _run_turn(ctx, session, text, adapter, token)
        while True:
            queued = session.drain_queue()
            if queued is None:
                return answer
            answer = await _run_turn(ctx, session, queued, adapter, session.renew_token())
    finally:
        session.release()


async def _run_turn(
    ctx: RelayContext,
    session: UserSession,
    prompt: str,
    adapter: PlatformAdapter,
    token: CancelToken,
) -> Optional[str]:
    stateful = ctx.active_is_stateful()
    verbose = bool(getattr(adapter, "verbose", False))
    session.message_count += 1
    state = session.state()
    request = QueryRequest(
        prompt=prompt,
        history=[] if stateful else list(session.history),
        system_prompt=ctx.system_prompt(),
        working_dir=session.working_dir,
        session_id=session.session_id if stateful else None,
        effort=session.effort,
        cancel=token,
        session_state=state if stateful else None,
    )

    final_text = ""
    done: Optional[DoneEvent] = None
    await _set_typing(adapter, True)
    try:
        stream = ctx.query_with_fallback(request)
        try:
            async for event in stream:
                if isinstance(event, TextEvent):
                    final_text = event.text
                    continue
                if isinstance(event, ToolCallEvent):
                    session.tool_use_count += 1
                if isinstance(event, DoneEvent):
                    done = event
                    break
                notice = render_notice(event, verbose=verbose)
                if notice:
                    await adapter.send_text(notice)
                if isinstance(event, ErrorEvent):
                    return None
        finally:
            await stream.aclose()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Query for %s failed", session.user_id)
        await adapter.send_text(f"Error: {exc}")
        return None
    finally:
        await _set_typing(adapter, False)

    if done is None:
        return None
    final_text = done.text or final_text
    if done.session_id:
        session.session_id = done.session_id
    session.track_usage(done.backend, done.cost_usd or 0.0)
    if stateful and needs_checkpoint(state):
        session.message_count = 0
        session.tool_use_count = 0
    if not stateful:
        session.add_to_history(ChatMessage(role="user", content=prompt))
        if final_text:
            session.add_to_history(ChatMessage(role="assistant", content=final_text))

    if final_text.strip():
        await _send(adapter, final_text)
    return final_text


def cancel(ctx: RelayContext, user_id: str) -> bool:
    """Cancel the running query of `user_id`; False when nothing was running."""
    session = ctx.sessions.get(user_id)
    if session.cancel():
        logger.info("Cancel requested for %s", user_id)
        return True
    return False
