"""
Claude Agent SDK provider implementation.

The agent backend keeps its own multi-turn session and runs its built-in
tools (Read, Write, Bash, ...) itself, so this driver stays thin: it
composes the system prompt, injects a checkpoint reminder into long
sessions, translates SDK messages into stream events, and captures the
session id so the next turn can resume instead of starting over.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from typing import Any, AsyncIterator, Callable, Dict, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
    query as sdk_query,
)

from relay.models.base import (
    BaseProvider,
    DoneEvent,
    Effort,
    ErrorEvent,
    QueryAborted,
    QueryRequest,
    SessionState,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    aborted_error,
    until_cancelled,
)

logger = logging.getLogger(__name__)

CHECKPOINT_TOOL_THRESHOLD = 15
CHECKPOINT_MSG_THRESHOLD = 10

ALLOWED_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebSearch", "WebFetch", "Task"]
MAX_TURNS = 50

THINKING_TOKENS = {
    Effort.LOW: 1024,
    Effort.MEDIUM: 4096,
    Effort.HIGH: 16000,
    Effort.MAX: 32000,
}

# Set when running inside another agent session; the SDK refuses to nest.
NESTED_SESSION_VARS = ("CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT")

_END = object()


def needs_checkpoint(state: Optional[SessionState]) -> bool:
    return bool(
        state
        and (
            state.tool_use_count >= CHECKPOINT_TOOL_THRESHOLD
            or state.message_count >= CHECKPOINT_MSG_THRESHOLD
        )
    )


def checkpoint_prompt(prompt: str, tool_uses: int, messages: int) -> str:
    return (
        f"[CHECKPOINT] This session already has {tool_uses} tool calls and {messages} messages. "
        "Before handling this request, write a checkpoint of the current context to your "
        "memory file (docs/memory/YYYY-MM-DD.md).\n\n"
        f"{prompt}"
    )


async def _pump(messages: AsyncIterator[Any], inbox: asyncio.Queue) -> None:
    """
    Iterate and close the SDK stream in one task, handing each message
    to `inbox`. A failure is handed over as the exception instance, a
    clean end as `_END`. The driver cancels this task on abort.
    """
    try:
        async for message in messages:
            await inbox.put(message)
    except Exception as exc:  # noqa: BLE001
        await inbox.put(exc)
        return
    finally:
        aclose = getattr(messages, "aclose", None)
        if aclose is not None:
            await aclose()
    await inbox.put(_END)


class AgentSDKProvider(BaseProvider):
    """
    Stateful backend driven through `claude_agent_sdk.query`.
    """

    def __init__(
        self,
        key: str,
        config: Any,
        base_prompt: str = "",
        query_fn: Optional[Callable[..., AsyncIterator[Any]]] = None,
    ) -> None:
        super().__init__(key, config)
        self.base_prompt = base_prompt
        self.query_fn = query_fn or sdk_query

    def build_prompt(self, request: QueryRequest) -> str:
        state = request.session_state
        if needs_checkpoint(state):
            logger.info(
                "Injecting checkpoint (tools=%d, messages=%d)", state.tool_use_count, state.message_count
            )
            return checkpoint_prompt(request.prompt, state.tool_use_count, state.message_count)
        return request.prompt

    def build_system_prompt(self, request: QueryRequest) -> str:
        parts = [p for p in (request.system_prompt, self.base_prompt) if p]
        return "\n\n".join(parts)

    def build_options(self, request: QueryRequest) -> ClaudeAgentOptions:
        env = {k: v for k, v in os.environ.items() if k not in NESTED_SESSION_VARS}
        return ClaudeAgentOptions(
            system_prompt=self.build_system_prompt(request) or None,
            cwd=request.working_dir or os.getcwd(),
            resume=request.session_id or None,
            model=self.config.model,
            permission_mode="bypassPermissions",
            allowed_tools=list(ALLOWED_TOOLS),
            max_turns=MAX_TURNS,
            max_thinking_tokens=THINKING_TOKENS[request.effort],
            setting_sources=["user", "project"],
            env=env,
        )

    async def query(self, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        if request.cancel.cancelled:
            yield aborted_error()
            return

        text = ""
        session_id = request.session_id or ""
        pump: Optional[asyncio.Future] = None
        try:
            messages = self.query_fn(prompt=self.build_prompt(request), options=self.build_options(request))
            inbox: asyncio.Queue = asyncio.Queue(maxsize=1)
            pump = asyncio.ensure_future(_pump(messages, inbox))
            while True:
                try:
                    message = await until_cancelled(inbox.get(), request.cancel)
                except QueryAborted:
                    yield aborted_error()
                    return
                if message is _END:
                    break
                if isinstance(message, Exception):
                    raise message

                if isinstance(message, SystemMessage):
                    if message.subtype == "init":
                        session_id = message.data.get("session_id", session_id)
                elif isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock) and block.text:
                            text += block.text
                            yield TextEvent(text=text, delta=block.text)
                        elif isinstance(block, ToolUseBlock):
                            yield ToolCallEvent(tool_name=block.name, arguments=str(block.input)[:200])
                elif isinstance(message, ResultMessage):
                    session_id = message.session_id or session_id
                    if message.is_error:
                        yield ErrorEvent(error=f"Agent SDK error: {message.result or message.subtype}")
                        return
                    yield DoneEvent(
                        text=text,
                        session_id=session_id or None,
                        cost_usd=message.total_cost_usd or 0.0,
                    )
                    return
        except Exception as exc:  # noqa: BLE001
            if request.cancel.cancelled or "abort" in str(exc).lower():
                yield aborted_error()
            else:
                logger.warning("Agent SDK query failed: %s", exc)
                yield ErrorEvent(error=f"Agent SDK error: {exc}")
            return
        finally:
            if pump is not None:
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)

        if request.cancel.cancelled:
            yield aborted_error()
        else:
            yield ErrorEvent(error="Agent SDK ended without a result")

    async def is_available(self) -> bool:
        """The SDK drives the `claude` CLI; it must be installed and runnable."""
        cli = shutil.which("claude")
        if cli is None:
            return False
        try:
            proc = await asyncio.create_subprocess_exec(
                cli,
                "--version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        try:
            return await asyncio.wait_for(proc.wait(), timeout=5) == 0
        except asyncio.TimeoutError:
            proc.kill()
            return False

    def describe(self) -> Dict[str, str]:
        return {"name": self.config.name, "model": self.config.model, "status": "Agent SDK (CLI auth)"}
