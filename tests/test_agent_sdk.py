"""
Stateful agent driver with the SDK query function replaced by a script.
"""

import asyncio

import pytest
from claude_agent_sdk import AssistantMessage, ResultMessage, SystemMessage, TextBlock, ToolUseBlock

from relay.models.agent_sdk import THINKING_TOKENS, AgentSDKProvider, needs_checkpoint
from relay.models.base import CancelToken, DoneEvent, Effort, ErrorEvent, QueryRequest, SessionState, TextEvent, ToolCallEvent
from relay.models.presets import PRESETS


def result(session_id="sess-42", cost=0.12, is_error=False, text="done"):
    return ResultMessage(
        subtype="error_during_execution" if is_error else "success",
        duration_ms=10,
        duration_api_ms=8,
        is_error=is_error,
        num_turns=1,
        session_id=session_id,
        total_cost_usd=cost,
        result=text,
    )


def scripted(*messages):
    calls = []

    async def query_fn(prompt, options):
        calls.append({"prompt": prompt, "options": options})
        for message in messages:
            if isinstance(message, Exception):
                raise message
            yield message

    return query_fn, calls


def make_driver(query_fn, base_prompt="BASE"):
    return AgentSDKProvider("claude-agent", PRESETS["claude-agent"], base_prompt=base_prompt, query_fn=query_fn)


class TestTranslation:
    @pytest.mark.asyncio
    async def test_text_tools_and_result(self, drain):
        query_fn, calls = scripted(
            SystemMessage(subtype="init", data={"session_id": "sess-42"}),
            AssistantMessage(content=[TextBlock(text="Looking")], model="claude"),
            AssistantMessage(content=[ToolUseBlock(id="t1", name="Bash", input={"command": "ls"})], model="claude"),
            AssistantMessage(content=[TextBlock(text=" done.")], model="claude"),
            result(),
        )
        events = await drain(make_driver(query_fn).query(QueryRequest(prompt="list files", system_prompt="PERSONA")))

        assert events[0] == TextEvent(text="Looking", delta="Looking")
        assert isinstance(events[1], ToolCallEvent)
        assert events[1].tool_name == "Bash"
        assert events[2] == TextEvent(text="Looking done.", delta=" done.")
        assert events[-1] == DoneEvent(text="Looking done.", session_id="sess-42", cost_usd=0.12)

        options = calls[0]["options"]
        assert options.system_prompt == "PERSONA\n\nBASE"
        assert options.resume is None
        assert options.permission_mode == "bypassPermissions"

    @pytest.mark.asyncio
    async def test_resumes_session_and_maps_effort(self, drain):
        query_fn, calls = scripted(result())
        request = QueryRequest(prompt="again", session_id="sess-1", effort=Effort.LOW)
        await drain(make_driver(query_fn).query(request))
        assert calls[0]["options"].resume == "sess-1"
        assert calls[0]["options"].max_thinking_tokens == THINKING_TOKENS[Effort.LOW]

    @pytest.mark.asyncio
    async def test_error_result(self, drain):
        query_fn, _ = scripted(result(is_error=True, text="quota exceeded"))
        events = await drain(make_driver(query_fn).query(QueryRequest(prompt="x")))
        assert isinstance(events[-1], ErrorEvent)
        assert "quota exceeded" in events[-1].error

    @pytest.mark.asyncio
    async def test_exception_becomes_error(self, drain):
        query_fn, _ = scripted(RuntimeError("CLI not found"))
        events = await drain(make_driver(query_fn).query(QueryRequest(prompt="x")))
        assert events == [ErrorEvent(error="Agent SDK error: CLI not found")]

    @pytest.mark.asyncio
    async def test_abort_message_is_aborted(self, drain):
        query_fn, _ = scripted(RuntimeError("Operation aborted by user"))
        events = await drain(make_driver(query_fn).query(QueryRequest(prompt="x")))
        assert events[-1].aborted is True

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self):
        token = CancelToken()
        query_fn, _ = scripted(
            AssistantMessage(content=[TextBlock(text="a")], model="claude"),
            AssistantMessage(content=[TextBlock(text="b")], model="claude"),
            result(),
        )
        events = []
        async for event in make_driver(query_fn).query(QueryRequest(prompt="x", cancel=token)):
            events.append(event)
            token.cancel()
        assert events[-1].aborted is True
        assert not any(isinstance(e, DoneEvent) for e in events)

    @pytest.mark.asyncio
    async def test_cancel_while_agent_is_silent(self):
        token = CancelToken()
        seen = asyncio.Event()
        closed = []

        async def query_fn(prompt, options):
            try:
                yield AssistantMessage(content=[TextBlock(text="working")], model="claude")
                await asyncio.Event().wait()
            finally:
                closed.append(True)

        events = []

        async def consume():
            async for event in make_driver(query_fn).query(QueryRequest(prompt="x", cancel=token)):
                events.append(event)
                seen.set()

        task = asyncio.create_task(consume())
        await seen.wait()
        token.cancel()
        await asyncio.wait_for(task, timeout=2)

        assert events[0] == TextEvent(text="working", delta="working")
        assert events[-1].aborted is True
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_stream_without_result(self, drain):
        query_fn, _ = scripted(AssistantMessage(content=[TextBlock(text="a")], model="claude"))
        events = await drain(make_driver(query_fn).query(QueryRequest(prompt="x")))
        assert isinstance(events[-1], ErrorEvent)


class TestCheckpoint:
    def test_thresholds(self):
        assert not needs_checkpoint(None)
        assert not needs_checkpoint(SessionState(message_count=9, tool_use_count=14))
        assert needs_checkpoint(SessionState(message_count=10, tool_use_count=0))
        assert needs_checkpoint(SessionState(message_count=0, tool_use_count=15))

    @pytest.mark.asyncio
    async def test_checkpoint_prefix(self, drain):
        query_fn, calls = scripted(result())
        request = QueryRequest(prompt="next task", session_state=SessionState(message_count=3, tool_use_count=20))
        await drain(make_driver(query_fn).query(request))
        prompt = calls[0]["prompt"]
        assert prompt.startswith("[CHECKPOINT]")
        assert prompt.endswith("next task")

    @pytest.mark.asyncio
    async def test_no_checkpoint_below_thresholds(self, drain):
        query_fn, calls = scripted(result())
        request = QueryRequest(prompt="next task", session_state=SessionState(message_count=1, tool_use_count=1))
        await drain(make_driver(query_fn).query(request))
        assert calls[0]["prompt"] == "next task"
