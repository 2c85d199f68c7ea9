"""
OpenAI-compatible provider implementation.

Drives any endpoint that speaks the Chat Completions protocol (OpenAI,
Groq, Gemini, NVIDIA NIM, OpenRouter, Ollama, ...) through the official
SDK's async client. Text answers are streamed and the server-sent event
lines are parsed here, so that a malformed fragment from a noisy backend
is skipped instead of failing the whole answer. Backends that support
function calling get the local tool catalog through a `ToolExecutor`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import urlparse

import httpx
import openai
from openai import AsyncOpenAI

from relay.models.base import (
    BaseProvider,
    DoneEvent,
    ErrorEvent,
    ProviderError,
    QueryAborted,
    QueryRequest,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    ToolResultEvent,
    aborted_error,
    until_cancelled,
)

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 10
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")

# Rough USD per 1k tokens; only used for the approximate per-turn cost.
COST_PER_1K_TOKENS: Dict[str, float] = {
    "gpt-4o": 0.01,
    "gpt-4o-mini": 0.0003,
    "gemini-2.5-pro": 0.005,
    "gemini-2.5-flash": 0.0005,
}
DEFAULT_COST_PER_1K = 0.001


class OpenAICompatibleProvider(BaseProvider):
    """
    Stateless backend: every turn carries its full message list.
    """

    def __init__(
        self,
        key: str,
        config: Any,
        executor: Any = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(key, config)
        self.executor = executor
        self.http_client = http_client
        self._cached_client: Optional[AsyncOpenAI] = None

    # -- configuration ------------------------------------------------------

    def is_loopback(self) -> bool:
        host = urlparse(self.config.base_url or "").hostname or ""
        return host in LOOPBACK_HOSTS

    def uses_tools(self) -> bool:
        return bool(self.config.supports_tools and self.executor is not None)

    def _headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if "openrouter.ai" in (self.config.base_url or ""):
            headers["HTTP-Referer"] = "https://github.com/relay-bot/relay"
            headers["X-Title"] = "relay"
        return headers

    def _client(self) -> AsyncOpenAI:
        if self._cached_client is not None:
            return self._cached_client
        api_key = self.config.api_key
        if not api_key:
            if not self.is_loopback():
                raise ProviderError(f"{self.config.name} is not configured (no API key).")
            # Local servers ignore the key but the SDK insists on one
            api_key = "not-needed"
        self._cached_client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.config.base_url,
            max_retries=0,
            default_headers=self._headers(),
            http_client=self.http_client,
        )
        return self._cached_client

    # -- message building ---------------------------------------------------

    def build_messages(self, request: QueryRequest) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})

        for msg in request.history:
            if self.config.supports_vision and msg.images:
                content: List[Dict[str, Any]] = [{"type": "text", "text": msg.content}]
                for img in msg.images:
                    url = img if img.startswith("http") else f"data:image/jpeg;base64,{img}"
                    content.append({"type": "image_url", "image_url": {"url": url}})
                messages.append({"role": msg.role, "content": content})
            else:
                messages.append({"role": msg.role, "content": msg.content})

        messages.append({"role": "user", "content": request.prompt})
        return messages

    # -- cost ---------------------------------------------------------------

    def estimate_cost(self, text: str) -> float:
        """Approximate cost from output length (4 chars per token)."""
        tokens = len(text) / 4
        return (tokens / 1000) * COST_PER_1K_TOKENS.get(self.config.model, DEFAULT_COST_PER_1K)

    def cost_from_usage(self, usage: Any) -> float:
        if usage is None:
            return 0.0
        total = (getattr(usage, "prompt_tokens", 0) or 0) + (getattr(usage, "completion_tokens", 0) or 0)
        return (total / 1000) * COST_PER_1K_TOKENS.get(self.config.model, DEFAULT_COST_PER_1K)

    # -- errors -------------------------------------------------------------

    def _status_error(self, exc: openai.APIStatusError) -> ErrorEvent:
        body = exc.body if exc.body is not None else exc.message
        if not isinstance(body, str):
            body = json.dumps(body)
        return ErrorEvent(error=f"{self.config.name} API error ({exc.status_code}): {body}")

    def _transport_error(self, exc: Exception) -> ErrorEvent:
        return ErrorEvent(error=f"{self.config.name} error: {exc}")

    # -- query --------------------------------------------------------------

    async def query(self, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        if request.cancel.cancelled:
            yield aborted_error()
            return
        try:
            client = self._client()
        except ProviderError as exc:
            yield ErrorEvent(error=str(exc))
            return

        if self.uses_tools():
            events = self._query_with_tools(client, request)
        elif self.config.supports_streaming:
            events = self._stream_text(client, request)
        else:
            events = self._complete_text(client, request)
        async for event in events:
            yield event

    async def _query_with_tools(self, client: AsyncOpenAI, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        """Non-streaming rounds: call the model, run requested tools, repeat."""
        messages = self.build_messages(request)
        total_cost = 0.0

        for round_no in range(MAX_TOOL_ROUNDS):
            if request.cancel.cancelled:
                yield aborted_error()
                return
            try:
                completion = await until_cancelled(
                    client.chat.completions.create(
                        model=self.config.model,
                        messages=messages,
                        max_tokens=self.config.max_tokens,
                        temperature=self.config.temperature,
                        tools=self.executor.schemas(),
                        tool_choice="auto",
                    ),
                    request.cancel,
                )
            except QueryAborted:
                yield aborted_error()
                return
            except (openai.BadRequestError, openai.UnprocessableEntityError) as exc:
                if round_no == 0:
                    logger.info("%s rejected tool use (%s), answering without tools", self.key, exc.status_code)
                    async for event in self._stream_text(client, request):
                        yield event
                    return
                yield self._status_error(exc)
                return
            except openai.APIStatusError as exc:
                yield self._status_error(exc)
                return
            except (openai.APIError, httpx.HTTPError) as exc:
                yield self._transport_error(exc)
                return

            total_cost += self.cost_from_usage(completion.usage)
            if not completion.choices:
                yield ErrorEvent(error=f"{self.config.name}: no response from provider")
                return
            message = completion.choices[0].message

            if message.tool_calls:
                messages.append(message.model_dump(exclude_none=True))
                for call in message.tool_calls:
                    name = call.function.name
                    arguments = call.function.arguments or "{}"
                    yield ToolCallEvent(tool_name=name, arguments=arguments[:200])
                    try:
                        result = await until_cancelled(
                            self.executor.execute(name, arguments, request.working_dir), request.cancel
                        )
                    except QueryAborted:
                        yield aborted_error()
                        return
                    yield ToolResultEvent(tool_name=name, result=result.result[:200], is_error=result.is_error)
                    messages.append({"role": "tool", "tool_call_id": call.id, "content": result.result})
                continue

            text = message.content or ""
            if text:
                yield TextEvent(text=text, delta=text)
            yield DoneEvent(text=text, cost_usd=total_cost)
            return

        yield ErrorEvent(error=f"{self.config.name}: max tool call rounds reached")

    async def _stream_text(self, client: AsyncOpenAI, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        text = ""
        try:
            async with client.chat.completions.with_streaming_response.create(
                model=self.config.model,
                messages=self.build_messages(request),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                stream=True,
            ) as response:
                lines = response.iter_lines()
                while True:
                    try:
                        line = await until_cancelled(anext(lines, None), request.cancel)
                    except QueryAborted:
                        yield aborted_error()
                        return
                    if line is None:
                        break
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        yield DoneEvent(text=text, cost_usd=self.estimate_cost(text))
                        return
                    try:
                        chunk = json.loads(data)
                        choice = chunk["choices"][0]
                    except (ValueError, KeyError, IndexError, TypeError):
                        logger.debug("%s: skipping unparsable stream fragment %r", self.key, data[:100])
                        continue

                    delta = (choice.get("delta") or {}).get("content")
                    if delta:
                        text += delta
                        yield TextEvent(text=text, delta=delta)
                    if choice.get("finish_reason"):
                        yield DoneEvent(text=text, cost_usd=self.estimate_cost(text))
                        return
        except openai.APIStatusError as exc:
            yield self._status_error(exc)
            return
        except (openai.APIError, httpx.HTTPError) as exc:
            yield self._transport_error(exc)
            return

        if request.cancel.cancelled:
            yield aborted_error()
        elif text:
            yield DoneEvent(text=text, cost_usd=self.estimate_cost(text))
        else:
            yield ErrorEvent(error=f"{self.config.name}: stream ended without a response")

    async def _complete_text(self, client: AsyncOpenAI, request: QueryRequest) -> AsyncIterator[StreamEvent]:
        try:
            completion = await until_cancelled(
                client.chat.completions.create(
                    model=self.config.model,
                    messages=self.build_messages(request),
                    max_tokens=self.config.max_tokens,
                    temperature=self.config.temperature,
                ),
                request.cancel,
            )
        except QueryAborted:
            yield aborted_error()
            return
        except openai.APIStatusError as exc:
            yield self._status_error(exc)
            return
        except (openai.APIError, httpx.HTTPError) as exc:
            yield self._transport_error(exc)
            return
        text = (completion.choices[0].message.content or "") if completion.choices else ""
        if not text:
            yield ErrorEvent(error=f"{self.config.name}: empty response")
            return
        yield TextEvent(text=text, delta=text)
        yield DoneEvent(text=text, cost_usd=self.cost_from_usage(completion.usage) or self.estimate_cost(text))

    # -- availability -------------------------------------------------------

    async def is_available(self) -> bool:
        if self.is_loopback():
            try:
                await self._client().with_options(timeout=3.0).models.list()
            except (openai.APIError, httpx.HTTPError):
                return False
            return True
        return bool(self.config.api_key)

    def describe(self) -> Dict[str, str]:
        if self.is_loopback():
            status = "local endpoint"
        elif self.config.api_key:
            status = "configured"
        else:
            status = "no API key"
        name = self.config.name + (" [tools]" if self.uses_tools() else "")
        return {"name": name, "model": self.config.model, "status": status}
