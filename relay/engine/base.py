"""Execution engine: the multi-step model/tool loop over a wire transport.

The engine speaks engine messages (see relay.messages) and delegates the
wire format to a Transport. One call to Engine.stream() drives
"model call -> tool execution -> model call" until the model stops
calling tools or the explicit step ceiling is reached.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import httpx

from relay.errors import ProviderWireError
from relay.events import AbortSignal
from relay.tools import EngineTool
from relay.utils import generate_id

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StreamChunk:
    """A single event from the engine's stream."""

    type: str  # text-delta, reasoning-delta, tool-call, tool-result, step-finish, finish
    text: str = ""
    signature: str | None = None
    tool_call_id: str = ""
    tool_name: str = ""
    args: Any = None
    result: Any = None
    is_error: bool = False
    finish_reason: str = ""
    usage: dict[str, int] | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)  # step-finish only


@dataclass
class ModelRequest:
    model: str
    instructions: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 4096
    provider_options: dict[str, Any] | None = None


@dataclass
class ModelResponse:
    text: str = ""
    reasoning: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: dict[str, int] | None = None


class Transport(Protocol):
    """Wire protocol adapter. Raises ProviderWireError for remote failures."""

    def stream(self, request: ModelRequest, signal: AbortSignal) -> AsyncIterator[StreamChunk]: ...

    async def complete(self, request: ModelRequest, signal: AbortSignal) -> ModelResponse: ...


class Engine:
    """Multi-step tool loop over a transport."""

    def __init__(
        self,
        transport: Transport,
        *,
        model: str,
        max_tokens: int = 4096,
        provider_options: dict[str, Any] | None = None,
    ) -> None:
        self.transport = transport
        self.model = model
        self.max_tokens = max_tokens
        self.provider_options = provider_options

    async def stream(
        self,
        instructions: str,
        messages: list[dict[str, Any]],
        tools: dict[str, EngineTool],
        *,
        max_steps: int,
        signal: AbortSignal,
    ) -> AsyncIterator[StreamChunk]:
        """Run the tool loop, yielding chunks in generation order.

        For each tool invocation the tool-call chunk precedes its
        tool-result chunk. Ends with exactly one finish chunk unless an
        error is raised.
        """
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        history = list(messages)
        tool_defs = [t.definition() for t in tools.values()]

        for step in range(max_steps):
            signal.raise_if_aborted()
            text_parts: list[str] = []
            reasoning: list[dict[str, Any]] = []
            calls: list[StreamChunk] = []
            finish_reason = ""
            usage: dict[str, int] | None = None

            async for chunk in self.transport.stream(self._request(instructions, history, tool_defs), signal):
                signal.raise_if_aborted()
                if chunk.type == "text-delta":
                    text_parts.append(chunk.text)
                    yield chunk
                elif chunk.type == "reasoning-delta":
                    _accumulate_reasoning(reasoning, chunk)
                elif chunk.type == "tool-call":
                    if not chunk.tool_call_id:
                        chunk.tool_call_id = generate_id()
                    calls.append(chunk)
                    yield chunk
                elif chunk.type == "finish":
                    finish_reason = chunk.finish_reason
                    usage = chunk.usage
            # Transports may stop quietly on abort
            signal.raise_if_aborted()

            assistant = _assistant_message("".join(text_parts), reasoning, calls)
            history.append(assistant)

            if not calls:
                yield StreamChunk(type="step-finish", usage=usage, messages=[assistant])
                yield StreamChunk(type="finish", finish_reason=finish_reason or "stop", usage=usage)
                return

            # All results of one step go into a single tool message
            results: list[dict[str, Any]] = []
            for call in calls:
                signal.raise_if_aborted()
                tool = tools.get(call.tool_name)
                if tool is None:
                    result_text, is_error = f"Error: unknown tool {call.tool_name!r}", True
                else:
                    result_text, is_error = await tool.execute(call.args)
                results.append({
                    "type": "tool-result",
                    "tool_call_id": call.tool_call_id,
                    "tool_name": call.tool_name,
                    "result": result_text,
                    "is_error": is_error,
                })
                yield StreamChunk(
                    type="tool-result",
                    tool_call_id=call.tool_call_id,
                    tool_name=call.tool_name,
                    result=result_text,
                    is_error=is_error,
                )
            tool_message = {"role": "tool", "content": results}
            history.append(tool_message)
            yield StreamChunk(type="step-finish", usage=usage, messages=[assistant, tool_message])

        # Step ceiling reached -- final call without tools for a text answer
        logger.warning("Tool loop reached max_steps=%d, requesting final answer without tools", max_steps)
        signal.raise_if_aborted()
        text_parts = []
        usage = None
        async for chunk in self.transport.stream(self._request(instructions, history, []), signal):
            signal.raise_if_aborted()
            if chunk.type == "text-delta":
                text_parts.append(chunk.text)
                yield chunk
            elif chunk.type == "finish":
                usage = chunk.usage
        signal.raise_if_aborted()
        assistant = _assistant_message("".join(text_parts), [], [])
        yield StreamChunk(type="step-finish", usage=usage, messages=[assistant])
        yield StreamChunk(type="finish", finish_reason="max_steps", usage=usage)

    async def generate(
        self,
        instructions: str,
        messages: list[dict[str, Any]],
        *,
        signal: AbortSignal | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> ModelResponse:
        """Single non-streaming call without tools."""
        signal = signal or AbortSignal()
        signal.raise_if_aborted()
        request = self._request(instructions, list(messages), [])
        if max_tokens is not None:
            request.max_tokens = max_tokens
        if model:
            request.model = model
        return await run_abortable(self.transport.complete(request, signal), signal)

    def _request(
        self,
        instructions: str,
        messages: list[dict[str, Any]],
        tool_defs: list[dict[str, Any]],
    ) -> ModelRequest:
        return ModelRequest(
            model=self.model,
            instructions=instructions,
            messages=list(messages),
            tools=tool_defs,
            max_tokens=self.max_tokens,
            provider_options=self.provider_options,
        )


async def run_abortable(awaitable: Awaitable[T], signal: AbortSignal) -> T:
    """Await a coroutine, cancelling it as soon as the signal fires."""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise signal.error()
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()


# ---------------------------------------------------------------------------
# Shared wire helpers
# ---------------------------------------------------------------------------


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded JSON payloads of SSE data: lines. Stops at [DONE]."""
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        payload = line[5:].strip()
        if not payload:
            continue
        if payload == "[DONE]":
            return
        try:
            yield json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Skipping undecodable SSE payload: %s", payload[:200])


def wire_error(status_code: int, body: bytes | str, provider: str) -> ProviderWireError:
    """Build a ProviderWireError from an HTTP error response body."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    error_type = "http_error"
    message = text[:500]
    try:
        data = json.loads(text)
        error = data.get("error", data) if isinstance(data, dict) else {}
        if isinstance(error, dict):
            error_type = error.get("type") or error.get("code") or error_type
            message = error.get("message") or message
        elif isinstance(error, str):
            message = error
    except (json.JSONDecodeError, AttributeError):
        pass
    return ProviderWireError(
        f"{provider} API error ({status_code}): {error_type} - {message}",
        status_code=status_code,
        error_type=str(error_type),
        transient=ProviderWireError.is_transient_status(status_code),
    )


def network_error(exc: httpx.HTTPError, provider: str) -> ProviderWireError:
    if isinstance(exc, httpx.TimeoutException):
        return ProviderWireError(f"{provider} API request timed out: {exc}", error_type="timeout", transient=True)
    return ProviderWireError(f"{provider} HTTP error: {exc}", error_type="network", transient=True)


def parse_tool_arguments(raw: str, tool_name: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool %s: arguments are not valid JSON, using {}", tool_name)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _accumulate_reasoning(reasoning: list[dict[str, Any]], chunk: StreamChunk) -> None:
    if not reasoning or reasoning[-1].get("signature"):
        reasoning.append({"type": "reasoning", "text": "", "signature": None})
    reasoning[-1]["text"] += chunk.text
    if chunk.signature:
        reasoning[-1]["signature"] = chunk.signature


def _assistant_message(
    text: str,
    reasoning: list[dict[str, Any]],
    calls: list[StreamChunk],
) -> dict[str, Any]:
    if not reasoning and not calls:
        return {"role": "assistant", "content": text}
    parts: list[dict[str, Any]] = list(reasoning)
    if text:
        parts.append({"type": "text", "text": text})
    for call in calls:
        parts.append({
            "type": "tool-call",
            "tool_call_id": call.tool_call_id,
            "tool_name": call.tool_name,
            "args": call.args if call.args is not None else {},
        })
    return {"role": "assistant", "content": parts}
