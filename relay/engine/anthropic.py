"""Native Anthropic Messages API transport.

Direct httpx calls to /v1/messages with SSE streaming. Tool results are
sent as tool_result blocks inside user turns, images as base64 sources,
and persisted reasoning as signed thinking blocks.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from relay.config import Settings
from relay.engine.base import (
    ModelRequest,
    ModelResponse,
    StreamChunk,
    iter_sse_data,
    network_error,
    parse_tool_arguments,
    wire_error,
)
from relay.errors import ProviderWireError
from relay.events import AbortSignal
from relay.models import NativeEndpoint
from relay.utils import stringify

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
_TRANSIENT_ERROR_TYPES = frozenset({"overloaded_error", "api_error", "rate_limit_error"})

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


class AnthropicTransport:
    """Anthropic Messages API over a shared httpx client."""

    def __init__(self, endpoint: NativeEndpoint, client: httpx.AsyncClient) -> None:
        base = (endpoint.base_url or "").rstrip("/")
        self._url = f"{base}/messages" if base.endswith("/v1") else f"{base}/v1/messages"
        headers = {"anthropic-version": _API_VERSION, "content-type": "application/json"}
        headers.update(endpoint.headers)
        if endpoint.api_key and "authorization" not in {k.lower() for k in headers}:
            headers["x-api-key"] = endpoint.api_key
        self._headers = headers
        self._client = client

    def build_payload(self, request: ModelRequest, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": to_anthropic_messages(request.messages),
        }
        if request.instructions:
            payload["system"] = [
                {
                    "type": "text",
                    "text": request.instructions,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if request.tools:
            payload["tools"] = [
                {"name": t["name"], "description": t.get("description", ""), "input_schema": t["parameters"]}
                for t in request.tools
            ]
        thinking = ((request.provider_options or {}).get("anthropic") or {}).get("thinking")
        if thinking:
            payload["thinking"] = thinking
            budget = int(thinking.get("budget_tokens", 0))
            # max_tokens must exceed the thinking budget
            if payload["max_tokens"] <= budget:
                payload["max_tokens"] = budget + request.max_tokens
        if stream:
            payload["stream"] = True
        return payload

    async def stream(self, request: ModelRequest, signal: AbortSignal) -> AsyncIterator[StreamChunk]:
        payload = self.build_payload(request, stream=True)
        blocks: dict[int, dict[str, Any]] = {}
        usage: dict[str, int] = {}
        stop_reason = ""

        try:
            async with self._client.stream("POST", self._url, json=payload, headers=self._headers) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise wire_error(response.status_code, body, "Anthropic")

                async for data in iter_sse_data(response):
                    if signal.aborted:
                        raise signal.error()
                    event_type = data.get("type")

                    if event_type == "error":
                        error = data.get("error", {})
                        error_type = error.get("type", "unknown")
                        raise ProviderWireError(
                            f"Anthropic stream error: {error_type} - {error.get('message', '')}",
                            error_type=error_type,
                            transient=error_type in _TRANSIENT_ERROR_TYPES,
                        )

                    if event_type == "message_start":
                        usage.update(_usage(data.get("message", {}).get("usage")))

                    elif event_type == "content_block_start":
                        block = data.get("content_block", {})
                        blocks[data.get("index", 0)] = {
                            "type": block.get("type"),
                            "id": block.get("id", ""),
                            "name": block.get("name", ""),
                            "input_parts": [],
                        }

                    elif event_type == "content_block_delta":
                        delta = data.get("delta", {})
                        kind = delta.get("type")
                        if kind == "text_delta":
                            yield StreamChunk(type="text-delta", text=delta.get("text", ""))
                        elif kind == "thinking_delta":
                            yield StreamChunk(type="reasoning-delta", text=delta.get("thinking", ""))
                        elif kind == "signature_delta":
                            yield StreamChunk(type="reasoning-delta", signature=delta.get("signature"))
                        elif kind == "input_json_delta":
                            acc = blocks.get(data.get("index", 0))
                            if acc is not None:
                                acc["input_parts"].append(delta.get("partial_json", ""))

                    elif event_type == "content_block_stop":
                        acc = blocks.pop(data.get("index", 0), None)
                        if acc and acc["type"] == "tool_use":
                            yield StreamChunk(
                                type="tool-call",
                                tool_call_id=acc["id"],
                                tool_name=acc["name"],
                                args=parse_tool_arguments("".join(acc["input_parts"]), acc["name"]),
                            )

                    elif event_type == "message_delta":
                        stop_reason = data.get("delta", {}).get("stop_reason") or stop_reason
                        usage.update(_usage(data.get("usage")))

                    elif event_type == "message_stop":
                        break
        except httpx.HTTPError as e:
            raise network_error(e, "Anthropic") from e

        yield StreamChunk(
            type="finish",
            finish_reason=STOP_REASONS.get(stop_reason, stop_reason or "stop"),
            usage=_with_total(usage),
        )

    async def complete(self, request: ModelRequest, signal: AbortSignal) -> ModelResponse:
        payload = self.build_payload(request, stream=False)
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise network_error(e, "Anthropic") from e
        if response.status_code != 200:
            raise wire_error(response.status_code, response.content, "Anthropic")

        data = response.json()
        result = ModelResponse(
            finish_reason=STOP_REASONS.get(data.get("stop_reason") or "", "stop"),
            usage=_with_total(_usage(data.get("usage"))),
        )
        texts = []
        for block in data.get("content", []):
            kind = block.get("type")
            if kind == "text":
                texts.append(block.get("text", ""))
            elif kind == "thinking":
                result.reasoning.append(
                    {"type": "reasoning", "text": block.get("thinking", ""), "signature": block.get("signature")}
                )
            elif kind == "tool_use":
                result.tool_calls.append({
                    "type": "tool-call",
                    "tool_call_id": block.get("id", ""),
                    "tool_name": block.get("name", ""),
                    "args": block.get("input") or {},
                })
        result.text = "".join(texts)
        return result


def to_anthropic_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Engine messages -> Anthropic messages.

    Tool messages become user turns carrying tool_result blocks. Adjacent
    same-role turns are merged since the API requires alternation.
    """
    result: list[dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if role == "user":
            blocks = _user_blocks(content)
        elif role == "assistant":
            blocks = _assistant_blocks(content)
        elif role == "tool":
            role = "user"
            blocks = [
                {
                    "type": "tool_result",
                    "tool_use_id": part.get("tool_call_id", ""),
                    "content": stringify(part.get("result")),
                    "is_error": bool(part.get("is_error", False)),
                }
                for part in content or []
                if isinstance(part, dict) and part.get("type") == "tool-result"
            ]
        else:
            continue
        if not blocks:
            continue
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(blocks)
        else:
            result.append({"role": role, "content": blocks})
    return result


def _user_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    blocks = []
    for part in content or []:
        kind = part.get("type")
        if kind == "text" and part.get("text"):
            blocks.append({"type": "text", "text": part["text"]})
        elif kind == "image":
            blocks.append(_image_block(part.get("image", b""), part.get("mime_type") or "image/jpeg"))
    return blocks


def _assistant_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    blocks = []
    for part in content or []:
        kind = part.get("type")
        if kind == "text" and part.get("text"):
            blocks.append({"type": "text", "text": part["text"]})
        elif kind == "reasoning":
            # Unsigned reasoning is rejected by the API
            if part.get("signature"):
                blocks.append({"type": "thinking", "thinking": part.get("text", ""), "signature": part["signature"]})
        elif kind == "tool-call":
            blocks.append({
                "type": "tool_use",
                "id": part.get("tool_call_id", ""),
                "name": part.get("tool_name", ""),
                "input": part.get("args") or {},
            })
    return blocks


def _image_block(data: bytes | str, mime_type: str) -> dict[str, Any]:
    if isinstance(data, bytes):
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": mime_type, "data": base64.b64encode(data).decode("ascii")},
        }
    if data.startswith(("http://", "https://")):
        return {"type": "image", "source": {"type": "url", "url": data}}
    if data.startswith("data:") and ";base64," in data:
        header, encoded = data.split(",", 1)
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": header[5:].split(";", 1)[0] or mime_type, "data": encoded},
        }
    return {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": data}}


def _usage(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    usage = {}
    if isinstance(raw.get("input_tokens"), int):
        usage["input_tokens"] = raw["input_tokens"]
    if isinstance(raw.get("output_tokens"), int):
        usage["output_tokens"] = raw["output_tokens"]
    return usage


def _with_total(usage: dict[str, int]) -> dict[str, int] | None:
    if not usage:
        return None
    usage = dict(usage)
    usage["total_tokens"] = usage.get("input_tokens", 0) + usage.get("output_tokens", 0)
    return usage


def create_transport(endpoint: NativeEndpoint, client: httpx.AsyncClient, settings: Settings) -> AnthropicTransport:
    logger.debug("Anthropic transport -> %s (model %s)", endpoint.base_url, settings.model)
    return AnthropicTransport(endpoint, client)
