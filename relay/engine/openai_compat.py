"""Generic OpenAI chat-completions compatible transport.

Serves every API family whose wire format is a chat-completions superset
or subset: OpenAI itself, Google's compatibility endpoint, Ollama,
GitHub Copilot and self-hosted gateways.
"""

from __future__ import annotations

import base64
import json
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
from relay.models import GenericEndpoint
from relay.utils import stringify

logger = logging.getLogger(__name__)

_TRANSIENT_ERROR_TYPES = frozenset({"server_error", "rate_limit_exceeded", "overloaded_error", "timeout"})

FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "length": "length",
    "content_filter": "content_filter",
}


class OpenAICompatTransport:
    """POST {url}/chat/completions with bearer auth."""

    def __init__(self, endpoint: GenericEndpoint, client: httpx.AsyncClient) -> None:
        self._url = f"{endpoint.url.rstrip('/')}/chat/completions"
        headers = {"content-type": "application/json"}
        headers.update(endpoint.headers)
        if endpoint.api_key and "authorization" not in {k.lower() for k in headers}:
            headers["authorization"] = f"Bearer {endpoint.api_key}"
        self._headers = headers
        self._client = client
        self.endpoint_id = endpoint.id

    def build_payload(self, request: ModelRequest, *, stream: bool) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.instructions:
            messages.append({"role": "system", "content": request.instructions})
        messages.extend(to_openai_messages(request.messages))

        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
        }
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t.get("description", ""),
                        "parameters": t["parameters"],
                    },
                }
                for t in request.tools
            ]
        payload.update((request.provider_options or {}).get("openai") or {})
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def stream(self, request: ModelRequest, signal: AbortSignal) -> AsyncIterator[StreamChunk]:
        payload = self.build_payload(request, stream=True)
        calls: dict[int, dict[str, Any]] = {}
        finish_reason = ""
        usage: dict[str, int] | None = None

        try:
            async with self._client.stream("POST", self._url, json=payload, headers=self._headers) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise wire_error(response.status_code, body, self.endpoint_id)

                async for data in iter_sse_data(response):
                    if signal.aborted:
                        raise signal.error()
                    if "error" in data:
                        raise _stream_error(data["error"], self.endpoint_id)
                    if data.get("usage"):
                        usage = _usage(data["usage"])

                    for choice in data.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamChunk(type="text-delta", text=delta["content"])
                        if delta.get("reasoning_content"):
                            yield StreamChunk(type="reasoning-delta", text=delta["reasoning_content"])
                        for tc in delta.get("tool_calls") or []:
                            acc = calls.setdefault(tc.get("index", 0), {"id": "", "name": "", "arguments": []})
                            if tc.get("id"):
                                acc["id"] = tc["id"]
                            function = tc.get("function") or {}
                            if function.get("name"):
                                acc["name"] = function["name"]
                            if function.get("arguments"):
                                acc["arguments"].append(function["arguments"])
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise network_error(e, self.endpoint_id) from e

        # Arguments arrive in fragments; calls are complete only at end of stream
        for index in sorted(calls):
            acc = calls[index]
            yield StreamChunk(
                type="tool-call",
                tool_call_id=acc["id"],
                tool_name=acc["name"],
                args=parse_tool_arguments("".join(acc["arguments"]), acc["name"]),
            )
        yield StreamChunk(
            type="finish",
            finish_reason=FINISH_REASONS.get(finish_reason, finish_reason or "stop"),
            usage=usage,
        )

    async def complete(self, request: ModelRequest, signal: AbortSignal) -> ModelResponse:
        payload = self.build_payload(request, stream=False)
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise network_error(e, self.endpoint_id) from e
        if response.status_code != 200:
            raise wire_error(response.status_code, response.content, self.endpoint_id)

        data = response.json()
        if "error" in data:
            raise _stream_error(data["error"], self.endpoint_id)
        choices = data.get("choices") or [{}]
        message = choices[0].get("message") or {}
        result = ModelResponse(
            text=message.get("content") or "",
            finish_reason=FINISH_REASONS.get(choices[0].get("finish_reason") or "", "stop"),
            usage=_usage(data.get("usage")),
        )
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            result.tool_calls.append({
                "type": "tool-call",
                "tool_call_id": tc.get("id", ""),
                "tool_name": function.get("name", ""),
                "args": parse_tool_arguments(function.get("arguments") or "", function.get("name", "")),
            })
        return result


def to_openai_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Engine messages -> chat-completions messages.

    Reasoning parts are dropped; each tool result becomes its own tool
    message.
    """
    result: list[dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if role == "user":
            result.append({"role": "user", "content": _user_content(content)})
        elif role == "assistant":
            result.append(_assistant_message(content))
        elif role == "tool":
            for part in content or []:
                if isinstance(part, dict) and part.get("type") == "tool-result":
                    result.append({
                        "role": "tool",
                        "tool_call_id": part.get("tool_call_id", ""),
                        "content": stringify(part.get("result")),
                    })
    return result


def _user_content(content: Any) -> str | list[dict[str, Any]]:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        kind = part.get("type")
        if kind == "text":
            parts.append({"type": "text", "text": part.get("text", "")})
        elif kind == "image":
            parts.append({"type": "image_url", "image_url": {"url": _image_url(part.get("image", b""), part.get("mime_type"))}})
    return parts


def _assistant_message(content: Any) -> dict[str, Any]:
    if isinstance(content, str):
        return {"role": "assistant", "content": content}
    texts = []
    tool_calls = []
    for part in content or []:
        kind = part.get("type")
        if kind == "text":
            texts.append(part.get("text", ""))
        elif kind == "tool-call":
            tool_calls.append({
                "id": part.get("tool_call_id", ""),
                "type": "function",
                "function": {
                    "name": part.get("tool_name", ""),
                    "arguments": json.dumps(part.get("args") or {}, ensure_ascii=False),
                },
            })
    message: dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
    if tool_calls:
        message["tool_calls"] = tool_calls
    elif message["content"] is None:
        message["content"] = ""
    return message


def _image_url(data: bytes | str, mime_type: str | None) -> str:
    mime_type = mime_type or "image/jpeg"
    if isinstance(data, bytes):
        return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
    if data.startswith(("http://", "https://", "data:")):
        return data
    return f"data:{mime_type};base64,{data}"


def _stream_error(error: Any, provider: str) -> ProviderWireError:
    if not isinstance(error, dict):
        return ProviderWireError(f"{provider} stream error: {error}", error_type="unknown")
    error_type = str(error.get("type") or error.get("code") or "unknown")
    return ProviderWireError(
        f"{provider} stream error: {error_type} - {error.get('message', '')}",
        error_type=error_type,
        transient=error_type in _TRANSIENT_ERROR_TYPES,
    )


def _usage(raw: Any) -> dict[str, int] | None:
    if not isinstance(raw, dict):
        return None
    return {
        "input_tokens": int(raw.get("prompt_tokens") or 0),
        "output_tokens": int(raw.get("completion_tokens") or 0),
        "total_tokens": int(raw.get("total_tokens") or 0),
    }


def create_transport(endpoint: GenericEndpoint, client: httpx.AsyncClient, settings: Settings) -> OpenAICompatTransport:
    logger.debug("Generic transport -> %s (model %s)", endpoint.url, settings.model)
    return OpenAICompatTransport(endpoint, client)
