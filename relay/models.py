"""Shared data models for the gateway adapter layer.

Kept free of behaviour so that the translator, sanitizer, runner and
compaction modules can all import them without cycles.
"""

from __future__ import annotations

import base64
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal, Union

Role = Literal["user", "assistant", "tool", "system"]


# ---------------------------------------------------------------------------
# Content parts
# ---------------------------------------------------------------------------


@dataclass
class TextPart:
    text: str


@dataclass
class ImagePart:
    """Image content. data is raw bytes, or a str reference (URL / data URI)."""

    data: bytes | str
    mime_type: str = "image/jpeg"


@dataclass
class ToolCallPart:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResultPart:
    id: str
    name: str
    result: Any = ""
    is_error: bool = False
    synthetic: bool = False  # inserted by transcript repair, not produced by a tool


@dataclass
class ThinkingPart:
    """Persisted reasoning from extended-thinking models. Internal only."""

    text: str
    signature: str | None = None


ContentPart = Union[TextPart, ImagePart, ToolCallPart, ToolResultPart, ThinkingPart]


@dataclass
class Message:
    """A single message in a transcript."""

    role: Role
    content: str | list[ContentPart]

    def parts(self) -> list[ContentPart]:
        """Content as a list of parts (string content becomes one TextPart)."""
        if isinstance(self.content, str):
            return [TextPart(self.content)] if self.content else []
        return list(self.content)

    def text(self) -> str:
        """Concatenated text parts."""
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

ToolExecutor = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


@dataclass
class ToolDefinition:
    """A tool as the application declares it. parameters is an abstract schema dict."""

    name: str
    description: str = ""
    parameters: dict[str, Any] | None = None
    executor: ToolExecutor | None = None


# ---------------------------------------------------------------------------
# Provider endpoints
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenericEndpoint:
    """OpenAI-compatible chat-completions endpoint."""

    id: str  # "<provider>/<model_id>"
    url: str | None
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NativeEndpoint:
    """Handle for a provider-specific transport, keyed by (provider, model_api)."""

    provider: str
    model_api: str
    transport: str
    model_id: str
    base_url: str | None = None
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


ProviderEndpoint = Union[GenericEndpoint, NativeEndpoint]


@dataclass(frozen=True)
class Credentials:
    api_key: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transcript policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TranscriptPolicy:
    """Which sanitizer stages run for a (provider, model_api). Never mutated."""

    provider_family: str = "generic"
    drop_thinking_blocks: bool = False
    sanitize_tool_call_ids: bool = False
    tool_call_id_mode: Literal["strict", "strict9"] | None = None
    validate_turn_ordering: frozenset[str] = frozenset()
    turn_ordering_mode: Literal["merge", "reject"] = "merge"
    repair_orphan_pairs: bool = True
    allow_synthetic_tool_results: bool = False


# ---------------------------------------------------------------------------
# Run state and results
# ---------------------------------------------------------------------------


class RunPhase(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHED = "finished"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class RunState:
    """Mutable per-run state. Owned by exactly one RunController."""

    signal: Any  # relay.events.AbortSignal
    phase: RunPhase = RunPhase.IDLE
    streaming: bool = False
    pending_injections: deque[str] = field(default_factory=deque)
    aborted: bool = False
    timed_out: bool = False


@dataclass
class RunResult:
    """Outcome of one run through the execution engine."""

    text: str = ""
    aborted: bool = False
    timed_out: bool = False
    error: BaseException | None = None
    tool_calls: list[tuple[str, Any]] = field(default_factory=list)
    tool_results: list[tuple[str, Any]] = field(default_factory=list)
    usage: dict[str, int] | None = None
    messages: list[Message] = field(default_factory=list)  # new messages to persist
    pending_messages: list[str] = field(default_factory=list)


@dataclass
class CompactionResult:
    summary_text: str
    first_kept_index: int
    compacted_messages: list[Message]


# ---------------------------------------------------------------------------
# Persisted record format
# ---------------------------------------------------------------------------


def _part_to_dict(part: ContentPart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        if isinstance(part.data, bytes):
            return {
                "type": "image",
                "data": base64.b64encode(part.data).decode("ascii"),
                "encoding": "base64",
                "mimeType": part.mime_type,
            }
        return {"type": "image", "data": part.data, "encoding": "ref", "mimeType": part.mime_type}
    if isinstance(part, ToolCallPart):
        return {"type": "toolCall", "id": part.id, "name": part.name, "arguments": part.arguments}
    if isinstance(part, ToolResultPart):
        record = {
            "type": "toolResult",
            "id": part.id,
            "name": part.name,
            "result": part.result,
            "isError": part.is_error,
        }
        if part.synthetic:
            record["synthetic"] = True
        return record
    if isinstance(part, ThinkingPart):
        return {"type": "thinking", "text": part.text, "signature": part.signature}
    raise TypeError(f"Unknown content part: {type(part).__name__}")


def _part_from_dict(data: dict[str, Any]) -> ContentPart:
    kind = data.get("type")
    if kind == "text":
        return TextPart(data.get("text", ""))
    if kind == "image":
        raw = data.get("data", "")
        payload: bytes | str = base64.b64decode(raw) if data.get("encoding") == "base64" else raw
        return ImagePart(payload, data.get("mimeType") or "image/jpeg")
    if kind == "toolCall":
        return ToolCallPart(data["id"], data["name"], data.get("arguments") or {})
    if kind == "toolResult":
        return ToolResultPart(
            data["id"],
            data.get("name", ""),
            data.get("result", ""),
            bool(data.get("isError", False)),
            bool(data.get("synthetic", False)),
        )
    if kind == "thinking":
        return ThinkingPart(data.get("text", ""), data.get("signature"))
    raise ValueError(f"Unknown content part type: {kind!r}")


def message_to_dict(message: Message) -> dict[str, Any]:
    """JSON-safe record for one message."""
    if isinstance(message.content, str):
        content: Any = message.content
    else:
        content = [_part_to_dict(p) for p in message.content]
    return {"role": message.role, "content": content}


def message_from_dict(data: dict[str, Any]) -> Message:
    role = data.get("role")
    if role not in ("user", "assistant", "tool", "system"):
        raise ValueError(f"Unknown message role: {role!r}")
    content = data.get("content", "")
    if isinstance(content, list):
        return Message(role, [_part_from_dict(p) for p in content])
    return Message(role, str(content))
