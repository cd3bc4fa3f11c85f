"""Internal Message <-> engine message translation.

Engine messages are plain dicts, the provider-neutral shape every
transport accepts:

    {"role": "user",      "content": str | [text | image parts]}
    {"role": "assistant", "content": str | [text | reasoning | tool-call parts]}
    {"role": "tool",      "content": [tool-result parts]}

Structural divergence: the engine message list has no system role.
System messages are excluded by to_engine_messages() and must be passed
to the engine as instructions; see extract_instructions().

Intentional fidelity losses (documented, not bugs):
  - system messages are hoisted out of the message list
  - thinking parts are dropped unless the target has a persisted
    reasoning channel (reasoning_channel=True)
  - content parts that are invalid for a role (e.g. a tool call in a
    user turn) are rendered as JSON text
"""

from __future__ import annotations

import json
import logging
from typing import Any

from relay.models import (
    ContentPart,
    ImagePart,
    Message,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolResultPart,
    message_to_dict,
)
from relay.utils import generate_id, stringify

logger = logging.getLogger(__name__)


def extract_instructions(history: list[Message]) -> str:
    """Concatenate system message text, in order, for the engine's instructions field."""
    return "\n\n".join(m.text() for m in history if m.role == "system" and m.text())


def to_engine_messages(history: list[Message], *, reasoning_channel: bool = False) -> list[dict[str, Any]]:
    """Convert internal messages to engine messages. System messages are skipped."""
    result: list[dict[str, Any]] = []
    # Ids generated for id-less calls of the latest assistant turn, as (name, id)
    unanswered: list[tuple[str, str]] = []
    for msg in history:
        if msg.role == "user":
            result.append(_user_to_engine(msg))
        elif msg.role == "assistant":
            unanswered = []
            result.append(_assistant_to_engine(msg, reasoning_channel, unanswered))
        elif msg.role == "tool":
            result.append(_tool_to_engine(msg, unanswered))
        # system: hoisted to instructions by the caller
    return result


def from_engine_message(msg: dict[str, Any]) -> Message | None:
    """Convert an engine message back to the internal form.

    Returns None for messages that have no internal representation
    (system messages, unknown roles).
    """
    role = msg.get("role")
    content = msg.get("content")
    if role not in ("user", "assistant", "tool"):
        return None
    if isinstance(content, str):
        return Message(role, content)
    if not isinstance(content, list):
        return Message(role, "" if content is None else str(content))
    parts = [p for p in (_part_from_engine(block) for block in content) if p is not None]
    return Message(role, parts)


def from_engine_messages(messages: list[dict[str, Any]]) -> list[Message]:
    """Batch form of from_engine_message, dropping unrepresentable messages."""
    converted = []
    for msg in messages:
        m = from_engine_message(msg)
        if m is not None:
            converted.append(m)
    return converted


# --- Internal helpers ---


def _user_to_engine(msg: Message) -> dict[str, Any]:
    if isinstance(msg.content, str):
        return {"role": "user", "content": msg.content}
    parts: list[dict[str, Any]] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            parts.append({"type": "image", "image": part.data, "mime_type": part.mime_type or "image/jpeg"})
        else:
            parts.append({"type": "text", "text": _render_foreign_part(part)})
    return {"role": "user", "content": parts}


def _assistant_to_engine(
    msg: Message,
    reasoning_channel: bool,
    unanswered: list[tuple[str, str]],
) -> dict[str, Any]:
    if isinstance(msg.content, str):
        return {"role": "assistant", "content": msg.content}
    parts: list[dict[str, Any]] = []
    for part in msg.content:
        if isinstance(part, TextPart):
            parts.append({"type": "text", "text": part.text})
        elif isinstance(part, ToolCallPart):
            call_id = part.id
            if not call_id:
                call_id = generate_id()
                unanswered.append((part.name, call_id))
            parts.append({
                "type": "tool-call",
                "tool_call_id": call_id,
                "tool_name": part.name or "unknown",
                "args": part.arguments if part.arguments is not None else {},
            })
        elif isinstance(part, ThinkingPart):
            if reasoning_channel:
                parts.append({"type": "reasoning", "text": part.text, "signature": part.signature})
        else:
            parts.append({"type": "text", "text": _render_foreign_part(part)})
    if not parts:
        return {"role": "assistant", "content": ""}
    return {"role": "assistant", "content": parts}


def _tool_to_engine(msg: Message, unanswered: list[tuple[str, str]]) -> dict[str, Any]:
    if isinstance(msg.content, str):
        return {
            "role": "tool",
            "content": [{
                "type": "tool-result",
                "tool_call_id": generate_id(),
                "tool_name": "unknown",
                "result": msg.content,
                "is_error": False,
            }],
        }
    parts: list[dict[str, Any]] = []
    for part in msg.content:
        if isinstance(part, ToolResultPart):
            block = {
                "type": "tool-result",
                "tool_call_id": part.id or _claim_generated_id(part.name, unanswered),
                "tool_name": part.name or "unknown",
                "result": part.result,
                "is_error": part.is_error,
            }
            if part.synthetic:
                block["synthetic"] = True
            parts.append(block)
        elif isinstance(part, TextPart):
            parts.append({
                "type": "tool-result",
                "tool_call_id": generate_id(),
                "tool_name": "unknown",
                "result": part.text,
                "is_error": False,
            })
        else:
            logger.debug("Dropping %s part from tool message", type(part).__name__)
    return {"role": "tool", "content": parts}


def _claim_generated_id(name: str, unanswered: list[tuple[str, str]]) -> str:
    """Reuse the id generated for the id-less call this result answers."""
    for i, (call_name, call_id) in enumerate(unanswered):
        if call_name == name:
            return unanswered.pop(i)[1]
    if unanswered:
        return unanswered.pop(0)[1]
    return generate_id()


def _part_from_engine(block: Any) -> ContentPart | None:
    if isinstance(block, str):
        return TextPart(block)
    if not isinstance(block, dict):
        return None
    kind = block.get("type")
    if kind == "text":
        return TextPart(str(block.get("text", "")))
    if kind == "image":
        return ImagePart(block.get("image", b""), block.get("mime_type") or "image/jpeg")
    if kind == "tool-call":
        return ToolCallPart(
            block.get("tool_call_id") or generate_id(),
            block.get("tool_name") or "unknown",
            block.get("args") if isinstance(block.get("args"), dict) else {},
        )
    if kind == "tool-result":
        return ToolResultPart(
            block.get("tool_call_id") or generate_id(),
            block.get("tool_name") or "unknown",
            block.get("result", ""),
            bool(block.get("is_error", False)),
            bool(block.get("synthetic", False)),
        )
    if kind == "reasoning":
        return ThinkingPart(str(block.get("text", "")), block.get("signature"))
    if "text" in block:
        return TextPart(stringify(block["text"]))
    return None


def _render_foreign_part(part: ContentPart) -> str:
    logger.debug("Rendering %s part as text", type(part).__name__)
    record = message_to_dict(Message("user", [part]))["content"][0]
    return json.dumps(record, ensure_ascii=False, default=str)
