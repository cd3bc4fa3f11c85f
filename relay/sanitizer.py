"""Transcript sanitizer: provider-safe history before every engine call.

A fixed, table-driven pipeline of pure stages keyed by a TranscriptPolicy.
Each stage takes (messages, ctx) and returns a new list; the input is
never mutated. Stages run in PIPELINE order and each one relies on the
invariant established by the ones before it:

   1. remove_unknown_tool_results   stale results for unregistered tools
   2. repair_turn_ordering          trailing dangling user turns (crash recovery)
   3. enforce_role_alternation      merge/reject consecutive same-role turns
   4. strip_thinking_blocks         providers that reject echoed reasoning
   5. normalize_tool_call_ids       provider id format, pair-consistent
   6. limit_history_turns           keep the most recent N user turns
   7. repair_tool_pairing           orphan calls/results, incl. those split by 6
   8. prune_processed_images        answered images -> placeholder marker
   9. enforce_tool_result_budget    per-result ceiling + total context budget

Sanitizing an already sanitized transcript is a no-op.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from relay.errors import TranscriptInvariantViolation
from relay.models import (
    ImagePart,
    Message,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolResultPart,
    TranscriptPolicy,
)
from relay.utils import stringify, truncate_utf8, utf8_len

logger = logging.getLogger(__name__)

# Provider families that reject consecutive same-role turns
TURN_ORDERING_FAMILIES = frozenset({"anthropic", "google"})

IMAGE_PLACEHOLDER = "[image omitted: already processed]"
SYNTHETIC_RESULT_TEXT = "[No result: tool call was interrupted before completing]"
COMPACTED_RESULT_TEXT = "[compacted: tool output removed to free context]"

# Context guard ratios
CHARS_PER_TOKEN_ESTIMATE = 4
CONTEXT_INPUT_HEADROOM_RATIO = 0.75
SINGLE_TOOL_RESULT_CONTEXT_SHARE = 0.5
TOOL_RESULT_CHARS_PER_TOKEN_ESTIMATE = 2
MIN_BUDGET_CHARS = 1_024

_STRICT_ID_MAX = 40


@dataclass(frozen=True)
class SanitizeContext:
    policy: TranscriptPolicy
    allowed_tool_names: frozenset[str] | None = None
    history_limit: int | None = None
    context_window_tokens: int | None = None


Stage = Callable[[list[Message], SanitizeContext], list[Message]]


# ---------------------------------------------------------------------------
# Policy table
# ---------------------------------------------------------------------------


def resolve_transcript_policy(provider: str, model_api: str | None, model_id: str = "") -> TranscriptPolicy:
    """Static policy lookup for a (provider, model_api). Pure function."""
    provider = (provider or "").lower()
    model_api = (model_api or "").lower()
    model_id = (model_id or "").lower()

    if model_api == "anthropic-messages" or provider.startswith("anthropic"):
        return TranscriptPolicy(
            provider_family="anthropic",
            validate_turn_ordering=TURN_ORDERING_FAMILIES,
            allow_synthetic_tool_results=True,
        )
    if model_api == "google-generative-ai" or provider.startswith("google"):
        return TranscriptPolicy(
            provider_family="google",
            sanitize_tool_call_ids=True,
            tool_call_id_mode="strict",
            validate_turn_ordering=TURN_ORDERING_FAMILIES,
        )
    if provider.startswith("mistral"):
        return TranscriptPolicy(
            provider_family="mistral",
            sanitize_tool_call_ids=True,
            tool_call_id_mode="strict9",
            validate_turn_ordering=TURN_ORDERING_FAMILIES,
        )
    if model_api == "github-copilot" and "claude" in model_id:
        return TranscriptPolicy(
            provider_family="copilot",
            drop_thinking_blocks=True,
            validate_turn_ordering=TURN_ORDERING_FAMILIES,
        )
    family = "openai" if model_api.startswith("openai") or provider.startswith("openai") else "generic"
    return TranscriptPolicy(provider_family=family, validate_turn_ordering=TURN_ORDERING_FAMILIES)


def tool_result_ceiling_bytes(context_window_tokens: int) -> int:
    """Largest single tool result kept verbatim for a context window."""
    return max(
        MIN_BUDGET_CHARS,
        int(context_window_tokens * TOOL_RESULT_CHARS_PER_TOKEN_ESTIMATE * SINGLE_TOOL_RESULT_CONTEXT_SHARE),
    )


def context_budget_chars(context_window_tokens: int) -> int:
    return max(
        MIN_BUDGET_CHARS,
        int(context_window_tokens * CHARS_PER_TOKEN_ESTIMATE * CONTEXT_INPUT_HEADROOM_RATIO),
    )


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def remove_unknown_tool_results(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    allowed = ctx.allowed_tool_names
    if allowed is None:
        return messages
    out: list[Message] = []
    removed = 0
    for msg in messages:
        if isinstance(msg.content, list) and any(isinstance(p, ToolResultPart) for p in msg.content):
            kept = [p for p in msg.content if not (isinstance(p, ToolResultPart) and p.name not in allowed)]
            removed += len(msg.content) - len(kept)
            msg = Message(msg.role, kept)
        out.append(msg)
    if removed:
        logger.info("Removed %d tool result(s) for unregistered tools", removed)
    return _drop_empty(out)


def repair_turn_ordering(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    """Collapse a trailing run of unanswered user turns to its last message."""
    trailing: list[int] = []
    for i in range(len(messages) - 1, -1, -1):
        role = messages[i].role
        if role == "system":
            continue
        if role != "user":
            break
        trailing.append(i)
    if len(trailing) < 2:
        return messages
    dangling = set(trailing[1:])  # all but the final user turn
    logger.warning("Dropping %d dangling user turn(s) with no assistant response", len(dangling))
    return [m for i, m in enumerate(messages) if i not in dangling]


def enforce_role_alternation(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    policy = ctx.policy
    if policy.provider_family not in policy.validate_turn_ordering:
        return messages
    out: list[Message] = []
    last_idx: int | None = None  # index in out of the last non-system message
    for msg in messages:
        if msg.role == "system":
            out.append(msg)
            continue
        if last_idx is not None and out[last_idx].role == msg.role:
            if policy.turn_ordering_mode == "reject":
                raise TranscriptInvariantViolation(
                    f"consecutive {msg.role} turns are not accepted by {policy.provider_family}"
                )
            out[last_idx] = _merge(out[last_idx], msg)
            continue
        out.append(msg)
        last_idx = len(out) - 1
    return out


def strip_thinking_blocks(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    if not ctx.policy.drop_thinking_blocks:
        return messages
    out: list[Message] = []
    for msg in messages:
        if msg.role == "assistant" and isinstance(msg.content, list):
            msg = Message("assistant", [p for p in msg.content if not isinstance(p, ThinkingPart)])
        out.append(msg)
    return _drop_empty(out)


def normalize_tool_call_ids(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    policy = ctx.policy
    if not policy.sanitize_tool_call_ids or policy.tool_call_id_mode is None:
        return messages

    mapping: dict[str, str] = {}
    taken: set[str] = set()

    def normalized(raw: str) -> str:
        if raw not in mapping:
            candidate = _normalize_id(raw, policy.tool_call_id_mode)
            attempt = 0
            while candidate in taken:
                attempt += 1
                candidate = _normalize_id(f"{raw}#{attempt}", policy.tool_call_id_mode, force_hash=True)
            mapping[raw] = candidate
            taken.add(candidate)
        return mapping[raw]

    out: list[Message] = []
    for msg in messages:
        if not isinstance(msg.content, list):
            out.append(msg)
            continue
        parts = []
        for part in msg.content:
            if isinstance(part, (ToolCallPart, ToolResultPart)):
                new_id = normalized(part.id)
                if new_id != part.id:
                    part = dataclasses.replace(part, id=new_id)
            parts.append(part)
        out.append(Message(msg.role, parts))
    return out


def limit_history_turns(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    limit = ctx.history_limit
    if not limit or limit <= 0:
        return messages
    user_indices = [i for i, m in enumerate(messages) if m.role == "user"]
    if len(user_indices) <= limit:
        return messages
    cut = user_indices[-limit]
    kept = [m for m in messages[:cut] if m.role == "system"] + messages[cut:]
    logger.debug("History limited to %d user turns (%d -> %d messages)", limit, len(messages), len(kept))
    return kept


def repair_tool_pairing(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    """Ensure every tool result has exactly one call in the preceding assistant turn.

    A tool call is answered only by the contiguous tool messages directly
    after its assistant turn. Unanswered calls are dropped, or answered
    with a synthetic error result when the policy allows it.
    """
    policy = ctx.policy
    if not policy.repair_orphan_pairs:
        return messages

    out: list[Message] = []
    seen_call_ids: set[str] = set()
    dropped_calls = dropped_results = synthesized = 0
    i = 0
    while i < len(messages):
        msg = messages[i]

        if msg.role == "tool":
            # Tool turn with no assistant turn directly before it
            parts = msg.parts()
            dropped_results += sum(1 for p in parts if isinstance(p, ToolResultPart))
            kept = [p for p in parts if not isinstance(p, ToolResultPart)]
            if kept:
                out.append(Message("tool", kept))
            i += 1
            continue

        if msg.role != "assistant" or not isinstance(msg.content, list):
            out.append(msg)
            i += 1
            continue

        j = i + 1
        while j < len(messages) and messages[j].role == "tool":
            j += 1
        tool_msgs = messages[i + 1:j]

        result_ids = {
            p.id for t in tool_msgs for p in t.parts() if isinstance(p, ToolResultPart)
        }
        assistant_parts = []
        call_ids: dict[str, str] = {}
        missing: list[ToolCallPart] = []
        for part in msg.content:
            if isinstance(part, ToolCallPart):
                if part.id in seen_call_ids or part.id in call_ids:
                    dropped_calls += 1
                    continue
                if part.id not in result_ids:
                    if not policy.allow_synthetic_tool_results:
                        dropped_calls += 1
                        continue
                    missing.append(part)
                call_ids[part.id] = part.name
            assistant_parts.append(part)
        seen_call_ids.update(call_ids)
        out.append(Message("assistant", assistant_parts))

        answered: set[str] = set()
        repaired_tool_msgs: list[Message] = []
        for tool_msg in tool_msgs:
            kept = []
            for part in tool_msg.parts():
                if isinstance(part, ToolResultPart):
                    if part.id not in call_ids or part.id in answered:
                        dropped_results += 1
                        continue
                    answered.add(part.id)
                kept.append(part)
            repaired_tool_msgs.append(Message("tool", kept))

        if missing:
            synthetic = [
                ToolResultPart(call.id, call.name, SYNTHETIC_RESULT_TEXT, is_error=True, synthetic=True)
                for call in missing
            ]
            synthesized += len(synthetic)
            if repaired_tool_msgs:
                last = repaired_tool_msgs[-1]
                repaired_tool_msgs[-1] = Message("tool", last.parts() + synthetic)
            else:
                repaired_tool_msgs.append(Message("tool", synthetic))

        out.extend(repaired_tool_msgs)
        i = j

    if dropped_calls or dropped_results or synthesized:
        logger.warning(
            "Repaired tool pairing: dropped calls=%d, dropped results=%d, synthetic results=%d",
            dropped_calls, dropped_results, synthesized,
        )
    return _drop_empty(out)


def prune_processed_images(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    user_indices = [i for i, m in enumerate(messages) if m.role == "user"]
    if len(user_indices) < 2:
        return messages
    last_user = user_indices[-1]
    out: list[Message] = []
    pruned = 0
    for i, msg in enumerate(messages):
        if i < last_user and msg.role == "user" and isinstance(msg.content, list):
            parts = []
            for part in msg.content:
                if isinstance(part, ImagePart):
                    part = TextPart(IMAGE_PLACEHOLDER)
                    pruned += 1
                parts.append(part)
            msg = Message("user", parts)
        out.append(msg)
    if pruned:
        logger.debug("Pruned %d already-processed image(s)", pruned)
    return out


def enforce_tool_result_budget(messages: list[Message], ctx: SanitizeContext) -> list[Message]:
    tokens = ctx.context_window_tokens
    if not tokens:
        return messages
    ceiling = tool_result_ceiling_bytes(tokens)

    out: list[Message] = []
    truncated = 0
    for msg in messages:
        if isinstance(msg.content, list) and any(isinstance(p, ToolResultPart) for p in msg.content):
            parts = []
            for part in msg.content:
                if isinstance(part, ToolResultPart):
                    text = stringify(part.result)
                    if utf8_len(text) > ceiling:
                        part = dataclasses.replace(part, result=truncate_utf8(text, ceiling))
                        truncated += 1
                parts.append(part)
            msg = Message(msg.role, parts)
        out.append(msg)
    if truncated:
        logger.warning("Truncated %d oversized tool result(s) to %d bytes", truncated, ceiling)

    budget = context_budget_chars(tokens)
    total = sum(_message_chars(m) for m in out)
    if total <= budget:
        return out

    # Oldest tool results give way first
    compacted = 0
    for idx, msg in enumerate(out):
        if total <= budget:
            break
        if not isinstance(msg.content, list):
            continue
        parts = list(msg.content)
        changed = False
        for k, part in enumerate(parts):
            if total <= budget:
                break
            if isinstance(part, ToolResultPart) and part.result != COMPACTED_RESULT_TEXT:
                before = len(stringify(part.result))
                parts[k] = dataclasses.replace(part, result=COMPACTED_RESULT_TEXT)
                total -= before - len(COMPACTED_RESULT_TEXT)
                compacted += 1
                changed = True
        if changed:
            out[idx] = Message(msg.role, parts)
    if compacted:
        logger.warning(
            "Context budget exceeded: compacted %d older tool result(s) (budget=%d chars, now=%d)",
            compacted, budget, total,
        )
    return out


PIPELINE: tuple[Stage, ...] = (
    remove_unknown_tool_results,
    repair_turn_ordering,
    enforce_role_alternation,
    strip_thinking_blocks,
    normalize_tool_call_ids,
    limit_history_turns,
    repair_tool_pairing,
    prune_processed_images,
    enforce_tool_result_budget,
)


def sanitize(
    history: list[Message],
    policy: TranscriptPolicy,
    allowed_tool_names: set[str] | frozenset[str] | None = None,
    *,
    history_limit: int | None = None,
    context_window_tokens: int | None = None,
) -> list[Message]:
    """Run the full sanitizer pipeline. Raises TranscriptInvariantViolation only
    when the policy rejects (rather than merges) consecutive same-role turns."""
    ctx = SanitizeContext(
        policy=policy,
        allowed_tool_names=frozenset(allowed_tool_names) if allowed_tool_names is not None else None,
        history_limit=history_limit,
        context_window_tokens=context_window_tokens,
    )
    messages = list(history)
    for stage in PIPELINE:
        messages = stage(messages, ctx)
    return messages


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _merge(a: Message, b: Message) -> Message:
    if isinstance(a.content, str) and isinstance(b.content, str):
        if not a.content:
            return Message(a.role, b.content)
        if not b.content:
            return a
        return Message(a.role, f"{a.content}\n\n{b.content}")
    return Message(a.role, a.parts() + b.parts())


def _is_empty(msg: Message) -> bool:
    if isinstance(msg.content, str):
        return msg.role != "user" and not msg.content
    return not msg.content


def _drop_empty(messages: list[Message]) -> list[Message]:
    """Drop emptied messages; merge same-role neighbours the removal made adjacent."""
    out: list[Message] = []
    dropped_since_last = False
    for msg in messages:
        if isinstance(msg.content, list) and _is_empty(msg):
            dropped_since_last = True
            continue
        if dropped_since_last and out and out[-1].role == msg.role and msg.role != "system":
            out[-1] = _merge(out[-1], msg)
        else:
            out.append(msg)
        dropped_since_last = False
    return out


def _normalize_id(raw: str, mode: str, *, force_hash: bool = False) -> str:
    digest = hashlib.sha1(raw.encode("utf-8")).hexdigest()
    cleaned = re.sub(r"[^A-Za-z0-9]", "", raw)
    if mode == "strict9":
        if len(cleaned) == 9 and not force_hash:
            return cleaned
        return digest[:9]
    if cleaned and not force_hash:
        return cleaned[:_STRICT_ID_MAX]
    return f"call{digest[:12]}"


def _message_chars(msg: Message) -> int:
    if isinstance(msg.content, str):
        return len(msg.content)
    total = 0
    for part in msg.content:
        if isinstance(part, TextPart):
            total += len(part.text)
        elif isinstance(part, ThinkingPart):
            total += len(part.text)
        elif isinstance(part, ToolCallPart):
            total += len(stringify(part.arguments)) + len(part.name)
        elif isinstance(part, ToolResultPart):
            total += len(stringify(part.result))
        elif isinstance(part, ImagePart) and isinstance(part.data, str):
            total += len(part.data)
    return total
