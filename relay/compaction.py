"""Transcript compaction: summarize history, keep the recent tail.

A compaction replaces the persisted transcript with
[summary system message, *messages[first_kept_index:]]. The summary is
generated before the session's write lock is taken; the rewrite itself
happens under the lock with a temp-file-then-rename, so an abort or
failure at any point leaves the persisted transcript untouched.
"""

from __future__ import annotations

import logging
import re
import time

from relay.config import Settings
from relay.engine.base import Engine
from relay.errors import ConfigurationError, TranscriptInvariantViolation
from relay.events import AbortSignal
from relay.models import (
    CompactionResult,
    ImagePart,
    Message,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolResultPart,
)
from relay.session import SessionStore
from relay.utils import stringify

logger = logging.getLogger(__name__)

SUPPORTED_MODES = frozenset({"default", "safeguard"})
SUMMARY_PREFIX = "[Previous conversation summary]"
_MAX_RESULT_CHARS = 2_000

DEFAULT_COMPACTION_PROMPT = """\
You summarize agent conversations so they can continue after older turns
are dropped. Output ONLY the summary, 800-1200 words, precise over complete.

Use these sections:

## Goal
What the user is trying to achieve, in 1-2 sentences.

## Constraints & Preferences
- Requirements, technical limits, stated preferences

## Progress
### Done
- [x] Completed items
### In Progress
- [ ] Current work

## Key Decisions
- **Decision**: rationale

## Next Steps
1. Ordered list

## Critical Context
- Exact file paths, commands, error messages, identifiers
"""

# Safeguard mode: at least two of these must appear in the summary
_SECTION_PATTERNS = [
    re.compile(r"##\s*goals?\b", re.IGNORECASE),
    re.compile(r"##\s*progress\b", re.IGNORECASE),
    re.compile(r"##\s*critical\s*context\b", re.IGNORECASE),
]


class TokenEstimator:
    """chars/4 token estimate, calibrated from API usage.

    calibrate() folds observed input_tokens into the ratio with an EMA
    (alpha=0.1). Calibration is per-process and resets on restart.
    """

    def __init__(self) -> None:
        self._ratio: float = 0.25
        self._samples: int = 0

    @property
    def samples(self) -> int:
        return self._samples

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str) -> int:
        return max(1, int(len(text) * self._ratio))

    def estimate_message(self, message: Message) -> int:
        return self.estimate(serialize_message(message)) + 4

    def estimate_messages(self, messages: list[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)

    def calibrate(self, input_chars: int, actual_tokens: int) -> None:
        if input_chars <= 0 or actual_tokens <= 0:
            return
        observed = actual_tokens / input_chars
        self._ratio = 0.1 * observed + 0.9 * self._ratio
        self._samples += 1


class Compactor:
    """Summarizes a session transcript and rewrites it atomically."""

    def __init__(self, settings: Settings, estimator: TokenEstimator | None = None) -> None:
        self._settings = settings
        self.estimator = estimator or TokenEstimator()

    def check_mode(self, mode: str | None = None) -> str:
        mode = mode or self._settings.compaction_mode
        if mode not in SUPPORTED_MODES:
            raise ConfigurationError(
                f"Compaction mode {mode!r} is not supported (expected one of {sorted(SUPPORTED_MODES)})"
            )
        return mode

    def find_cut_point(self, messages: list[Message], keep_recent_tokens: int) -> int:
        """Walk backwards accumulating tokens. Returns the first kept index.

        Snaps forward to a user message so the kept tail starts a turn.
        Returns 0 when everything fits (nothing to compact).
        """
        accumulated = 0
        for i in range(len(messages) - 1, -1, -1):
            accumulated += self.estimator.estimate_message(messages[i])
            if accumulated >= keep_recent_tokens:
                for j in range(i, len(messages)):
                    if messages[j].role == "user":
                        return j
                return 0  # no user turn in the tail, keep everything
        return 0

    async def compact(
        self,
        session_id: str,
        messages: list[Message],
        engine: Engine,
        compaction_prompt: str | None = None,
        store: SessionStore | None = None,
        *,
        signal: AbortSignal | None = None,
        model_id: str | None = None,
        mode: str | None = None,
    ) -> CompactionResult:
        """Compact a transcript.

        messages must be the persisted branch as read from the store.
        Raises ConfigurationError (unsupported mode, before any network
        call), RunAborted/RunTimedOut, ProviderWireError and
        TranscriptInvariantViolation (branch changed underneath us).
        """
        mode = self.check_mode(mode)
        signal = signal or AbortSignal()
        signal.raise_if_aborted()

        first_kept = self.find_cut_point(messages, self._settings.compaction_keep_recent_tokens)
        if not messages or first_kept == 0:
            logger.info("Session %s: nothing to compact (%d messages)", session_id, len(messages))
            return CompactionResult(summary_text="", first_kept_index=0, compacted_messages=list(messages))

        start = time.monotonic()
        transcript = serialize_for_summary(messages)
        response = await engine.generate(
            compaction_prompt or DEFAULT_COMPACTION_PROMPT,
            [{"role": "user", "content": transcript}],
            signal=signal,
            model=model_id or self._settings.compaction_model,
        )
        if response.usage and response.usage.get("input_tokens"):
            self.estimator.calibrate(len(transcript), response.usage["input_tokens"])

        summary = response.text.strip()
        if not summary or (mode == "safeguard" and not validate_summary(summary)):
            logger.error("Session %s: compaction summary rejected (%d chars), transcript unchanged",
                         session_id, len(summary))
            return CompactionResult(summary_text=summary, first_kept_index=0, compacted_messages=list(messages))

        compacted = [Message("system", f"{SUMMARY_PREFIX}\n\n{summary}"), *messages[first_kept:]]

        signal.raise_if_aborted()
        if store is not None:
            async with store.write_lock(session_id):
                signal.raise_if_aborted()
                current = await store.read_branch(session_id)
                if current[: len(messages)] != messages:
                    raise TranscriptInvariantViolation(
                        f"Session {session_id} changed during compaction; refusing to rewrite"
                    )
                # Messages appended while the summary was generated are kept
                compacted.extend(current[len(messages):])
                await store.replace_branch(session_id, compacted)

        logger.info(
            "Compacted session %s: %d messages -> %d (summary %d chars, %d ms)",
            session_id,
            len(messages),
            len(compacted),
            len(summary),
            int((time.monotonic() - start) * 1000),
        )
        return CompactionResult(summary_text=summary, first_kept_index=first_kept, compacted_messages=compacted)


def validate_summary(summary: str) -> bool:
    """Format and length check for safeguard mode."""
    if len(summary) < 200:
        logger.warning("Summary too short (%d chars)", len(summary))
        return False
    if len(summary) > 8000:
        logger.warning("Summary exceeds 8000 chars (%d) - accepting with warning", len(summary))
    found = sum(1 for pat in _SECTION_PATTERNS if pat.search(summary))
    if found < 2:
        logger.warning("Summary missing sections (%d/3)", found)
        return False
    return True


def serialize_message(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    lines = []
    for part in message.content:
        if isinstance(part, TextPart):
            lines.append(part.text)
        elif isinstance(part, ToolCallPart):
            lines.append(f"[tool call {part.name}({stringify(part.arguments)})]")
        elif isinstance(part, ToolResultPart):
            text = stringify(part.result)
            if len(text) > _MAX_RESULT_CHARS:
                text = text[:_MAX_RESULT_CHARS] + " ..."
            lines.append(f"[tool result {part.name}{' (error)' if part.is_error else ''}: {text}]")
        elif isinstance(part, ImagePart):
            lines.append("[image]")
        elif isinstance(part, ThinkingPart):
            continue
    return "\n".join(lines)


def serialize_for_summary(messages: list[Message]) -> str:
    """Render messages as readable text for the summarizer."""
    labels: dict[str, str] = {"user": "User", "assistant": "Assistant", "tool": "Tool", "system": "System"}
    return "\n\n".join(
        f"**{labels.get(m.role, m.role)}:** {serialize_message(m)}" for m in messages
    )
