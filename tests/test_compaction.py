"""Tests for transcript compaction.

Tests cover:
- TokenEstimator estimate + EMA calibration
- find_cut_point snapping to user turns
- Summary validation (safeguard mode)
- Atomic rewrite: success, concurrent appends, abort, rejection, races
"""

import asyncio

import pytest
from conftest import ScriptedTransport

from relay.compaction import (
    DEFAULT_COMPACTION_PROMPT,
    SUMMARY_PREFIX,
    Compactor,
    TokenEstimator,
    serialize_for_summary,
    validate_summary,
)
from relay.engine.base import Engine, ModelResponse
from relay.errors import ConfigurationError, RunAborted, TranscriptInvariantViolation
from relay.events import AbortSignal
from relay.models import Message, TextPart, ToolCallPart, ToolResultPart
from relay.session import JsonlSessionStore

GOOD_SUMMARY = (
    "## Goal\nShip the log parser.\n\n"
    "## Progress\n### Done\n- [x] Parsed timestamps in src/parse.py\n\n"
    "## Critical Context\n- Tests run with `pytest -k parse`; failing case is tests/test_parse.py::test_tz\n"
    "- The fixture file lives in tests/data/sample.log and must not be edited.\n"
)


def _conversation(pairs: int = 4, size: int = 400) -> list[Message]:
    messages = []
    for i in range(pairs):
        messages.append(Message("user", f"u{i} " + "a" * size))
        messages.append(Message("assistant", f"a{i} " + "b" * size))
    return messages


# ------------------------------------------------------------------
# TokenEstimator
# ------------------------------------------------------------------


class TestTokenEstimator:
    def test_initial_estimate_chars_div_4(self):
        est = TokenEstimator()
        assert est.estimate("a" * 100) == 25

    def test_estimate_minimum_1(self):
        est = TokenEstimator()
        assert est.estimate("") == 1
        assert est.estimate("a") == 1

    def test_estimate_messages(self):
        est = TokenEstimator()
        messages = [Message("user", "a" * 100), Message("assistant", "b" * 200)]
        # 100*0.25 + 4 + 200*0.25 + 4 = 83
        assert est.estimate_messages(messages) == 83

    def test_calibrate_shifts_ratio(self):
        est = TokenEstimator()
        est.calibrate(input_chars=1000, actual_tokens=500)
        # 0.1 * 0.5 + 0.9 * 0.25
        assert abs(est.ratio - 0.275) < 0.001
        assert est.samples == 1

    def test_calibrate_ignores_zero(self):
        est = TokenEstimator()
        est.calibrate(0, 100)
        est.calibrate(100, 0)
        assert est.ratio == 0.25
        assert est.samples == 0


# ------------------------------------------------------------------
# Cut point
# ------------------------------------------------------------------


class TestFindCutPoint:
    def test_returns_zero_when_fits(self, make_settings):
        compactor = Compactor(make_settings())
        assert compactor.find_cut_point(_conversation(), keep_recent_tokens=10_000) == 0

    def test_snaps_to_user_boundary(self, make_settings):
        compactor = Compactor(make_settings())
        messages = _conversation()
        # 104 tokens per message; the threshold is crossed on the assistant at index 5
        cut = compactor.find_cut_point(messages, keep_recent_tokens=300)
        assert cut == 6
        assert messages[cut].role == "user"

    def test_no_user_in_tail_keeps_everything(self, make_settings):
        compactor = Compactor(make_settings())
        messages = [Message("user", "q"), Message("assistant", "x" * 400), Message("assistant", "y" * 400)]
        assert compactor.find_cut_point(messages, keep_recent_tokens=50) == 0

    def test_check_mode(self, make_settings):
        compactor = Compactor(make_settings())
        assert compactor.check_mode() == "default"
        assert compactor.check_mode("safeguard") == "safeguard"
        with pytest.raises(ConfigurationError):
            compactor.check_mode("aggressive")


# ------------------------------------------------------------------
# Summary helpers
# ------------------------------------------------------------------


class TestSummaryHelpers:
    def test_valid_summary(self):
        assert validate_summary(GOOD_SUMMARY) is True

    def test_too_short(self):
        assert validate_summary("## Goal\nx\n## Progress\ny") is False

    def test_missing_sections(self):
        assert validate_summary("Just prose. " * 40) is False

    def test_serialize_for_summary(self):
        text = serialize_for_summary([
            Message("user", "read it"),
            Message("assistant", [TextPart("ok"), ToolCallPart("c1", "read_file", {"path": "/x"})]),
            Message("tool", [ToolResultPart("c1", "read_file", "z" * 3_000, is_error=True)]),
        ])
        assert "**User:** read it" in text
        assert '[tool call read_file({"path": "/x"})]' in text
        assert "[tool result read_file (error): " in text
        assert "z" * 3_000 not in text


# ------------------------------------------------------------------
# compact()
# ------------------------------------------------------------------


@pytest.fixture
def store(tmp_path):
    return JsonlSessionStore(tmp_path / "sessions")


async def _seed(store, session_id: str, messages: list[Message]) -> list[Message]:
    await store.append_messages(session_id, messages)
    return await store.read_branch(session_id)


class TestCompact:
    @pytest.mark.asyncio
    async def test_rewrites_transcript(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation())
        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY, usage={"input_tokens": 900}))
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))

        result = await compactor.compact("s1", messages, Engine(transport, model="m"), store=store)

        assert result.first_kept_index == 6
        assert result.summary_text == GOOD_SUMMARY.strip()
        assert result.compacted_messages[0].role == "system"
        assert result.compacted_messages[0].content.startswith(SUMMARY_PREFIX)
        assert result.compacted_messages[1:] == messages[6:]
        assert await store.read_branch("s1") == result.compacted_messages

        request = transport.complete_requests[0]
        assert request.instructions == DEFAULT_COMPACTION_PROMPT
        assert request.tools == []
        assert request.messages[0]["content"].startswith("**User:** u0")
        assert compactor.estimator.samples == 1

    @pytest.mark.asyncio
    async def test_custom_prompt_and_model(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation())
        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY))
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))
        await compactor.compact(
            "s1", messages, Engine(transport, model="big"), "Summarize tersely.", store, model_id="small",
        )
        request = transport.complete_requests[0]
        assert request.instructions == "Summarize tersely."
        assert request.model == "small"

    @pytest.mark.asyncio
    async def test_nothing_to_compact_makes_no_call(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation(pairs=1, size=10))
        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY))
        result = await Compactor(make_settings()).compact("s1", messages, Engine(transport, model="m"), store=store)
        assert result.first_kept_index == 0
        assert result.compacted_messages == messages
        assert transport.complete_requests == []

    @pytest.mark.asyncio
    async def test_messages_appended_during_summary_are_kept(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation())

        async def late_append():
            await store.append_messages("s1", [Message("user", "late question")])

        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY), on_complete=late_append)
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))
        result = await compactor.compact("s1", messages, Engine(transport, model="m"), store=store)

        stored = await store.read_branch("s1")
        assert stored[-1] == Message("user", "late question")
        assert stored == result.compacted_messages
        assert len(stored) == 4

    @pytest.mark.asyncio
    async def test_abort_leaves_file_untouched(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation())
        before = store.path_for("s1").read_bytes()
        signal = AbortSignal()
        transport = ScriptedTransport(hang_complete=True)
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))

        task = asyncio.create_task(
            compactor.compact("s1", messages, Engine(transport, model="m"), store=store, signal=signal)
        )
        await asyncio.sleep(0.01)
        signal.abort("user cancelled")
        with pytest.raises(RunAborted):
            await task
        assert store.path_for("s1").read_bytes() == before

    @pytest.mark.asyncio
    async def test_safeguard_rejects_bad_summary(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation())
        before = store.path_for("s1").read_bytes()
        transport = ScriptedTransport(response=ModelResponse(text="too short"))
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))
        result = await compactor.compact(
            "s1", messages, Engine(transport, model="m"), store=store, mode="safeguard",
        )
        assert result.first_kept_index == 0
        assert result.compacted_messages == messages
        assert store.path_for("s1").read_bytes() == before

    @pytest.mark.asyncio
    async def test_unsupported_mode_before_network(self, make_settings, store):
        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY))
        with pytest.raises(ConfigurationError):
            await Compactor(make_settings()).compact(
                "s1", _conversation(), Engine(transport, model="m"), store=store, mode="aggressive",
            )
        assert transport.complete_requests == []

    @pytest.mark.asyncio
    async def test_branch_rewritten_underneath_raises(self, make_settings, store):
        messages = await _seed(store, "s1", _conversation())

        async def competing_rewrite():
            async with store.write_lock("s1"):
                await store.replace_branch("s1", [Message("user", "someone else")])

        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY), on_complete=competing_rewrite)
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))
        with pytest.raises(TranscriptInvariantViolation):
            await compactor.compact("s1", messages, Engine(transport, model="m"), store=store)
        assert await store.read_branch("s1") == [Message("user", "someone else")]

    @pytest.mark.asyncio
    async def test_without_store_returns_result_only(self, make_settings):
        transport = ScriptedTransport(response=ModelResponse(text=GOOD_SUMMARY))
        compactor = Compactor(make_settings(compaction_keep_recent_tokens=300))
        result = await compactor.compact("s1", _conversation(), Engine(transport, model="m"))
        assert result.first_kept_index == 6
        assert len(result.compacted_messages) == 3
