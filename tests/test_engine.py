"""Tests for the execution engine tool loop."""

import asyncio

import pytest
from conftest import HANG, ScriptedTransport, text_step, tool_step

from relay.engine.base import Engine, ModelResponse, StreamChunk, run_abortable
from relay.errors import RunAborted, RunTimedOut
from relay.events import AbortSignal
from relay.models import ToolDefinition
from relay.tools import adapt_tools

PATH_SCHEMA = {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]}


def _tools():
    return adapt_tools([ToolDefinition("read_file", "Read a file", PATH_SCHEMA, lambda a: f"data:{a['path']}")])


async def _collect(agen):
    return [chunk async for chunk in agen]


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_text_only_step(self):
        transport = ScriptedTransport([text_step("Hel", "lo")])
        engine = Engine(transport, model="m")
        chunks = await _collect(engine.stream("be nice", [{"role": "user", "content": "hi"}], {}, max_steps=3, signal=AbortSignal()))
        assert [c.type for c in chunks] == ["text-delta", "text-delta", "step-finish", "finish"]
        assert chunks[2].messages == [{"role": "assistant", "content": "Hello"}]
        assert chunks[3].finish_reason == "stop"
        assert transport.requests[0].instructions == "be nice"
        assert transport.requests[0].model == "m"

    @pytest.mark.asyncio
    async def test_tool_call_precedes_result(self):
        transport = ScriptedTransport([
            tool_step("c1", "read_file", {"path": "/tmp/x"}, text="Reading."),
            text_step("Done."),
        ])
        engine = Engine(transport, model="m")
        chunks = await _collect(engine.stream("", [{"role": "user", "content": "go"}], _tools(), max_steps=5, signal=AbortSignal()))
        types = [c.type for c in chunks]
        assert types == ["text-delta", "tool-call", "tool-result", "step-finish", "text-delta", "step-finish", "finish"]
        assert chunks[2].result == "data:/tmp/x"
        assert chunks[2].is_error is False

        assistant, tool_message = chunks[3].messages
        assert assistant["content"][0] == {"type": "text", "text": "Reading."}
        assert assistant["content"][1]["tool_call_id"] == "c1"
        assert tool_message["content"][0]["tool_call_id"] == "c1"

        # Second call sees the tool exchange
        second = transport.requests[1]
        assert [m["role"] for m in second.messages] == ["user", "assistant", "tool"]
        assert second.tools[0]["name"] == "read_file"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_error_result(self):
        transport = ScriptedTransport([tool_step("c1", "nope", {}), text_step("ok")])
        chunks = await _collect(Engine(transport, model="m").stream("", [], _tools(), max_steps=5, signal=AbortSignal()))
        result = next(c for c in chunks if c.type == "tool-result")
        assert result.is_error is True
        assert result.result == "Error: unknown tool 'nope'"

    @pytest.mark.asyncio
    async def test_invalid_arguments_returned_to_model(self):
        transport = ScriptedTransport([tool_step("c1", "read_file", {"path": 3}), text_step("sorry")])
        chunks = await _collect(Engine(transport, model="m").stream("", [], _tools(), max_steps=5, signal=AbortSignal()))
        result = next(c for c in chunks if c.type == "tool-result")
        assert result.is_error is True
        assert result.result.startswith("Error: invalid arguments")

    @pytest.mark.asyncio
    async def test_max_steps_final_call_without_tools(self, caplog):
        transport = ScriptedTransport([
            tool_step("c1", "read_file", {"path": "a"}),
            tool_step("c2", "read_file", {"path": "b"}),
            text_step("Summary."),
        ])
        chunks = await _collect(Engine(transport, model="m").stream("", [], _tools(), max_steps=2, signal=AbortSignal()))
        assert len(transport.requests) == 3
        assert transport.requests[2].tools == []
        assert chunks[-1].type == "finish"
        assert chunks[-1].finish_reason == "max_steps"
        assert chunks[-2].messages == [{"role": "assistant", "content": "Summary."}]
        assert "max_steps=2" in caplog.text

    @pytest.mark.asyncio
    async def test_reasoning_accumulated_into_assistant_message(self):
        step = [
            StreamChunk(type="reasoning-delta", text="think "),
            StreamChunk(type="reasoning-delta", text="more", signature="sig"),
            StreamChunk(type="text-delta", text="answer"),
            StreamChunk(type="finish", finish_reason="stop"),
        ]
        chunks = await _collect(Engine(ScriptedTransport([step]), model="m").stream("", [], {}, max_steps=1, signal=AbortSignal()))
        content = chunks[-2].messages[0]["content"]
        assert content[0] == {"type": "reasoning", "text": "think more", "signature": "sig"}
        assert content[1] == {"type": "text", "text": "answer"}

    @pytest.mark.asyncio
    async def test_abort_stops_loop(self):
        signal = AbortSignal()
        signal.abort("stop")
        with pytest.raises(RunAborted):
            await _collect(Engine(ScriptedTransport([text_step("x")]), model="m").stream("", [], {}, max_steps=1, signal=signal))

    @pytest.mark.asyncio
    async def test_transport_stopping_on_abort_yields_no_finish(self):
        class QuietTransport:
            async def stream(self, request, signal):
                yield StreamChunk(type="text-delta", text="Hel")
                if signal.aborted:
                    return
                yield StreamChunk(type="finish", finish_reason="stop")

        signal = AbortSignal()
        seen = []
        with pytest.raises(RunAborted):
            async for chunk in Engine(QuietTransport(), model="m").stream("", [], {}, max_steps=1, signal=signal):
                seen.append(chunk.type)
                signal.abort("user")
        assert seen == ["text-delta"]

    @pytest.mark.asyncio
    async def test_missing_tool_call_id_generated(self):
        transport = ScriptedTransport([tool_step("", "read_file", {"path": "/x"}), text_step("done")])
        chunks = await _collect(Engine(transport, model="m").stream("", [], _tools(), max_steps=3, signal=AbortSignal()))
        call = next(c for c in chunks if c.type == "tool-call")
        result = next(c for c in chunks if c.type == "tool-result")
        assert call.tool_call_id
        assert result.tool_call_id == call.tool_call_id
        step_messages = next(c for c in chunks if c.type == "step-finish").messages
        assert step_messages[0]["content"][0]["tool_call_id"] == call.tool_call_id
        assert step_messages[1]["content"][0]["tool_call_id"] == call.tool_call_id

    @pytest.mark.asyncio
    async def test_invalid_max_steps(self):
        with pytest.raises(ValueError):
            await _collect(Engine(ScriptedTransport(), model="m").stream("", [], {}, max_steps=0, signal=AbortSignal()))


class TestGenerate:
    @pytest.mark.asyncio
    async def test_overrides_model_and_max_tokens(self):
        transport = ScriptedTransport(response=ModelResponse(text="summary"))
        engine = Engine(transport, model="big", max_tokens=4096)
        response = await engine.generate("sys", [{"role": "user", "content": "x"}], max_tokens=512, model="small")
        assert response.text == "summary"
        request = transport.complete_requests[0]
        assert (request.model, request.max_tokens, request.tools) == ("small", 512, [])

    @pytest.mark.asyncio
    async def test_abort_cancels_pending_call(self):
        transport = ScriptedTransport(hang_complete=True)
        signal = AbortSignal()
        engine = Engine(transport, model="m")
        task = asyncio.create_task(engine.generate("", [], signal=signal))
        await asyncio.sleep(0.01)
        signal.abort("timeout")
        with pytest.raises(RunTimedOut):
            await task


class TestRunAbortable:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 42

        assert await run_abortable(work(), AbortSignal()) == 42

    @pytest.mark.asyncio
    async def test_abort_wins_over_hanging_stream(self):
        signal = AbortSignal()
        transport = ScriptedTransport([[StreamChunk(type="text-delta", text="a"), HANG]])

        async def pump():
            async for _ in Engine(transport, model="m").stream("", [], {}, max_steps=1, signal=signal):
                pass

        asyncio.get_running_loop().call_later(0.01, signal.abort, "user")
        with pytest.raises(RunAborted) as exc_info:
            await run_abortable(pump(), signal)
        assert exc_info.value.reason == "user"
