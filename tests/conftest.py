"""Shared fixtures: settings factory and a scripted wire transport."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from relay.config import Settings
from relay.engine.base import ModelRequest, ModelResponse, StreamChunk
from relay.events import AbortSignal

HANG = object()  # step marker: block until cancelled


class ScriptedTransport:
    """Transport double that replays scripted chunk lists, one per model call.

    A step may end with HANG to simulate a stalled stream. Every request
    is recorded for assertions.
    """

    def __init__(
        self,
        steps: list[list] | None = None,
        response: ModelResponse | None = None,
        error: Exception | None = None,
        on_complete: Callable[[], Awaitable[None]] | None = None,
        hang_complete: bool = False,
    ) -> None:
        self.steps = list(steps or [])
        self.response = response or ModelResponse(text="")
        self.error = error
        self.on_complete = on_complete
        self.hang_complete = hang_complete
        self.requests: list[ModelRequest] = []
        self.complete_requests: list[ModelRequest] = []

    async def stream(self, request: ModelRequest, signal: AbortSignal):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        step = self.steps.pop(0) if self.steps else [StreamChunk(type="finish", finish_reason="stop")]
        for chunk in step:
            if chunk is HANG:
                await asyncio.Event().wait()
            yield chunk

    async def complete(self, request: ModelRequest, signal: AbortSignal) -> ModelResponse:
        self.complete_requests.append(request)
        if self.on_complete is not None:
            await self.on_complete()
        if self.hang_complete:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.response


def text_step(*deltas: str, finish_reason: str = "stop") -> list[StreamChunk]:
    chunks = [StreamChunk(type="text-delta", text=d) for d in deltas]
    chunks.append(StreamChunk(type="finish", finish_reason=finish_reason, usage={"input_tokens": 10, "output_tokens": 5}))
    return chunks


def tool_step(call_id: str, name: str, args: dict, text: str = "") -> list[StreamChunk]:
    chunks = [StreamChunk(type="text-delta", text=text)] if text else []
    chunks.append(StreamChunk(type="tool-call", tool_call_id=call_id, tool_name=name, args=args))
    chunks.append(StreamChunk(type="finish", finish_reason="tool_calls"))
    return chunks


@pytest.fixture
def make_settings(tmp_path, monkeypatch):
    for var in ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN", "OPENAI_API_KEY", "GEMINI_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)  # no stray .env

    def _make(**overrides) -> Settings:
        defaults = {
            "ANTHROPIC_API_KEY": "test-key",
            "sessions_dir": str(tmp_path / "sessions"),
            "run_timeout_seconds": 0,
        }
        defaults.update(overrides)
        return Settings(**defaults)

    return _make
