"""Run controller and gateway runner.

RunController owns one turn: it sanitizes and translates the history,
adapts tools, drives the engine stream and demultiplexes its chunks into
caller callbacks. GatewayRunner is the long-lived object holding the
HTTP client, credential resolver and session store, and wires
persistence around runs and compactions.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from relay.compaction import Compactor
from relay.config import Settings
from relay.credentials import CredentialResolver, SettingsCredentialResolver
from relay.engine.base import Engine, StreamChunk, run_abortable
from relay.errors import RunAborted, RunTimedOut
from relay.events import AbortSignal, EventEmitter, RunCallbacks, RunEvent
from relay.messages import extract_instructions, from_engine_messages, to_engine_messages
from relay.models import (
    CompactionResult,
    ImagePart,
    Message,
    RunPhase,
    RunResult,
    RunState,
    TextPart,
    ToolDefinition,
)
from relay.providers import load_transport, resolve, resolve_provider_options
from relay.sanitizer import resolve_transcript_policy, sanitize, tool_result_ceiling_bytes
from relay.session import JsonlSessionStore, SessionStore
from relay.tools import adapt_tools
from relay.utils import generate_id

logger = logging.getLogger(__name__)

_TERMINAL_PHASES = frozenset({RunPhase.FINISHED, RunPhase.ABORTED, RunPhase.ERRORED})


@dataclass
class RunParams:
    """Everything one run needs. Unset model fields fall back to Settings."""

    session_id: str
    prompt: str
    history: list[Message] = field(default_factory=list)
    system_prompt: str = ""
    tools: list[ToolDefinition] = field(default_factory=list)
    images: list[ImagePart] = field(default_factory=list)
    provider: str | None = None
    model_id: str | None = None
    model_api: str | None = None
    base_url: str | None = None
    think_level: str | None = None
    max_steps: int | None = None
    timeout_seconds: float | None = None
    context_window_tokens: int | None = None
    session_kind: str | None = None
    reasoning_channel: bool = False
    abort_signal: AbortSignal | None = None
    run_id: str = field(default_factory=lambda: generate_id("run"))

    def with_defaults(self, settings: Settings) -> RunParams:
        return replace(
            self,
            provider=self.provider or settings.provider,
            model_id=self.model_id or settings.model,
            model_api=self.model_api or settings.model_api,
            base_url=self.base_url or settings.base_url,
            think_level=self.think_level or settings.think_level,
            max_steps=self.max_steps if self.max_steps is not None else settings.max_steps,
            timeout_seconds=(
                self.timeout_seconds if self.timeout_seconds is not None else settings.run_timeout_seconds
            ),
            context_window_tokens=self.context_window_tokens or settings.context_window_tokens,
        )


@dataclass
class HookOverride:
    """Returned by a before_run hook to adjust the run."""

    system_prompt: str | None = None
    prepend_context: str | None = None


BeforeRunHook = Callable[[RunParams], Any]  # HookOverride | None, or an awaitable of one
AfterRunHook = Callable[[RunParams, RunResult], Any]
EngineFactory = Callable[[RunParams], Awaitable[Engine]]


class RunController:
    """Drives a single run. Not reusable: run() may be awaited once."""

    def __init__(
        self,
        params: RunParams,
        engine_factory: EngineFactory,
        callbacks: RunCallbacks | None = None,
        settings: Settings | None = None,
        *,
        before_run: Sequence[BeforeRunHook] = (),
        after_run: Sequence[AfterRunHook] = (),
    ) -> None:
        self._settings = settings or Settings()
        self.params = params.with_defaults(self._settings)
        if self.params.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self._engine_factory = engine_factory
        self._emitter = EventEmitter(callbacks)
        self._before_run = list(before_run)
        self._after_run = list(after_run)
        self._signal = AbortSignal()
        self.state = RunState(signal=self._signal)
        self._started = False
        self._step_text: list[str] = []

    # --- control surface ---

    @property
    def phase(self) -> RunPhase:
        return self.state.phase

    @property
    def events(self) -> list[RunEvent]:
        return list(self._emitter.history)

    def is_streaming(self) -> bool:
        return self.state.streaming

    def is_compacting(self) -> bool:
        # Compaction is a separate call, never a state of a run
        return False

    async def queue_message(self, text: str) -> None:
        """Queue text for the next turn while streaming; no-op otherwise.

        There is no mid-stream injection: queued texts are returned in
        RunResult.pending_messages once the stream settles.
        """
        if self.state.streaming:
            self.state.pending_injections.append(text)
            logger.debug("Run %s: queued message for next turn (%d pending)",
                         self.params.run_id, len(self.state.pending_injections))

    def abort(self, is_timeout: bool = False, reason: object = None) -> None:
        if self.state.phase in _TERMINAL_PHASES:
            logger.debug("Run %s: abort after %s ignored", self.params.run_id, self.state.phase)
            return
        self.state.aborted = True
        if is_timeout:
            self.state.timed_out = True
        if reason is None:
            reason = "timeout" if is_timeout else "aborted"
        self._signal.abort(reason, timeout=is_timeout)

    # --- run ---

    async def run(self) -> RunResult:
        if self._started:
            raise RuntimeError("RunController.run() may only be called once")
        self._started = True

        p = self.params
        result = RunResult()
        remove_listener: Callable[[], None] | None = None
        timer: asyncio.TimerHandle | None = None
        text_chunks: list[str] = []

        try:
            if p.abort_signal is not None:
                if p.abort_signal.aborted:
                    self.abort(p.abort_signal.is_timeout, p.abort_signal.reason)
                else:
                    remove_listener = p.abort_signal.add_listener(
                        lambda s: self.abort(s.is_timeout, s.reason)
                    )
            if p.timeout_seconds and p.timeout_seconds > 0:
                timer = asyncio.get_running_loop().call_later(p.timeout_seconds, self.abort, True, "timeout")

            system_prompt, prompt = await self._apply_before_run()
            self._signal.raise_if_aborted()

            user_message = _user_message(prompt, p.images)
            tools = adapt_tools(
                p.tools,
                max_result_bytes=min(
                    self._settings.tool_result_max_bytes,
                    tool_result_ceiling_bytes(p.context_window_tokens),
                ),
            )
            policy = resolve_transcript_policy(p.provider, p.model_api, p.model_id)
            history = sanitize(
                [*p.history, user_message],
                policy,
                set(tools),
                history_limit=self._settings.history_limit_for(p.session_kind),
                context_window_tokens=p.context_window_tokens,
            )
            instructions = "\n\n".join(s for s in (system_prompt, extract_instructions(history)) if s)
            engine_messages = to_engine_messages(history, reasoning_channel=p.reasoning_channel)
            engine = await self._engine_factory(p)
            self._signal.raise_if_aborted()
            result.messages.append(user_message)

            self.state.phase = RunPhase.STREAMING
            self.state.streaming = True
            logger.info("Run %s: streaming %s/%s (%d messages, %d tools, max_steps=%d)",
                        p.run_id, p.provider, p.model_id, len(engine_messages), len(tools), p.max_steps)

            async def pump() -> None:
                async for chunk in engine.stream(
                    instructions, engine_messages, tools, max_steps=p.max_steps, signal=self._signal
                ):
                    await self._dispatch(chunk, result, text_chunks)

            await run_abortable(pump(), self._signal)
            if self._emitter.terminal is None:
                await self._finish(result, text_chunks)

        except RunAborted as e:
            self._record_abort(result, e)
            await self._emitter.emit(RunEvent(type="error", error=result.error))
        except asyncio.CancelledError:
            self._signal.abort("cancelled")
            self._record_abort(result, RunAborted("cancelled"))
            await self._emitter.emit(RunEvent(type="error", error=result.error))
            raise
        except Exception as e:
            logger.error("Run %s failed: %s", p.run_id, e)
            result.error = e
            self.state.phase = RunPhase.ERRORED
            await self._emitter.emit(RunEvent(type="error", error=e))
        finally:
            self.state.streaming = False
            if timer is not None:
                timer.cancel()
            if remove_listener is not None:
                remove_listener()
            if self.state.phase is not RunPhase.FINISHED and self._step_text:
                # Keep partial assistant text from an interrupted step
                result.messages.append(Message("assistant", "".join(self._step_text)))
            result.text = "".join(text_chunks)
            result.pending_messages = list(self.state.pending_injections)
            await self._apply_after_run(result)

        return result

    async def _dispatch(self, chunk: StreamChunk, result: RunResult, text_chunks: list[str]) -> None:
        if chunk.type == "text-delta":
            if not chunk.text:
                return
            text_chunks.append(chunk.text)
            self._step_text.append(chunk.text)
            await self._emitter.emit(RunEvent(type="text", text=chunk.text))
        elif chunk.type == "tool-call":
            result.tool_calls.append((chunk.tool_name, chunk.args))
            await self._emitter.emit(RunEvent(type="tool_call", tool_name=chunk.tool_name, args=chunk.args))
        elif chunk.type == "tool-result":
            result.tool_results.append((chunk.tool_name, chunk.result))
            await self._emitter.emit(RunEvent(type="tool_result", tool_name=chunk.tool_name, result=chunk.result))
        elif chunk.type == "step-finish":
            self._step_text = []
            result.messages.extend(from_engine_messages(chunk.messages))
            if chunk.usage:
                result.usage = chunk.usage
        elif chunk.type == "finish":
            if chunk.usage:
                result.usage = chunk.usage
            await self._finish(result, text_chunks)

    async def _finish(self, result: RunResult, text_chunks: list[str]) -> None:
        # An abort that raced the last chunk wins over finish
        self._signal.raise_if_aborted()
        self.state.phase = RunPhase.FINISHED
        self.state.streaming = False
        await self._emitter.emit(RunEvent(type="finish", text="".join(text_chunks)))

    def _record_abort(self, result: RunResult, error: RunAborted) -> None:
        timed_out = isinstance(error, RunTimedOut) or self._signal.is_timeout
        if timed_out and not isinstance(error, RunTimedOut):
            error = RunTimedOut(error.reason)
        result.aborted = True
        result.timed_out = timed_out
        result.error = error
        self.state.aborted = True
        self.state.timed_out = self.state.timed_out or timed_out
        self.state.phase = RunPhase.ABORTED
        logger.info("Run %s %s: %s", self.params.run_id, "timed out" if timed_out else "aborted", error)

    async def _apply_before_run(self) -> tuple[str, str]:
        system_prompt = self.params.system_prompt
        prepend: list[str] = []
        for hook in self._before_run:
            try:
                override = hook(self.params)
                if inspect.isawaitable(override):
                    override = await override
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("before_run hook %s failed", getattr(hook, "__qualname__", hook))
                continue
            if override is None:
                continue
            if override.system_prompt is not None:
                system_prompt = override.system_prompt
            if override.prepend_context:
                prepend.append(override.prepend_context)
        prompt = "\n\n".join([*prepend, self.params.prompt]) if prepend else self.params.prompt
        return system_prompt, prompt

    async def _apply_after_run(self, result: RunResult) -> None:
        for hook in self._after_run:
            try:
                outcome = hook(self.params, result)
                if inspect.isawaitable(outcome):
                    await outcome
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("after_run hook %s failed", getattr(hook, "__qualname__", hook))


class GatewayRunner:
    """Long-lived runner: HTTP client, credentials, session store, hooks."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: SessionStore | None = None,
        credentials: CredentialResolver | None = None,
        before_run: Sequence[BeforeRunHook] = (),
        after_run: Sequence[AfterRunHook] = (),
    ) -> None:
        self._settings = settings
        self._store = store or JsonlSessionStore(settings.sessions_dir)
        self._credentials = credentials or SettingsCredentialResolver(settings)
        self._compactor = Compactor(settings)
        self._before_run = list(before_run)
        self._after_run = list(after_run)
        self._http: httpx.AsyncClient | None = None

    @property
    def store(self) -> SessionStore:
        return self._store

    async def start(self, client: httpx.AsyncClient | None = None) -> None:
        """Create the shared httpx client (or adopt one, e.g. in tests)."""
        if client is not None:
            self._http = client
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(timeout=timeout, limits=limits)
        logger.info("httpx client initialized (provider: %s, model: %s)", settings.provider, settings.model)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    async def build_engine(self, params: RunParams) -> Engine:
        """Resolve credentials, endpoint and transport for a run."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        creds = await self._credentials.resolve_credentials(params.provider, params.model_api)
        endpoint = resolve(
            params.provider,
            params.model_api,
            params.base_url,
            creds.api_key,
            creds.headers,
            model_id=params.model_id,
        )
        transport = await load_transport(endpoint, self._http, self._settings)
        return Engine(
            transport,
            model=params.model_id,
            max_tokens=self._settings.max_tokens,
            provider_options=resolve_provider_options(params.think_level, params.provider),
        )

    def create_controller(self, params: RunParams, callbacks: RunCallbacks | None = None) -> RunController:
        return RunController(
            params,
            self.build_engine,
            callbacks,
            self._settings,
            before_run=self._before_run,
            after_run=self._after_run,
        )

    def start_run(
        self,
        params: RunParams,
        callbacks: RunCallbacks | None = None,
    ) -> tuple[RunController, asyncio.Task[RunResult]]:
        """Start a run in the background. Returns its control handle and task."""
        controller = self.create_controller(params, callbacks)
        task = asyncio.create_task(controller.run(), name=f"run-{params.run_id}")
        return controller, task

    async def run_session_turn(
        self,
        session_id: str,
        prompt: str,
        callbacks: RunCallbacks | None = None,
        **overrides: Any,
    ) -> RunResult:
        """Repair, read, run and persist one turn of a session.

        overrides are RunParams fields (system_prompt, tools, images,
        max_steps, abort_signal, ...).
        """
        await self._store.repair_if_needed(session_id)
        history = await self._store.read_branch(session_id)
        params = RunParams(session_id=session_id, prompt=prompt, history=history, **overrides)
        result = await self.create_controller(params, callbacks).run()
        await self._store.append_messages(session_id, result.messages)
        return result

    async def compact_session(
        self,
        session_id: str,
        compaction_prompt: str | None = None,
        *,
        signal: AbortSignal | None = None,
        mode: str | None = None,
    ) -> CompactionResult:
        self._compactor.check_mode(mode)
        await self._store.repair_if_needed(session_id)
        messages = await self._store.read_branch(session_id)
        params = RunParams(session_id=session_id, prompt="").with_defaults(self._settings)
        if self._settings.compaction_model:
            params.model_id = self._settings.compaction_model
        engine = await self.build_engine(params)
        return await self._compactor.compact(
            session_id,
            messages,
            engine,
            compaction_prompt,
            self._store,
            signal=signal,
            mode=mode,
        )


def _user_message(prompt: str, images: list[ImagePart]) -> Message:
    if not images:
        return Message("user", prompt)
    parts: list[Any] = [TextPart(prompt)] if prompt else []
    parts.extend(images)
    return Message("user", parts)
