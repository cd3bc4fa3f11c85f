"""Run events, caller callbacks and the shared cancellation signal.

Callbacks are the stable contract with the chat/channel layer:
on_text_delta, on_tool_call, on_tool_result, on_finish, on_error.
They may be plain functions or coroutines. Callback errors are
isolated: a broken callback never crashes the run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from relay.errors import RunAborted, RunTimedOut

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"finish", "error"})


@dataclass
class RunEvent:
    """A user-visible event emitted by the run controller."""

    type: str  # text, tool_call, tool_result, finish, error
    text: str = ""
    tool_name: str = ""
    args: Any = None
    result: Any = None
    error: BaseException | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class RunCallbacks:
    on_text_delta: Callable[[str], Any] | None = None
    on_tool_call: Callable[[str, Any], Any] | None = None
    on_tool_result: Callable[[str, Any], Any] | None = None
    on_finish: Callable[[str], Any] | None = None
    on_error: Callable[[BaseException], Any] | None = None


class EventEmitter:
    """Dispatches RunEvents to callbacks, enforcing a single terminal event."""

    def __init__(self, callbacks: RunCallbacks | None = None) -> None:
        self._callbacks = callbacks or RunCallbacks()
        self._terminal: RunEvent | None = None
        self.history: list[RunEvent] = []

    @property
    def terminal(self) -> RunEvent | None:
        return self._terminal

    async def emit(self, event: RunEvent) -> bool:
        """Emit an event. Returns False if it was suppressed (after a terminal event)."""
        if self._terminal is not None:
            logger.debug("Dropping %s event after terminal %s", event.type, self._terminal.type)
            return False
        if event.type in TERMINAL_EVENTS:
            self._terminal = event
        self.history.append(event)

        cb = self._callbacks
        if event.type == "text":
            await self._safe_call(cb.on_text_delta, event.text)
        elif event.type == "tool_call":
            await self._safe_call(cb.on_tool_call, event.tool_name, event.args)
        elif event.type == "tool_result":
            await self._safe_call(cb.on_tool_result, event.tool_name, event.result)
        elif event.type == "finish":
            await self._safe_call(cb.on_finish, event.text)
        elif event.type == "error":
            await self._safe_call(cb.on_error, event.error)
        return True

    async def _safe_call(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        """Run a callback with error isolation. Never propagates (except CancelledError)."""
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Run callback %s failed", getattr(callback, "__qualname__", callback))


class AbortSignal:
    """Cooperative cancellation token shared between a run and its network calls."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: object = None
        self._timeout = False
        self._listeners: list[Callable[[AbortSignal], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> object:
        return self._reason

    @property
    def is_timeout(self) -> bool:
        return self._timeout

    def abort(self, reason: object = None, *, timeout: bool = False) -> None:
        """Signal cancellation. Only the first call takes effect."""
        if self._event.is_set():
            return
        self._reason = reason
        self._timeout = timeout or _is_timeout_reason(reason)
        self._event.set()
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Abort listener failed")

    async def wait(self) -> None:
        await self._event.wait()

    def add_listener(self, listener: Callable[[AbortSignal], None]) -> Callable[[], None]:
        """Register a listener. Returns a remover that is safe to call once or more."""
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return remove

    def error(self) -> RunAborted:
        if self._timeout:
            return RunTimedOut(self._reason if self._reason is not None else "timeout")
        return RunAborted(self._reason)

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise self.error()


def _is_timeout_reason(reason: object) -> bool:
    if isinstance(reason, (TimeoutError, RunTimedOut)):
        return True
    if isinstance(reason, str):
        return reason.lower() in ("timeout", "timed out", "timeouterror")
    return getattr(reason, "name", None) == "TimeoutError"
