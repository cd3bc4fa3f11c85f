"""Session persistence: an append-only JSONL message log per session.

Each line is one record: {"type": "message", "message": {...}}. Appends
and compaction rewrites are serialized per session by an asyncio.Lock.
Rewrites go to a temp file that is renamed over the log, so a concurrent
reader sees either the old or the new transcript, never a mix.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Protocol, TypeVar

from relay.errors import TranscriptInvariantViolation
from relay.models import Message, message_from_dict, message_to_dict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionStore(Protocol):
    async def read_branch(self, session_id: str) -> list[Message]: ...

    async def append_messages(self, session_id: str, messages: list[Message]) -> None: ...

    def write_lock(self, session_id: str) -> Any: ...

    async def with_write_lock(self, session_id: str, fn: Callable[[], Awaitable[T]]) -> T: ...

    async def replace_branch(self, session_id: str, messages: list[Message]) -> None: ...

    async def repair_if_needed(self, session_id: str) -> int: ...


class JsonlSessionStore:
    """File-backed SessionStore rooted at a directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders plus waiters per session; a lock is dropped when this reaches zero
        self._lock_users: dict[str, int] = {}

    def path_for(self, session_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in session_id)
        if not safe.strip("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.root / f"{safe}.jsonl"

    @asynccontextmanager
    async def write_lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's write lock for the duration of the block."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    async def with_write_lock(self, session_id: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.write_lock(session_id):
            return await fn()

    def is_locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    async def read_branch(self, session_id: str) -> list[Message]:
        """Read all messages. A missing session reads as empty; bad lines are skipped."""
        lines = await asyncio.to_thread(self._read_lines, self.path_for(session_id))
        messages = []
        for lineno, line in enumerate(lines, 1):
            message = _parse_line(line)
            if message is None:
                if _is_valid_line(line):
                    continue  # non-message record
                logger.warning("Session %s: skipping unreadable line %d", session_id, lineno)
                continue
            messages.append(message)
        return messages

    async def append_messages(self, session_id: str, messages: list[Message]) -> None:
        if not messages:
            return
        payload = "".join(_record(m) for m in messages)
        async with self.write_lock(session_id):
            await asyncio.to_thread(self._append, self.path_for(session_id), payload)
        logger.debug("Session %s: appended %d messages", session_id, len(messages))

    async def replace_branch(self, session_id: str, messages: list[Message]) -> None:
        """Atomically rewrite the whole log. The caller must hold the write lock."""
        if not self.is_locked(session_id):
            raise TranscriptInvariantViolation(
                f"replace_branch({session_id!r}) called without holding the write lock"
            )
        payload = "".join(_record(m) for m in messages)
        await asyncio.to_thread(self._write_atomic, self.path_for(session_id), payload)

    async def repair_if_needed(self, session_id: str) -> int:
        """Drop torn or invalid lines. Returns the number of lines removed.

        Idempotent: a clean log is left untouched.
        """
        path = self.path_for(session_id)
        async with self.write_lock(session_id):
            lines = await asyncio.to_thread(self._read_lines, path)
            kept = [line for line in lines if _is_valid_line(line)]
            dropped = len(lines) - len(kept)
            if dropped:
                await asyncio.to_thread(self._write_atomic, path, "".join(f"{line}\n" for line in kept))
                logger.warning("Session %s: repaired log, dropped %d bad lines", session_id, dropped)
        return dropped

    # --- blocking file helpers (run in a worker thread) ---

    @staticmethod
    def _read_lines(path: Path) -> list[str]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        return [line for line in text.splitlines() if line.strip()]

    @staticmethod
    def _append(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # A torn final line without newline must not swallow the next record
        prefix = ""
        if path.exists() and path.stat().st_size > 0:
            with path.open("rb") as f:
                f.seek(-1, os.SEEK_END)
                if f.read(1) != b"\n":
                    prefix = "\n"
        with path.open("a", encoding="utf-8") as f:
            f.write(prefix + payload)
            f.flush()
            os.fsync(f.fileno())

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise


def _record(message: Message) -> str:
    record = {"type": "message", "message": message_to_dict(message)}
    return json.dumps(record, ensure_ascii=False) + "\n"


def _parse_line(line: str) -> Message | None:
    try:
        record = json.loads(line)
        if not isinstance(record, dict) or record.get("type") != "message":
            return None
        return message_from_dict(record["message"])
    except (json.JSONDecodeError, KeyError, ValueError, TypeError):
        return None


def _is_valid_line(line: str) -> bool:
    """Valid JSON record; message records must also decode to a Message."""
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return False
    if not isinstance(record, dict) or not isinstance(record.get("type"), str):
        return False
    return record["type"] != "message" or _parse_line(line) is not None
