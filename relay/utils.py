"""Shared utility functions for relay."""

from __future__ import annotations

import itertools
import json
import time
from typing import Any

TRUNCATION_MARKER = "\n\n[truncated]"

_id_counter = itertools.count(1)


def generate_id(prefix: str = "call") -> str:
    """Process-unique id for tool calls that arrive without one."""
    return f"{prefix}_{int(time.time() * 1000)}_{next(_id_counter)}"


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def truncate_utf8(text: str, max_bytes: int, marker: str = TRUNCATION_MARKER) -> str:
    """Truncate text to at most max_bytes UTF-8 bytes, ending with a visible marker.

    Text already within the ceiling is returned unchanged.
    """
    if utf8_len(text) <= max_bytes:
        return text
    marker_bytes = marker.encode("utf-8")
    keep = max(0, max_bytes - len(marker_bytes))
    head = text.encode("utf-8")[:keep].decode("utf-8", errors="ignore")
    if not head:
        return marker_bytes[:max_bytes].decode("utf-8", errors="ignore")
    return head + marker


def stringify(value: Any) -> str:
    """Best-effort text rendering of a tool result or argument payload."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
