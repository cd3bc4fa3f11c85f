"""Tool adapter: ToolDefinition -> EngineTool.

Each EngineTool validates its arguments against the translated pydantic
schema, runs the application's executor (sync or async) and always
returns text. Executor exceptions become "Error: ..." results for the
model to see; a tool never crashes the run.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter, ValidationError

from relay.errors import ToolExecutionError
from relay.models import ToolDefinition, ToolExecutor
from relay.schema import to_type_adapter, to_wire_schema
from relay.utils import stringify, truncate_utf8

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULT_BYTES = 200_000


@dataclass
class EngineTool:
    """A tool as the execution engine sees it."""

    name: str
    description: str
    parameters: dict[str, Any]  # wire JSON schema
    validator: TypeAdapter
    executor: ToolExecutor | None
    max_result_bytes: int = DEFAULT_MAX_RESULT_BYTES

    def definition(self) -> dict[str, Any]:
        """Provider-neutral tool declaration."""
        return {"name": self.name, "description": self.description, "parameters": self.parameters}

    async def execute(self, args: Any) -> tuple[str, bool]:
        """Run the tool. Returns (result_text, is_error). Never raises except on cancellation."""
        if args is None:
            args = {}
        try:
            self.validator.validate_python(args)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
            )
            return self._limit(f"Error: invalid arguments for {self.name}: {details}"), True

        if self.executor is None:
            return f"Error: tool {self.name} has no executor", True

        try:
            result = self.executor(args)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = ToolExecutionError(self.name, e)
            logger.exception("Tool execution error: %s", err)
            return self._limit(f"Error: {e}" if str(e) else f"Error: {type(e).__name__}"), True

        return self._limit(serialize_result(result)), False

    def _limit(self, text: str) -> str:
        limited = truncate_utf8(text, self.max_result_bytes)
        if limited is not text:
            logger.warning("Tool %s result truncated to %d bytes", self.name, self.max_result_bytes)
        return limited


def serialize_result(result: Any) -> str:
    """Normalize a tool result to text.

    Content-block lists (and MCP-style {"content": [...]} envelopes) are
    flattened to their joined text; other objects are JSON-encoded.
    """
    if isinstance(result, str):
        return result
    if result is None:
        return ""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return _join_blocks(result["content"])
    if isinstance(result, list) and result and all(_is_block(b) for b in result):
        return _join_blocks(result)
    return stringify(result)


def adapt_tool(tool: ToolDefinition, *, max_result_bytes: int = DEFAULT_MAX_RESULT_BYTES) -> EngineTool | None:
    """Adapt one tool. Returns None (and warns) for tools that cannot be dispatched."""
    name = (tool.name or "").strip()
    if not name:
        logger.warning("Skipping tool with empty name (description=%r)", (tool.description or "")[:60])
        return None
    validator = to_type_adapter(tool.parameters)
    return EngineTool(
        name=name,
        description=tool.description or "",
        parameters=to_wire_schema(tool.parameters, validator),
        validator=validator,
        executor=tool.executor,
        max_result_bytes=max_result_bytes,
    )


def adapt_tools(
    tools: list[ToolDefinition],
    *,
    max_result_bytes: int = DEFAULT_MAX_RESULT_BYTES,
) -> dict[str, EngineTool]:
    """Adapt a tool list into a name-keyed dict. First definition of a name wins."""
    adapted: dict[str, EngineTool] = {}
    for tool in tools:
        engine_tool = adapt_tool(tool, max_result_bytes=max_result_bytes)
        if engine_tool is None:
            continue
        if engine_tool.name in adapted:
            logger.warning("Duplicate tool name %r, keeping the first definition", engine_tool.name)
            continue
        adapted[engine_tool.name] = engine_tool
    return adapted


def _is_block(block: Any) -> bool:
    return isinstance(block, str) or (isinstance(block, dict) and "type" in block)


def _join_blocks(blocks: list[Any]) -> str:
    texts = []
    for block in blocks:
        if isinstance(block, str):
            texts.append(block)
        elif isinstance(block, dict):
            if isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif block.get("type") == "image":
                texts.append("[image]")
    return "\n".join(texts)
