"""Abstract tool-parameter schema -> pydantic type translation.

Tools declare their parameters as a JSON-schema-like dict (object,
array, string, number/integer, boolean, null, enum, const, anyOf/oneOf).
The execution engine validates tool arguments with pydantic and
declares tools on the wire with the JSON schema pydantic emits.

Contract: translation never fails. Nodes that cannot be represented
widen to ``Any`` and the fidelity loss is logged. Everything else is
translated with strict (non-coercing) validators, so the translated
schema accepts a subset of what the source schema accepts.
"""

from __future__ import annotations

import itertools
import logging
import re
from typing import Annotated, Any, Literal, Union

from pydantic import ConfigDict, Field, Strict, StringConstraints, TypeAdapter
from typing_extensions import NotRequired, TypedDict

from relay.errors import SchemaTranslationFallback

logger = logging.getLogger(__name__)

_names = itertools.count(1)

_PRIMITIVE_TYPES = frozenset({"string", "integer", "number", "boolean", "null"})
_COMPOSITE_KEYS = ("enum", "const", "anyOf", "oneOf")


def translate(schema: Any) -> Any:
    """Translate an abstract schema into a pydantic-compatible type annotation."""
    return _translate(schema, "Args")


def to_type_adapter(schema: Any) -> TypeAdapter:
    """TypeAdapter that validates tool arguments against the translated schema."""
    try:
        return TypeAdapter(translate(schema))
    except Exception as e:  # pydantic schema build errors (bad regex etc.)
        _fallback(schema, f"schema could not be built ({e})")
        return TypeAdapter(Any)


def to_wire_schema(schema: Any, adapter: TypeAdapter | None = None) -> dict[str, Any]:
    """JSON schema for a tool declaration. Always an object schema, refs inlined."""
    adapter = adapter or to_type_adapter(schema)
    try:
        wire = adapter.json_schema()
    except Exception as e:
        _fallback(schema, f"JSON schema generation failed ({e})")
        wire = {}
    wire = _inline_refs(wire, wire.get("$defs", {}))
    if wire.get("type") != "object":
        return {"type": "object", "properties": {}, "additionalProperties": True}
    return wire


# ---------------------------------------------------------------------------
# Recursive translation
# ---------------------------------------------------------------------------


def _translate(node: Any, name: str) -> Any:
    if not isinstance(node, dict):
        return _fallback(node, "schema node is not a mapping")

    description = node.get("description") if isinstance(node.get("description"), str) else None

    members = node.get("anyOf")
    if isinstance(members, list) and members:
        return _describe(_union([_translate(m, name) for m in members]), description)

    members = node.get("oneOf")
    if isinstance(members, list) and members:
        # A plain union would accept values matching several members
        if not _disjoint_primitives(members):
            return _fallback(node, "oneOf members may overlap")
        return _describe(_union([_translate(m, name) for m in members]), description)

    if isinstance(node.get("enum"), list) and node["enum"]:
        values = node["enum"]
        if all(isinstance(v, str) for v in values):
            return _describe(Literal[tuple(values)], description)
        return _fallback(node, "non-string enum values are not representable")

    if "const" in node:
        value = node["const"]
        if isinstance(value, str):
            return _describe(Literal[value], description)
        if value is None:
            return _describe(None, description)
        return _fallback(node, "non-string const values are not representable")

    node_type = node.get("type")
    if isinstance(node_type, list) and node_type:
        members = [_translate({**node, "type": t}, name) for t in node_type]
        return _union(members)

    if node_type == "object":
        return _describe(_object(node, name), description)
    if node_type == "array":
        items = node.get("items")
        item_type = _translate(items, f"{name}Item") if items is not None else Any
        constraints: dict[str, Any] = {}
        if isinstance(node.get("minItems"), int):
            constraints["min_length"] = node["minItems"]
        if isinstance(node.get("maxItems"), int):
            constraints["max_length"] = node["maxItems"]
        return Annotated[list[item_type], Strict(), Field(description=description, **constraints)]
    if node_type == "string":
        return _string(node, description)
    if node_type in ("number", "integer"):
        return _number(node, description)
    if node_type == "boolean":
        return Annotated[bool, Strict(), Field(description=description)]
    if node_type == "null":
        return None

    return _fallback(node, f"unsupported schema type {node_type!r}")


def _object(node: dict[str, Any], name: str) -> Any:
    properties = node.get("properties")
    required = [k for k in node.get("required") or [] if isinstance(k, str)]
    # Typed additionalProperties are not validated, so extra keys are refused
    closed = node.get("additionalProperties") is False or isinstance(node.get("additionalProperties"), dict)
    if not isinstance(properties, dict):
        properties = {}
    if not properties and not required:
        if closed:
            return Annotated[dict[str, Any], Strict(), Field(max_length=0)]
        return Annotated[dict[str, Any], Strict()]

    fields: dict[str, Any] = {}
    for key, prop in properties.items():
        annotation = _translate(prop, f"{name}_{_identifier(key)}")
        fields[key] = annotation if key in required else NotRequired[annotation]
    for key in required:
        fields.setdefault(key, Any)

    typed = TypedDict(f"{name}_{next(_names)}", fields)  # type: ignore[misc]
    if closed:
        typed.__pydantic_config__ = ConfigDict(extra="forbid")  # type: ignore[attr-defined]
    return typed


def _string(node: dict[str, Any], description: str | None) -> Any:
    constraints: dict[str, Any] = {}
    if isinstance(node.get("minLength"), int):
        constraints["min_length"] = node["minLength"]
    if isinstance(node.get("maxLength"), int):
        constraints["max_length"] = node["maxLength"]
    pattern = node.get("pattern")
    if isinstance(pattern, str):
        try:
            re.compile(pattern)
        except re.error:
            return _fallback(node, "invalid string pattern")
        constraints["pattern"] = pattern
    return Annotated[str, Strict(), StringConstraints(**constraints), Field(description=description)]


def _number(node: dict[str, Any], description: str | None) -> Any:
    base = int if node["type"] == "integer" else float
    bounds: dict[str, Any] = {}
    for source, target in (
        ("minimum", "ge"),
        ("maximum", "le"),
        ("exclusiveMinimum", "gt"),
        ("exclusiveMaximum", "lt"),
        ("multipleOf", "multiple_of"),
    ):
        value = node.get(source)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            bounds[target] = value
    return Annotated[base, Strict(), Field(description=description, **bounds)]


def _union(members: list[Any]) -> Any:
    if len(members) == 1:
        return members[0]
    if len(members) == 2:
        return Union[members[0], members[1]]
    return Union[tuple(members)]


def _disjoint_primitives(members: list[Any]) -> bool:
    """True when every member is a plain primitive type node and no two share a type."""
    types = []
    for member in members:
        if not isinstance(member, dict) or not isinstance(member.get("type"), str):
            return False
        if member["type"] not in _PRIMITIVE_TYPES or any(k in member for k in _COMPOSITE_KEYS):
            return False
        types.append(member["type"])
    # Every integer is also a number
    if "integer" in types and "number" in types:
        return False
    return len(set(types)) == len(types)


def _describe(annotation: Any, description: str | None) -> Any:
    if description is None:
        return annotation
    return Annotated[annotation, Field(description=description)]


def _fallback(node: Any, reason: str) -> Any:
    logger.warning("Schema fidelity loss, widened to Any: %s", SchemaTranslationFallback(node, reason))
    return Any


def _identifier(key: str) -> str:
    return re.sub(r"\W", "_", str(key)) or "field"


def _inline_refs(node: Any, defs: dict[str, Any]) -> Any:
    """Replace local $ref pointers with their definitions and drop $defs."""
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            target = defs.get(ref.split("/")[-1], {})
            merged = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
            return _inline_refs(merged, defs)
        return {k: _inline_refs(v, defs) for k, v in node.items() if k != "$defs"}
    if isinstance(node, list):
        return [_inline_refs(v, defs) for v in node]
    return node
