"""Tests for abstract schema -> pydantic translation.

Tests cover:
- Object/required handling (including the path scenario)
- Leaf constraints: strings, numbers, arrays, enums, consts, unions
- Strict validation (no coercion)
- Fallback to Any with a logged warning
- Wire JSON schema emission (object root, refs inlined)
- Under-approximation against jsonschema on generated schemas
"""

import json
import logging
import random

import jsonschema
import pytest
from pydantic import ValidationError

from relay.schema import to_type_adapter, to_wire_schema, translate


def _accepts(schema, value) -> bool:
    try:
        to_type_adapter(schema).validate_python(value)
    except ValidationError:
        return False
    return True


# ---------------------------------------------------------------------------
# Objects
# ---------------------------------------------------------------------------


class TestObjects:
    def test_required_path(self):
        """{path: string} with path required accepts {path} and rejects {}."""
        schema = {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        }
        assert _accepts(schema, {"path": "/tmp"})
        assert not _accepts(schema, {})

    def test_optional_property_may_be_missing(self):
        schema = {
            "type": "object",
            "properties": {"path": {"type": "string"}, "limit": {"type": "integer"}},
            "required": ["path"],
        }
        assert _accepts(schema, {"path": "/tmp"})
        assert _accepts(schema, {"path": "/tmp", "limit": 5})
        assert not _accepts(schema, {"path": "/tmp", "limit": "5"})

    def test_nested_objects(self):
        schema = {
            "type": "object",
            "properties": {
                "options": {
                    "type": "object",
                    "properties": {"recursive": {"type": "boolean"}},
                    "required": ["recursive"],
                }
            },
            "required": ["options"],
        }
        assert _accepts(schema, {"options": {"recursive": True}})
        assert not _accepts(schema, {"options": {}})

    def test_additional_properties_false_forbids_extras(self):
        schema = {
            "type": "object",
            "properties": {"a": {"type": "string"}},
            "additionalProperties": False,
        }
        assert _accepts(schema, {"a": "x"})
        assert not _accepts(schema, {"a": "x", "b": 1})

    def test_extras_allowed_by_default(self):
        schema = {"type": "object", "properties": {"a": {"type": "string"}}}
        assert _accepts(schema, {"a": "x", "b": 1})

    def test_empty_object_accepts_any_mapping(self):
        assert _accepts({"type": "object"}, {"anything": [1, 2]})
        assert not _accepts({"type": "object"}, [1, 2])

    def test_required_key_without_property(self):
        schema = {"type": "object", "properties": {}, "required": ["id"]}
        assert _accepts(schema, {"id": 3})
        assert not _accepts(schema, {})


# ---------------------------------------------------------------------------
# Leaves
# ---------------------------------------------------------------------------


class TestLeaves:
    def test_string_length_and_pattern(self):
        schema = {"type": "string", "minLength": 2, "maxLength": 4, "pattern": "^[a-z]+$"}
        assert _accepts(schema, "abc")
        assert not _accepts(schema, "a")
        assert not _accepts(schema, "abcde")
        assert not _accepts(schema, "AB")

    def test_number_bounds(self):
        schema = {"type": "number", "minimum": 0, "exclusiveMaximum": 10}
        assert _accepts(schema, 0)
        assert _accepts(schema, 9.5)
        assert not _accepts(schema, 10)
        assert not _accepts(schema, -1)

    def test_integer_multiple_of(self):
        schema = {"type": "integer", "multipleOf": 3}
        assert _accepts(schema, 9)
        assert not _accepts(schema, 10)

    def test_strict_no_coercion(self):
        assert not _accepts({"type": "integer"}, "5")
        assert not _accepts({"type": "string"}, 5)
        assert not _accepts({"type": "boolean"}, "true")
        assert not _accepts({"type": "integer"}, True)

    def test_array_items_and_bounds(self):
        schema = {"type": "array", "items": {"type": "string"}, "minItems": 1, "maxItems": 2}
        assert _accepts(schema, ["a"])
        assert not _accepts(schema, [])
        assert not _accepts(schema, ["a", "b", "c"])
        assert not _accepts(schema, [1])

    def test_string_enum(self):
        schema = {"type": "string", "enum": ["read", "write"]}
        assert _accepts(schema, "read")
        assert not _accepts(schema, "delete")

    def test_string_const(self):
        assert _accepts({"const": "v1"}, "v1")
        assert not _accepts({"const": "v1"}, "v2")

    def test_null(self):
        assert _accepts({"type": "null"}, None)
        assert not _accepts({"type": "null"}, 0)

    def test_any_of_union(self):
        schema = {"anyOf": [{"type": "string"}, {"type": "integer"}, {"type": "null"}]}
        assert _accepts(schema, "x")
        assert _accepts(schema, 1)
        assert _accepts(schema, None)
        assert not _accepts(schema, 1.5)

    def test_one_of_disjoint_primitives(self):
        schema = {"oneOf": [{"type": "string"}, {"type": "integer"}]}
        assert _accepts(schema, "x")
        assert _accepts(schema, 1)
        assert not _accepts(schema, None)

    def test_type_list(self):
        schema = {"type": ["string", "null"]}
        assert _accepts(schema, "x")
        assert _accepts(schema, None)
        assert not _accepts(schema, 3)


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


class TestFallback:
    def test_unknown_type_widens_to_any(self, caplog):
        with caplog.at_level(logging.WARNING, logger="relay.schema"):
            adapter = to_type_adapter({"type": "date-time-ish"})
        assert adapter.validate_python(object) is object
        assert "fidelity loss" in caplog.text

    def test_non_mapping_node(self, caplog):
        with caplog.at_level(logging.WARNING, logger="relay.schema"):
            translate("string")
        assert "not a mapping" in caplog.text

    @pytest.mark.parametrize(
        "members",
        [
            [{"type": "integer"}, {"type": "number"}],
            [{"type": "string", "maxLength": 5}, {"type": "string", "minLength": 3}],
            [{"type": "object", "properties": {"a": {"type": "string"}}}, {"type": "object"}],
        ],
    )
    def test_overlapping_one_of_falls_back(self, caplog, members):
        with caplog.at_level(logging.WARNING, logger="relay.schema"):
            translate({"oneOf": members})
        assert "oneOf members may overlap" in caplog.text

    def test_non_string_enum_falls_back(self):
        assert _accepts({"enum": [1, 2]}, 99)

    def test_invalid_pattern_falls_back(self):
        assert _accepts({"type": "string", "pattern": "(unclosed"}, 42)

    def test_fallback_is_local_to_node(self):
        schema = {
            "type": "object",
            "properties": {"when": {"type": "mystery"}, "name": {"type": "string"}},
            "required": ["when", "name"],
        }
        assert _accepts(schema, {"when": [1, 2], "name": "x"})
        assert not _accepts(schema, {"when": 1, "name": 2})


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------


class TestWireSchema:
    def test_object_root_with_properties(self):
        wire = to_wire_schema({
            "type": "object",
            "properties": {"path": {"type": "string", "description": "File path"}},
            "required": ["path"],
        })
        assert wire["type"] == "object"
        assert wire["required"] == ["path"]
        assert wire["properties"]["path"]["type"] == "string"
        assert wire["properties"]["path"]["description"] == "File path"

    def test_nested_refs_inlined(self):
        wire = to_wire_schema({
            "type": "object",
            "properties": {
                "inner": {"type": "object", "properties": {"x": {"type": "integer"}}, "required": ["x"]}
            },
        })
        text = json.dumps(wire)
        assert "$ref" not in text
        assert "$defs" not in text
        assert wire["properties"]["inner"]["properties"]["x"]["type"] == "integer"

    def test_non_object_root_becomes_open_object(self):
        wire = to_wire_schema({"type": "string"})
        assert wire == {"type": "object", "properties": {}, "additionalProperties": True}

    def test_none_schema(self):
        wire = to_wire_schema(None)
        assert wire["type"] == "object"


# ---------------------------------------------------------------------------
# Under-approximation property
# ---------------------------------------------------------------------------


def _gen_schema(rng: random.Random, depth: int = 0) -> dict:
    kinds = ["string", "integer", "number", "boolean", "null", "enum", "const"]
    if depth < 3:
        kinds += ["object", "array", "anyOf"]
    kind = rng.choice(kinds)
    if kind == "string":
        node = {"type": "string"}
        if rng.random() < 0.5:
            node["minLength"] = rng.randint(0, 3)
        if rng.random() < 0.5:
            node["maxLength"] = rng.randint(3, 6)
        if rng.random() < 0.3:
            node["pattern"] = "^[a-c]*$"
        return node
    if kind in ("integer", "number"):
        node = {"type": kind}
        if rng.random() < 0.5:
            node["minimum"] = rng.randint(-5, 0)
        if rng.random() < 0.5:
            node["maximum"] = rng.randint(1, 5)
        if kind == "integer" and rng.random() < 0.3:
            node["multipleOf"] = rng.choice([2, 3])
        return node
    if kind == "boolean":
        return {"type": "boolean"}
    if kind == "null":
        return {"type": "null"}
    if kind == "enum":
        return {"type": "string", "enum": rng.sample(["a", "b", "c", "d"], rng.randint(1, 3))}
    if kind == "const":
        return {"const": rng.choice(["x", "y"])}
    if kind == "array":
        node = {"type": "array", "items": _gen_schema(rng, depth + 1)}
        if rng.random() < 0.4:
            node["maxItems"] = rng.randint(0, 3)
        return node
    if kind == "anyOf":
        return {"anyOf": [_gen_schema(rng, depth + 1) for _ in range(rng.randint(2, 3))]}
    keys = rng.sample(["a", "b", "c", "d"], rng.randint(0, 3))
    node = {"type": "object", "properties": {k: _gen_schema(rng, depth + 1) for k in keys}}
    if keys and rng.random() < 0.6:
        node["required"] = rng.sample(keys, rng.randint(1, len(keys)))
    if rng.random() < 0.3:
        node["additionalProperties"] = False
    return node


def _gen_value(rng: random.Random, schema: dict, depth: int = 0):
    """Mostly-conforming value with random corruption."""
    if rng.random() < 0.15 or depth > 4:
        return rng.choice([None, True, 0, -7, 2.5, "", "abc", "zz", [], {}, [1, "a"], {"a": 1}])
    if "anyOf" in schema:
        return _gen_value(rng, rng.choice(schema["anyOf"]), depth + 1)
    if "enum" in schema:
        return rng.choice(schema["enum"])
    if "const" in schema:
        return schema["const"]
    kind = schema.get("type")
    if kind == "string":
        return "".join(rng.choice("abcz") for _ in range(rng.randint(0, 7)))
    if kind == "integer":
        return rng.randint(-8, 8)
    if kind == "number":
        return rng.choice([rng.randint(-8, 8), rng.uniform(-8, 8)])
    if kind == "boolean":
        return rng.random() < 0.5
    if kind == "null":
        return None
    if kind == "array":
        return [_gen_value(rng, schema["items"], depth + 1) for _ in range(rng.randint(0, 4))]
    if kind == "object":
        value = {}
        for key, prop in schema.get("properties", {}).items():
            if rng.random() < 0.8:
                value[key] = _gen_value(rng, prop, depth + 1)
        if rng.random() < 0.2:
            value["extra"] = 1
        return value
    return None


class TestUnderApproximation:
    def test_accepted_values_satisfy_source_schema(self):
        """Every value the translated schema accepts is valid under jsonschema."""
        rng = random.Random(20240611)
        accepted = 0
        for _ in range(300):
            schema = _gen_schema(rng)
            adapter = to_type_adapter(schema)
            validator = jsonschema.Draft202012Validator(schema)
            for _ in range(8):
                value = _gen_value(rng, schema)
                try:
                    adapter.validate_python(value)
                except ValidationError:
                    continue
                accepted += 1
                errors = list(validator.iter_errors(value))
                assert not errors, f"schema={schema!r} value={value!r} errors={errors[0].message}"
        assert accepted > 200
