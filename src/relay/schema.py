"""Tool schema cleanup for upstreams with a restricted JSON-Schema dialect.

The gemini-mode upstream rejects schema combinators and reference keywords.
``sanitize_schema`` rewrites a schema into the subset it accepts:

* ``anyOf``/``oneOf`` collapse to their first alternative. The choice is
  lossy but deterministic; alternatives that only say ``{"type": "null"}`` are
  skipped so ``Optional[X]`` style schemas keep the ``X`` shape.
* ``allOf`` members are merged in order into the node that holds them.
* ``$ref``, ``$defs``, ``definitions`` and ``$schema`` are dropped.

Property names are data, not keywords: a parameter called ``definitions`` or
``anyOf`` survives, and only its own schema is rewritten.

The input is never modified; a fresh structure is returned.
"""

import copy
from dataclasses import replace
from typing import Any, Mapping

from .types import Tool

_COLLAPSE_KEYS = ("anyOf", "oneOf")
_DROPPED_KEYS = frozenset({"$ref", "$defs", "definitions", "$schema"})
# Values under these keys map user-chosen names to schemas, not keywords to values.
_NAMED_SCHEMA_KEYS = frozenset({"properties", "patternProperties"})
# Instance data; copied through untouched.
_LITERAL_KEYS = frozenset({"enum", "const", "default", "examples"})


def _first_alternative(alternatives: Any) -> Mapping[str, Any] | None:
    if not isinstance(alternatives, list):
        return None
    candidates = [alt for alt in alternatives if isinstance(alt, Mapping)]
    for alt in candidates:
        if alt.get("type") != "null":
            return alt
    return candidates[0] if candidates else None


def _merge(target: dict[str, Any], source: Mapping[str, Any]) -> None:
    for key, value in source.items():
        if key == "properties" and isinstance(value, Mapping):
            props = target.setdefault("properties", {})
            if isinstance(props, dict):
                for name, prop in value.items():
                    props.setdefault(name, prop)
            continue
        if key == "required" and isinstance(value, list):
            existing = target.setdefault("required", [])
            if isinstance(existing, list):
                for item in value:
                    if item not in existing:
                        existing.append(item)
            continue
        target.setdefault(key, value)


def _sanitize(node: Any) -> Any:
    if isinstance(node, list):
        return [_sanitize(item) for item in node]
    if not isinstance(node, Mapping):
        return node

    flattened: dict[str, Any] = {}
    for key, value in node.items():
        if key in _DROPPED_KEYS or key in _COLLAPSE_KEYS or key == "allOf":
            continue
        # _merge extends these in place, so they must not alias the caller's objects.
        if isinstance(value, Mapping):
            value = dict(value)
        elif isinstance(value, list):
            value = list(value)
        flattened[key] = value
    all_of = node.get("allOf")
    if isinstance(all_of, list):
        for member in all_of:
            if isinstance(member, Mapping):
                _merge(flattened, _sanitize(member))
    for key in _COLLAPSE_KEYS:
        chosen = _first_alternative(node.get(key))
        if chosen is not None:
            _merge(flattened, _sanitize(chosen))

    # A merged member may itself have carried combinators; sanitize the result.
    return {key: _sanitize_keyword(key, value) for key, value in flattened.items()}


def _sanitize_keyword(key: str, value: Any) -> Any:
    if key in _NAMED_SCHEMA_KEYS and isinstance(value, Mapping):
        return {name: _sanitize(schema) for name, schema in value.items()}
    if key in _LITERAL_KEYS:
        return copy.deepcopy(value)
    return _sanitize(value)


def sanitize_schema(schema: Mapping[str, Any] | None) -> dict[str, Any]:
    if not schema:
        return {"type": "object", "properties": {}}
    cleaned = _sanitize(schema)
    if not isinstance(cleaned, dict):  # pragma: no cover - Mapping in, dict out
        raise TypeError("tool schema must be a mapping")
    return cleaned


def sanitize_tool(tool: Tool) -> Tool:
    return replace(tool, input_schema=sanitize_schema(tool.input_schema))


def contains_combinator(schema: Any) -> bool:
    if isinstance(schema, list):
        return any(contains_combinator(item) for item in schema)
    if isinstance(schema, Mapping):
        if any(key in schema for key in ("anyOf", "allOf", "oneOf")):
            return True
        for key, value in schema.items():
            if key in _LITERAL_KEYS:
                continue
            if key in _NAMED_SCHEMA_KEYS and isinstance(value, Mapping):
                value = list(value.values())
            if contains_combinator(value):
                return True
        return False
    return False
