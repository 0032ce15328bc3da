"""JSON-schema rendering for tool parameter models."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict

_DROPPED_KEYS = {"$schema", "additionalProperties", "title"}


def json_schema_for(model: type[BaseModel]) -> dict[str, Any]:
    """Plain JSON schema, as accepted by OpenAI-compatible endpoints."""

    return model.model_json_schema()


def gemini_schema_for(model: type[BaseModel]) -> dict[str, Any]:
    """Schema restricted to the OpenAPI subset Gemini accepts.

    References are inlined, nullable unions collapse to ``nullable: true``
    and keys Gemini rejects are dropped.
    """

    schema = model.model_json_schema()
    defs = schema.pop("$defs", {})
    return _simplify(schema, defs)


def _is_redundant_any_member(node: Any) -> bool:
    return isinstance(node, dict) and list(node) == ["not"] and node["not"] == {}


def _simplify(node: Any, defs: dict[str, Any]) -> Any:
    if isinstance(node, list):
        return [_simplify(item, defs) for item in node]
    if not isinstance(node, dict):
        return node

    if "$ref" in node:
        target = defs.get(node["$ref"].rsplit("/", 1)[-1], {})
        merged = {**target, **{k: v for k, v in node.items() if k != "$ref"}}
        return _simplify(merged, defs)

    out = {k: v for k, v in node.items() if k not in _DROPPED_KEYS}
    if "anyOf" in out:
        members = out.pop("anyOf")
        kept = [m for m in members if m.get("type") != "null" and not _is_redundant_any_member(m)]
        if len(kept) < len(members):
            out["nullable"] = True
        if len(kept) == 1:
            out = {**_simplify(kept[0], defs), **out}
        else:
            out["anyOf"] = kept
    if isinstance(out.get("type"), list):
        types = out["type"]
        if "null" in types:
            out["nullable"] = True
        out["type"] = next(t for t in types if t != "null")

    result: dict[str, Any] = {}
    for key, value in out.items():
        if key == "properties":
            result[key] = {name: _simplify(prop, defs) for name, prop in value.items()}
        elif key in ("default", "enum", "required"):
            result[key] = value
        else:
            result[key] = _simplify(value, defs)
    return result


@lru_cache(maxsize=None)
def strict_model(model: type[BaseModel]) -> type[BaseModel]:
    """Subclass of ``model`` that rejects unknown fields."""

    if model.model_config.get("extra") == "forbid":
        return model
    return type(
        f"Strict{model.__name__}",
        (model,),
        {"model_config": ConfigDict(extra="forbid"), "__module__": model.__module__},
    )
