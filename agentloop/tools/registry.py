"""Registry for tool registration and call dispatch."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from agentloop.errors import ToolReturnError
from agentloop.models import ToolCall
from agentloop.tools.base import TOOL_RETURN_ADAPTER, Tool, ToolOutput
from agentloop.tools.schema import gemini_schema_for, json_schema_for

LOGGER = logging.getLogger(__name__)


async def dispatch(tools: Sequence[Tool[Any]], call: ToolCall) -> ToolOutput:
    """Execute ``call`` against ``tools``.

    Unknown tools and invalid arguments are reported back as the result
    text so the model can correct itself. A handler returning something
    other than ``str`` or ``ToolReturn`` raises ``ToolReturnError``.
    """

    name = call.name
    if not name:
        raise ValueError("Function call name is missing")
    match = next((t for t in tools if t.name == name), None)
    if match is None:
        LOGGER.warning("Model called unknown tool %r", name)
        return ToolOutput(name=name, result=f"Function {name} not found", tool_call_id=call.id)

    try:
        params = match.parameters.model_validate(call.parameters or {})
    except ValidationError as exc:
        LOGGER.warning("Invalid arguments for tool %r: %s", name, exc)
        return ToolOutput(name=name, result=f"Invalid arguments: {exc.json()}", tool_call_id=call.id)

    raw = await match.handler(params)
    try:
        validated = TOOL_RETURN_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise ToolReturnError(f'Tool "{name}" handler returned invalid value: {exc}') from exc

    LOGGER.info("Tool %r executed", name)
    if isinstance(validated, str):
        return ToolOutput(name=name, result=validated, tool_call_id=call.id)
    return ToolOutput(
        name=name,
        result=validated.result,
        attachments=validated.attachments,
        tool_call_id=call.id,
    )


class ToolRegistry:
    """Tools visible to the model in one call; names must be unique."""

    def __init__(self, tools: Iterable[Tool[Any]] = ()) -> None:
        self._tools: dict[str, Tool[Any]] = {}
        for item in tools:
            self.register(item)

    def register(self, tool: Tool[Any]) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Duplicate tool name: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool[Any] | None:
        return self._tools.get(name)

    @property
    def tools(self) -> list[Tool[Any]]:
        return list(self._tools.values())

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": json_schema_for(tool.parameters),
                },
            }
            for tool in self._tools.values()
        ]

    def list_declarations(self) -> list[dict[str, Any]]:
        declarations = []
        for tool in self._tools.values():
            declaration: dict[str, Any] = {"name": tool.name, "description": tool.description}
            schema = gemini_schema_for(tool.parameters)
            # Gemini rejects object schemas without properties.
            if schema.get("properties"):
                declaration["parameters"] = schema
            declarations.append(declaration)
        return declarations

    async def execute(self, call: ToolCall) -> ToolOutput:
        return await dispatch(self.tools, call)
