"""Tool contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import BaseModel, TypeAdapter

from agentloop.models import MediaAttachment

ParamsT = TypeVar("ParamsT", bound=BaseModel)


@dataclass(slots=True)
class ToolReturn:
    """Structured handler return value: a textual result plus optional media."""

    result: str
    attachments: list[MediaAttachment] | None = None


TOOL_RETURN_ADAPTER: TypeAdapter[str | ToolReturn] = TypeAdapter(str | ToolReturn)


@dataclass(slots=True)
class Tool(Generic[ParamsT]):
    """A named function the model may call.

    ``parameters`` is a pydantic model: arguments from the model are
    validated against it and the handler receives the validated instance.
    """

    name: str
    description: str
    parameters: type[ParamsT]
    handler: Callable[[ParamsT], Awaitable[str | ToolReturn]]


@dataclass(slots=True)
class Skill:
    """A bundle of tools the model discovers through ``learn_skill``."""

    name: str
    description: str
    instructions: str
    tools: list[Tool[Any]] = field(default_factory=list)


@dataclass(slots=True)
class ToolOutput:
    """Normalized outcome of one dispatched tool call."""

    name: str
    result: str
    attachments: list[MediaAttachment] | None = None
    tool_call_id: str | None = None


def tool(
    name: str,
    description: str,
    parameters: type[ParamsT],
) -> Callable[[Callable[[ParamsT], Awaitable[str | ToolReturn]]], Tool[ParamsT]]:
    """Decorator turning an async handler into a ``Tool``."""

    def decorator(handler: Callable[[ParamsT], Awaitable[str | ToolReturn]]) -> Tool[ParamsT]:
        return Tool(name=name, description=description, parameters=parameters, handler=handler)

    return decorator
