"""Core agent runtime."""

from __future__ import annotations

import enum
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from agentloop.history_store import HistoryStore
from agentloop.llm.base import ModelCaller
from agentloop.models import DEFAULT_STAMPER, HistoryEvent, Stamper, ToolCall, tool_result_turn
from agentloop.tools.base import Skill, Tool
from agentloop.tools.registry import ToolRegistry, dispatch
from agentloop.tools.skills import create_skill_tools

LOGGER = logging.getLogger(__name__)


class RunOutcome(enum.Enum):
    """How a call to ``run_agent`` ended."""

    DONE = "done"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass(slots=True, kw_only=True)
class AgentSpec:
    """What the agent should do in one run."""

    tools: list[Tool[Any]]
    prompt: str
    max_iterations: int
    # Called once when the run stops because of ``max_iterations``; may be async.
    on_max_iterations_reached: Callable[[], Any]
    # Persists repaired events (keyed by id) before a provider call is retried.
    rewrite_history: Callable[[Mapping[str, HistoryEvent]], Awaitable[None]]
    timezone_iana: str
    skills: list[Skill] = field(default_factory=list)
    light_model: bool = False
    image_gen: bool = False
    max_output_tokens: int | None = None


@dataclass(slots=True, kw_only=True)
class AgentDeps:
    """Collaborators the runtime reads from and writes to."""

    get_history: Callable[[], Awaitable[list[HistoryEvent]]]
    output_event: Callable[[HistoryEvent], Awaitable[None]]
    model_caller: ModelCaller
    stamper: Stamper = DEFAULT_STAMPER
    on_history: Callable[[list[HistoryEvent]], Any] | None = None
    on_elapsed_ms: Callable[[float], Any] | None = None

    @classmethod
    def from_store(cls, store: HistoryStore, model_caller: ModelCaller, **kwargs: Any) -> AgentDeps:
        return cls(
            get_history=store.get_history,
            output_event=store.output_event,
            model_caller=model_caller,
            **kwargs,
        )


def create_all_tools(tools: list[Tool[Any]], skills: list[Skill] | None = None) -> list[Tool[Any]]:
    """Tools the model sees: plain tools plus the skill meta-tools.

    Raises ``ValueError`` when two visible tools share a name.
    """

    merged = [*tools, *(create_skill_tools(skills) if skills else [])]
    return ToolRegistry(merged).tools


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def run_agent(spec: AgentSpec, deps: AgentDeps) -> RunOutcome:
    """Call the model and run its tool calls until it has the last word.

    Each iteration re-reads history, so events appended by tool handlers
    while they ran are seen by the next model call. The run is done when
    an iteration produced no tool call and the newest event is the
    agent's own. Provider failures that survive recovery propagate; events
    already written stay in history.
    """

    all_tools = create_all_tools(spec.tools, spec.skills)
    iteration = 0
    while True:
        iteration += 1
        if iteration > spec.max_iterations:
            LOGGER.info("Stopping after %d iterations", spec.max_iterations)
            await _maybe_await(spec.on_max_iterations_reached())
            return RunOutcome.MAX_ITERATIONS_REACHED

        history = await deps.get_history()
        if deps.on_history is not None:
            await _maybe_await(deps.on_history(history))

        started = time.perf_counter()
        output = await deps.model_caller.call_model(spec, all_tools, history)
        elapsed_ms = (time.perf_counter() - started) * 1000
        LOGGER.info("Model call %d took %.0f ms, %d event(s)", iteration, elapsed_ms, len(output))
        if deps.on_elapsed_ms is not None:
            await _maybe_await(deps.on_elapsed_ms(elapsed_ms))

        for event in output:
            await deps.output_event(event)

        tool_calls = [event for event in output if isinstance(event, ToolCall)]
        for call in tool_calls:
            result = await dispatch(all_tools, call)
            await deps.output_event(
                tool_result_turn(
                    result.name,
                    result.result,
                    attachments=result.attachments,
                    tool_call_id=result.tool_call_id,
                    stamper=deps.stamper,
                )
            )

        if not tool_calls:
            latest = await deps.get_history()
            if latest and latest[-1].is_own:
                return RunOutcome.DONE
