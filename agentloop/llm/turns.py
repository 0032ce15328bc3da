"""History clean-up and grouping shared by provider adapters."""

from __future__ import annotations

import logging
from typing import Iterable

from agentloop.models import HistoryEvent, ToolCall, ToolResult

LOGGER = logging.getLogger(__name__)


def model_metadata(event: HistoryEvent) -> dict | None:
    return getattr(event, "model_metadata", None)


def turn_key(event: HistoryEvent) -> str:
    """Events from one model response share its response id."""

    metadata = model_metadata(event) or {}
    return metadata.get("response_id") or event.id


def group_turns(events: Iterable[HistoryEvent]) -> list[list[HistoryEvent]]:
    """Split history into runs of consecutive events with the same turn key."""

    groups: list[list[HistoryEvent]] = []
    last_key: str | None = None
    for event in events:
        key = turn_key(event)
        if groups and key == last_key:
            groups[-1].append(event)
        else:
            groups.append([event])
        last_key = key
    return groups


def match_tool_results(events: list[HistoryEvent]) -> list[str | None]:
    """For each position in ``events``, the id of the tool call answered there.

    Non-result positions and orphaned results map to ``None``. Results
    carrying ``tool_call_id`` claim that call first. Results without one
    fall back to claiming the earliest unclaimed call with the same name
    that is not newer than the result. The fallback is a heuristic: two
    in-flight calls to one tool cannot be told apart without ids.
    """

    calls = sorted((e for e in events if isinstance(e, ToolCall)), key=lambda c: c.timestamp)
    call_ids = {call.id for call in calls}
    claimed: set[str] = set()
    matches: list[str | None] = [None] * len(events)

    for index, event in enumerate(events):
        if not isinstance(event, ToolResult) or event.tool_call_id is None:
            continue
        if event.tool_call_id in call_ids and event.tool_call_id not in claimed:
            claimed.add(event.tool_call_id)
            matches[index] = event.tool_call_id

    for index, event in enumerate(events):
        if not isinstance(event, ToolResult) or event.tool_call_id is not None:
            continue
        match = next(
            (
                call
                for call in calls
                if call.id not in claimed and call.name == event.name and call.timestamp <= event.timestamp
            ),
            None,
        )
        if match is not None:
            claimed.add(match.id)
            matches[index] = match.id
    return matches


def filter_orphaned_tool_results(events: list[HistoryEvent]) -> list[HistoryEvent]:
    """Drop tool results that answer no tool call in ``events``."""

    matches = match_tool_results(events)
    kept = [
        event
        for event, call_id in zip(events, matches)
        if not isinstance(event, ToolResult) or call_id is not None
    ]
    if len(kept) < len(events):
        LOGGER.warning("Dropped %d orphaned tool result(s) from history", len(events) - len(kept))
    return kept


def filter_unsigned_tool_calls(events: list[HistoryEvent], provider: str) -> list[HistoryEvent]:
    """Drop ``provider`` tool calls recorded with an empty thought signature.

    Such calls are rejected on replay; their results become orphans and are
    removed by ``filter_orphaned_tool_results``.
    """

    kept: list[HistoryEvent] = []
    for event in events:
        metadata = model_metadata(event) or {}
        if (
            isinstance(event, ToolCall)
            and metadata.get("provider") == provider
            and metadata.get("thought_signature") == ""
        ):
            LOGGER.warning("Dropping tool call %s (%s) with empty thought signature", event.id, event.name)
            continue
        kept.append(event)
    return kept
