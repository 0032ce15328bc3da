"""OpenRouter implementation of ModelCaller."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from zoneinfo import ZoneInfo

import httpx

from agentloop.config import Settings, require_openrouter_api_key
from agentloop.errors import UnknownEventError
from agentloop.llm.base import ModelCaller, raise_for_provider_status, retry_transient
from agentloop.llm.recovery import call_with_recovery
from agentloop.llm.turns import match_tool_results
from agentloop.models import (
    DEFAULT_STAMPER,
    DoNothing,
    HistoryEvent,
    InlineAttachment,
    MediaAttachment,
    OwnEditMessage,
    OwnReaction,
    OwnThought,
    OwnUtterance,
    ParticipantEditMessage,
    ParticipantReaction,
    ParticipantUtterance,
    Stamper,
    ToolCall,
    ToolResult,
    do_nothing_event,
    own_utterance_turn,
    tool_use_turn,
)
from agentloop.tools.base import Tool
from agentloop.tools.registry import ToolRegistry
from agentloop.tools.skills import skills_catalogue

if TYPE_CHECKING:
    from agentloop.agent_runtime import AgentSpec

_LOGGER = logging.getLogger(__name__)

PROVIDER = "openrouter"
_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [5, 15, 45]


def _stamp(timestamp_ms: int, timezone_iana: str) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=ZoneInfo(timezone_iana)).strftime("%Y-%m-%d %H:%M %Z")


def _user_content(text: str, attachments: list[MediaAttachment] | None) -> str | list[dict[str, Any]]:
    images = [a for a in attachments or [] if isinstance(a, InlineAttachment) and a.mime_type.startswith("image/")]
    notes = [
        f"[Attachment ({a.mime_type}) not shown{': ' + a.caption if a.caption else ''}]"
        for a in attachments or []
        if a not in images
    ]
    text = "\n".join([text, *notes]) if notes else text
    if not images:
        return text
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for image in images:
        if image.caption:
            parts.append({"type": "text", "text": image.caption})
        parts.append(
            {"type": "image_url", "image_url": {"url": f"data:{image.mime_type};base64,{image.data_base64}"}}
        )
    return parts


def _tool_content(result: ToolResult) -> str:
    content = result.result
    for attachment in result.attachments or []:
        content += f"\n[Attachment ({attachment.mime_type}) not shown]"
    return content


def history_to_messages(prompt: str, history: list[HistoryEvent], timezone_iana: str) -> list[dict[str, Any]]:
    """Chat-completions messages; tool calls keep their event ids as call ids.

    Each batch of answered calls is followed directly by its ``tool`` messages,
    so events stored between a call and its result render after the results.
    """

    results = {
        call_id: event for event, call_id in zip(history, match_tool_results(history)) if call_id is not None
    }
    by_id = {event.id: event for event in history}
    messages: list[dict[str, Any]] = [{"role": "system", "content": prompt}]
    batch: list[ToolCall] = []

    def excerpt(message_id: str) -> str:
        target = by_id.get(message_id)
        return (getattr(target, "text", None) or "")[:100]

    def close_batch() -> None:
        if not batch:
            return
        messages.append(
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.parameters)},
                    }
                    for call in batch
                ],
            }
        )
        for call in batch:
            messages.append({"role": "tool", "tool_call_id": call.id, "content": _tool_content(results[call.id])})
        batch.clear()

    for event in history:
        if isinstance(event, ToolCall):
            if event.id not in results:
                _LOGGER.warning("Skipping unanswered tool call %s (%s)", event.id, event.name)
                continue
            batch.append(event)
            continue
        if isinstance(event, ToolResult):
            # Rendered with its call; orphans are dropped.
            continue
        close_batch()
        if isinstance(event, ParticipantUtterance):
            text = f"[{_stamp(event.timestamp, timezone_iana)}] {event.name}: {event.text}"
            messages.append({"role": "user", "content": _user_content(text, event.attachments)})
        elif isinstance(event, ParticipantEditMessage):
            text = f'[{_stamp(event.timestamp, timezone_iana)}] {event.name} edited "{excerpt(event.on_message)}" to: {event.text}'
            messages.append({"role": "user", "content": _user_content(text, event.attachments)})
        elif isinstance(event, ParticipantReaction):
            text = f"[{_stamp(event.timestamp, timezone_iana)}] {event.name} reacted: {event.reaction} to: {excerpt(event.on_message)}"
            messages.append({"role": "user", "content": text})
        elif isinstance(event, OwnUtterance):
            if event.text:
                messages.append({"role": "assistant", "content": event.text})
        elif isinstance(event, OwnEditMessage):
            messages.append({"role": "assistant", "content": f'edited "{excerpt(event.on_message)}" to: {event.text}'})
        elif isinstance(event, OwnReaction):
            messages.append(
                {"role": "assistant", "content": f"reacted: {event.reaction} to: {excerpt(event.on_message)}"}
            )
        elif isinstance(event, OwnThought):
            messages.append({"role": "assistant", "content": f"(thinking) {event.text}"})
        elif isinstance(event, DoNothing):
            continue
        else:
            raise UnknownEventError(f"Unknown history event type: {event!r}")
    close_batch()
    return messages


def response_to_events(data: dict[str, Any], stamper: Stamper = DEFAULT_STAMPER) -> list[HistoryEvent]:
    choice = data["choices"][0]["message"]
    metadata = {"provider": PROVIDER, "response_id": data.get("id")}
    events: list[HistoryEvent] = []
    content = choice.get("content") or ""
    if content.strip():
        events.append(own_utterance_turn(content, model_metadata=metadata, stamper=stamper))
    for tool_call in choice.get("tool_calls") or []:
        function_data = tool_call.get("function", {})
        events.append(
            tool_use_turn(
                function_data.get("name", ""),
                _safe_json_loads(function_data.get("arguments", "{}")),
                model_metadata=metadata,
                stamper=stamper,
            )
        )
    if not events:
        events.append(do_nothing_event(metadata, stamper=stamper))
    return events


class OpenRouterModelCaller(ModelCaller):
    """Model caller using OpenRouter's OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        settings: Settings,
        stamper: Stamper = DEFAULT_STAMPER,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._stamper = stamper
        self._sleep = sleep

    async def call_model(
        self,
        spec: AgentSpec,
        tools: list[Tool[Any]],
        history: list[HistoryEvent],
    ) -> list[HistoryEvent]:
        model = self._settings.openrouter_light_model if spec.light_model else self._settings.openrouter_model
        fallback = (
            self._settings.openrouter_model if spec.light_model else self._settings.openrouter_light_model
        )
        prompt = spec.prompt
        if spec.skills:
            prompt = f"{prompt}\n\n{skills_catalogue(spec.skills)}"
        tool_specs = ToolRegistry(tools).list_tool_specs()

        async def attempt(current: list[HistoryEvent]) -> dict[str, Any]:
            payload: dict[str, Any] = {"messages": history_to_messages(prompt, current, spec.timezone_iana)}
            if tool_specs:
                payload["tools"] = tool_specs
            if spec.max_output_tokens:
                payload["max_tokens"] = spec.max_output_tokens
            return await retry_transient(
                lambda name: self._post(name, payload),
                model,
                fallback,
                self._settings.transient_retry_attempts,
                self._settings.transient_retry_interval_seconds,
                self._sleep,
            )

        data = await call_with_recovery(
            history, attempt, spec.rewrite_history, self._settings.recovery_max_attempts
        )
        return response_to_events(data, stamper=self._stamper)

    async def _post(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        api_key = require_openrouter_api_key(self._settings)
        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.openrouter_base_url, timeout=timeout) as client:
            for attempt in range(_MAX_RETRIES + 1):
                response = await client.post(
                    "/chat/completions",
                    headers={
                        "Authorization": f"Bearer {api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"model": model, **payload},
                )
                if response.status_code == 429 and attempt < _MAX_RETRIES:
                    wait = _RETRY_BACKOFF_SECONDS[attempt]
                    _LOGGER.warning(
                        "OpenRouter rate limited (429), retrying in %ds (attempt %d/%d)",
                        wait,
                        attempt + 1,
                        _MAX_RETRIES,
                    )
                    await self._sleep(wait)
                    continue
                raise_for_provider_status(response, model)
                break
            data = response.json()

        choice = data["choices"][0]["message"]
        _LOGGER.info(
            "LLM response: finish_reason=%r content=%r tool_calls=%r",
            data["choices"][0].get("finish_reason"),
            (choice.get("content") or "")[:200],
            choice.get("tool_calls"),
        )
        return data


def _safe_json_loads(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
