"""Gemini implementation of ModelCaller.

Talks to the ``generateContent`` REST endpoint. History is flattened into
alternating user/model contents; the reply's parts become history events
tagged with the response id and thought signatures Gemini needs when the
same parts are replayed on the next call.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, MutableMapping
from zoneinfo import ZoneInfo

import httpx

from agentloop.cache import make_cache
from agentloop.config import Settings, require_gemini_api_key
from agentloop.errors import UnknownEventError
from agentloop.llm.base import ModelCaller, raise_for_provider_status, retry_transient
from agentloop.llm.recovery import call_with_recovery
from agentloop.llm.turns import filter_orphaned_tool_results, filter_unsigned_tool_calls, group_turns
from agentloop.models import (
    DEFAULT_STAMPER,
    DoNothing,
    FileAttachment,
    HistoryEvent,
    InlineAttachment,
    MediaAttachment,
    ModelMetadata,
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
    own_thought_turn,
    own_utterance_turn,
    tool_use_turn,
)
from agentloop.tools.base import Tool
from agentloop.tools.registry import ToolRegistry
from agentloop.tools.skills import skills_catalogue

if TYPE_CHECKING:
    from agentloop.agent_runtime import AgentSpec

LOGGER = logging.getLogger(__name__)

PROVIDER = "gemini"
CONVERSATION_STARTED = "<conversation started>"
_EXCERPT_CHARS = 100

_SUPPORTED_MIME_PREFIXES = ("image/", "audio/", "video/", "text/")
_SUPPORTED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/json",
        "application/x-javascript",
        "application/x-python",
        "application/rtf",
    }
)

Content = dict[str, Any]
Part = dict[str, Any]


def gemini_supports(mime_type: str) -> bool:
    mime_type = mime_type.lower()
    return mime_type.startswith(_SUPPORTED_MIME_PREFIXES) or mime_type in _SUPPORTED_MIME_TYPES


def _format_timestamp(timestamp_ms: int, timezone_iana: str) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=ZoneInfo(timezone_iana))
    return moment.strftime("%Y-%m-%d %H:%M %Z")


def _excerpt(event: HistoryEvent | None) -> str:
    text = getattr(event, "text", None) or getattr(event, "result", None) or ""
    return text[:_EXCERPT_CHARS]


def _signed(part: Part, metadata: ModelMetadata | None) -> Part:
    signature = (metadata or {}).get("thought_signature")
    if signature:
        part["thoughtSignature"] = signature
    return part


def attachment_parts(attachments: list[MediaAttachment] | None) -> list[Part]:
    parts: list[Part] = []
    for attachment in attachments or []:
        if not gemini_supports(attachment.mime_type):
            parts.append({"text": f"[Attachment omitted: unsupported type {attachment.mime_type}]"})
            continue
        if attachment.caption:
            parts.append({"text": attachment.caption})
        if isinstance(attachment, InlineAttachment):
            parts.append({"inlineData": {"mimeType": attachment.mime_type, "data": attachment.data_base64}})
        else:
            parts.append({"fileData": {"mimeType": attachment.mime_type, "fileUri": attachment.file_uri}})
    return parts


def event_to_content(
    event: HistoryEvent,
    by_id: dict[str, HistoryEvent],
    timezone_iana: str,
) -> Content | None:
    """Gemini content for one event, or ``None`` when it has nothing to say."""

    if isinstance(event, ParticipantUtterance):
        header = f"[{_format_timestamp(event.timestamp, timezone_iana)}] {event.name}: {event.text}"
        return {"role": "user", "parts": [{"text": header}, *attachment_parts(event.attachments)]}
    if isinstance(event, ParticipantEditMessage):
        target = _excerpt(by_id.get(event.on_message))
        header = (
            f"[{_format_timestamp(event.timestamp, timezone_iana)}] {event.name} edited "
            f'"{target}" to: {event.text}'
        )
        return {"role": "user", "parts": [{"text": header}, *attachment_parts(event.attachments)]}
    if isinstance(event, ParticipantReaction):
        target = _excerpt(by_id.get(event.on_message))
        header = (
            f"[{_format_timestamp(event.timestamp, timezone_iana)}] {event.name} "
            f"reacted: {event.reaction} to: {target}"
        )
        return {"role": "user", "parts": [{"text": header}]}
    if isinstance(event, OwnUtterance):
        parts = [_signed({"text": event.text}, event.model_metadata)] if event.text else []
        parts.extend(attachment_parts(event.attachments))
        return {"role": "model", "parts": parts} if parts else None
    if isinstance(event, OwnEditMessage):
        target = _excerpt(by_id.get(event.on_message))
        text = f'edited "{target}" to: {event.text}'
        return {
            "role": "model",
            "parts": [_signed({"text": text}, event.model_metadata), *attachment_parts(event.attachments)],
        }
    if isinstance(event, OwnReaction):
        text = f"reacted: {event.reaction} to: {_excerpt(by_id.get(event.on_message))}"
        return {"role": "model", "parts": [_signed({"text": text}, event.model_metadata)]}
    if isinstance(event, ToolCall):
        part = {"functionCall": {"name": event.name, "args": event.parameters}}
        return {"role": "model", "parts": [_signed(part, event.model_metadata)]}
    if isinstance(event, ToolResult):
        part = {"functionResponse": {"name": event.name, "response": {"result": event.result}}}
        return {"role": "user", "parts": [part, *attachment_parts(event.attachments)]}
    if isinstance(event, OwnThought):
        if not event.text:
            return None
        return {"role": "model", "parts": [_signed({"text": f"(thinking) {event.text}"}, event.model_metadata)]}
    if isinstance(event, DoNothing):
        return None
    raise UnknownEventError(f"Unknown history event type: {event!r}")


def history_to_contents(history: list[HistoryEvent], timezone_iana: str) -> list[Content]:
    """Contents for ``history``, one per run of same-role turns.

    The list always opens with a participant turn; a placeholder is added
    when the real history opens with the model or a tool.
    """

    events = filter_orphaned_tool_results(filter_unsigned_tool_calls(history, PROVIDER))
    by_id = {event.id: event for event in events}
    contents: list[Content] = []
    for turn in group_turns(events):
        for event in turn:
            content = event_to_content(event, by_id, timezone_iana)
            if content is None:
                continue
            if contents and contents[-1]["role"] == content["role"]:
                contents[-1]["parts"].extend(content["parts"])
            else:
                contents.append(content)

    if not contents or contents[0]["role"] != "user" or "functionResponse" in contents[0]["parts"][0]:
        contents.insert(0, {"role": "user", "parts": [{"text": CONVERSATION_STARTED}]})
    return contents


def build_request(spec: AgentSpec, tools: list[Tool[Any]], history: list[HistoryEvent]) -> dict[str, Any]:
    system = spec.prompt
    if spec.skills:
        system = f"{system}\n\n{skills_catalogue(spec.skills)}"
    request: dict[str, Any] = {
        "systemInstruction": {"parts": [{"text": system}]},
        "contents": history_to_contents(history, spec.timezone_iana),
    }
    declarations = ToolRegistry(tools).list_declarations()
    if declarations:
        request["tools"] = [{"functionDeclarations": declarations}]
    generation_config: dict[str, Any] = {}
    if spec.max_output_tokens:
        generation_config["maxOutputTokens"] = spec.max_output_tokens
    if spec.image_gen:
        generation_config["responseModalities"] = ["TEXT", "IMAGE"]
    if generation_config:
        request["generationConfig"] = generation_config
    return request


def response_to_events(data: dict[str, Any], stamper: Stamper = DEFAULT_STAMPER) -> list[HistoryEvent]:
    """History events for a ``generateContent`` response.

    Consecutive text and media parts form one utterance. A response with
    neither a tool call nor any text or media yields a single
    ``DoNothing`` so the turn is still recorded.
    """

    response_id = data.get("responseId")
    candidates = data.get("candidates") or []
    parts: list[Part] = []
    if candidates:
        parts = (candidates[0].get("content") or {}).get("parts") or []
    else:
        LOGGER.warning("Gemini returned no candidates: %r", data.get("promptFeedback"))

    events: list[HistoryEvent] = []
    texts: list[str] = []
    attachments: list[MediaAttachment] = []
    utterance_metadata: ModelMetadata | None = None
    carried_metadata: ModelMetadata | None = None

    def metadata_for(part: Part) -> ModelMetadata:
        return {"provider": PROVIDER, "response_id": response_id, "thought_signature": part.get("thoughtSignature")}

    def flush() -> None:
        nonlocal texts, attachments, utterance_metadata
        text = "".join(texts)
        if text.strip() or attachments:
            events.append(own_utterance_turn(text, attachments or None, utterance_metadata, stamper=stamper))
        texts, attachments, utterance_metadata = [], [], None

    for part in parts:
        metadata = metadata_for(part)
        if carried_metadata is None or (metadata["thought_signature"] and not carried_metadata["thought_signature"]):
            carried_metadata = metadata
        if "functionCall" in part:
            flush()
            call = part["functionCall"]
            events.append(tool_use_turn(call.get("name", ""), call.get("args") or {}, metadata, stamper=stamper))
            continue
        if part.get("thought"):
            flush()
            if part.get("text"):
                events.append(own_thought_turn(part["text"], metadata, stamper=stamper))
            continue
        if "inlineData" in part:
            inline = part["inlineData"]
            attachments.append(InlineAttachment(mime_type=inline["mimeType"], data_base64=inline["data"]))
        elif "fileData" in part:
            file_data = part["fileData"]
            attachments.append(FileAttachment(mime_type=file_data["mimeType"], file_uri=file_data["fileUri"]))
        elif part.get("text"):
            texts.append(part["text"])
        if utterance_metadata is None or (metadata["thought_signature"] and not utterance_metadata["thought_signature"]):
            utterance_metadata = metadata
    flush()

    if not any(isinstance(event, (ToolCall, OwnUtterance)) for event in events):
        if carried_metadata is None:
            carried_metadata = {"provider": PROVIDER, "response_id": response_id, "thought_signature": None}
        events.append(do_nothing_event(carried_metadata, stamper=stamper))
    return events


class GeminiModelCaller(ModelCaller):
    """Reference model caller with history repair for rejected attachments."""

    def __init__(
        self,
        settings: Settings,
        cache_store: MutableMapping[str, Any] | None = None,
        stamper: Stamper = DEFAULT_STAMPER,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._stamper = stamper
        self._sleep = sleep
        self._generate = make_cache("gemini generateContent v1", cache_store)(self._post_generate)

    def select_model(self, spec: AgentSpec) -> str:
        if spec.image_gen:
            return self._settings.gemini_image_model
        if spec.light_model:
            return self._settings.gemini_flash_model
        return self._settings.gemini_pro_model

    def fallback_model(self, model: str) -> str | None:
        pairs = {
            self._settings.gemini_pro_model: self._settings.gemini_flash_model,
            self._settings.gemini_flash_model: self._settings.gemini_pro_model,
        }
        return pairs.get(model)

    async def call_model(
        self,
        spec: AgentSpec,
        tools: list[Tool[Any]],
        history: list[HistoryEvent],
    ) -> list[HistoryEvent]:
        model = self.select_model(spec)

        async def attempt(current: list[HistoryEvent]) -> dict[str, Any]:
            request = build_request(spec, tools, current)
            return await retry_transient(
                lambda name: self._generate(name, request),
                model,
                self.fallback_model(model),
                self._settings.transient_retry_attempts,
                self._settings.transient_retry_interval_seconds,
                self._sleep,
            )

        data = await call_with_recovery(
            history, attempt, spec.rewrite_history, self._settings.recovery_max_attempts
        )
        return response_to_events(data, stamper=self._stamper)

    async def _post_generate(self, model: str, request: dict[str, Any]) -> dict[str, Any]:
        api_key = require_gemini_api_key(self._settings)
        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        async with httpx.AsyncClient(base_url=self._settings.gemini_base_url, timeout=timeout) as client:
            response = await client.post(
                f"/models/{model}:generateContent",
                headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                json=request,
            )
            raise_for_provider_status(response, model)
            data = response.json()

        candidates = data.get("candidates") or [{}]
        LOGGER.info(
            "Gemini response: model=%s finish_reason=%r usage=%r",
            model,
            candidates[0].get("finishReason"),
            data.get("usageMetadata"),
        )
        return data
