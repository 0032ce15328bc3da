"""Provider-agnostic token estimates for history events.

Roughly one token per four characters of English text with a 30% buffer.
Inline media counts its base64 payload; file references only count their
URI and mime type. Callers that need exact billing must use the provider's
own tokenizer.
"""

from __future__ import annotations

import json
import math
from typing import Any, Iterable

from agentloop.errors import UnknownEventError
from agentloop.models import (
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
    ToolCall,
    ToolResult,
)

_CHARS_PER_TOKEN = 4
_TEXT_BUFFER = 1.3
_MEDIA_BUFFER = 1.1
_JSON_FALLBACK_TOKENS = 10


def _text_tokens(text: str | None) -> int:
    if not text:
        return 0
    return max(1, math.ceil(len(text) / _CHARS_PER_TOKEN * _TEXT_BUFFER))


def _json_tokens(value: Any) -> int:
    try:
        return _text_tokens(json.dumps(value))
    except (TypeError, ValueError):
        return _JSON_FALLBACK_TOKENS


def _attachment_tokens(attachments: list[MediaAttachment] | None) -> int:
    total = 0
    for attachment in attachments or []:
        if isinstance(attachment, InlineAttachment):
            total += math.ceil(len(attachment.data_base64) / _CHARS_PER_TOKEN * _MEDIA_BUFFER)
        else:
            total += _text_tokens(attachment.file_uri) + _text_tokens(attachment.mime_type)
    return total


def estimate_tokens(event: HistoryEvent) -> int:
    """Estimate how many tokens ``event`` costs a model to read."""

    if isinstance(event, (ParticipantUtterance, ParticipantEditMessage)):
        return _text_tokens(event.name) + _text_tokens(event.text) + _attachment_tokens(event.attachments) + 2
    if isinstance(event, (OwnUtterance, OwnEditMessage)):
        return _text_tokens(event.text) + _attachment_tokens(event.attachments) + 2
    if isinstance(event, ToolCall):
        return _text_tokens(event.name) + _json_tokens(event.parameters) + 4
    if isinstance(event, ToolResult):
        return (
            _text_tokens(event.name)
            + _text_tokens(event.result)
            + _attachment_tokens(event.attachments)
            + 4
        )
    if isinstance(event, OwnThought):
        return _text_tokens(event.text) + 2
    if isinstance(event, ParticipantReaction):
        return _text_tokens(event.name) + _text_tokens(event.reaction) + 2
    if isinstance(event, OwnReaction):
        return _text_tokens(event.reaction) + 2
    if isinstance(event, DoNothing):
        return 1
    raise UnknownEventError(f"Unhandled history event in token estimator: {event!r}")


def estimate_history_tokens(events: Iterable[HistoryEvent]) -> int:
    return sum(estimate_tokens(event) for event in events)
