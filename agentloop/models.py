"""History events and media attachments shared across layers.

Every conversation turn is one immutable event. Events produced by the
model carry opaque ``model_metadata`` so that a provider adapter can fold
several events back into the single response that produced them.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Literal

from pydantic import Field, TypeAdapter

MessageId = str
ModelMetadata = dict[str, Any]


@dataclass(frozen=True, slots=True, kw_only=True)
class InlineAttachment:
    """Media carried inline as base64."""

    mime_type: str
    data_base64: str
    caption: str | None = None
    kind: Literal["inline"] = "inline"


@dataclass(frozen=True, slots=True, kw_only=True)
class FileAttachment:
    """Media uploaded to the provider and referenced by URI."""

    mime_type: str
    file_uri: str
    caption: str | None = None
    kind: Literal["file"] = "file"


MediaAttachment = Annotated[InlineAttachment | FileAttachment, Field(discriminator="kind")]


@dataclass(frozen=True, slots=True, kw_only=True)
class _Event:
    id: MessageId
    timestamp: int


@dataclass(frozen=True, slots=True, kw_only=True)
class ParticipantUtterance(_Event):
    name: str
    text: str
    attachments: list[MediaAttachment] | None = None
    is_own: Literal[False] = False
    type: Literal["participant_utterance"] = "participant_utterance"


@dataclass(frozen=True, slots=True, kw_only=True)
class OwnUtterance(_Event):
    text: str
    attachments: list[MediaAttachment] | None = None
    model_metadata: ModelMetadata | None = None
    is_own: Literal[True] = True
    type: Literal["own_utterance"] = "own_utterance"


@dataclass(frozen=True, slots=True, kw_only=True)
class ParticipantEditMessage(_Event):
    name: str
    text: str
    on_message: MessageId
    attachments: list[MediaAttachment] | None = None
    is_own: Literal[False] = False
    type: Literal["participant_edit_message"] = "participant_edit_message"


@dataclass(frozen=True, slots=True, kw_only=True)
class OwnEditMessage(_Event):
    text: str
    on_message: MessageId
    attachments: list[MediaAttachment] | None = None
    model_metadata: ModelMetadata | None = None
    is_own: Literal[True] = True
    type: Literal["own_edit_message"] = "own_edit_message"


@dataclass(frozen=True, slots=True, kw_only=True)
class ParticipantReaction(_Event):
    name: str
    reaction: str
    on_message: MessageId
    is_own: Literal[False] = False
    type: Literal["participant_reaction"] = "participant_reaction"


@dataclass(frozen=True, slots=True, kw_only=True)
class OwnReaction(_Event):
    reaction: str
    on_message: MessageId
    model_metadata: ModelMetadata | None = None
    is_own: Literal[True] = True
    type: Literal["own_reaction"] = "own_reaction"


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolCall(_Event):
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    model_metadata: ModelMetadata | None = None
    is_own: Literal[True] = True
    type: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolResult(_Event):
    name: str
    result: str
    attachments: list[MediaAttachment] | None = None
    tool_call_id: str | None = None
    is_own: Literal[True] = True
    type: Literal["tool_result"] = "tool_result"


@dataclass(frozen=True, slots=True, kw_only=True)
class OwnThought(_Event):
    """Private reasoning: hidden from participants, replayed to the model."""

    text: str
    model_metadata: ModelMetadata | None = None
    is_own: Literal[True] = True
    type: Literal["own_thought"] = "own_thought"


@dataclass(frozen=True, slots=True, kw_only=True)
class DoNothing(_Event):
    """The model chose not to respond."""

    model_metadata: ModelMetadata | None = None
    is_own: Literal[True] = True
    type: Literal["do_nothing"] = "do_nothing"


HistoryEvent = (
    ParticipantUtterance
    | OwnUtterance
    | ParticipantEditMessage
    | OwnEditMessage
    | ParticipantReaction
    | OwnReaction
    | ToolCall
    | ToolResult
    | OwnThought
    | DoNothing
)


# Variants that may hold media, i.e. the targets of attachment repairs.
ATTACHMENT_EVENT_TYPES: tuple[type, ...] = (
    ParticipantUtterance,
    OwnUtterance,
    ParticipantEditMessage,
    OwnEditMessage,
    ToolResult,
)

HISTORY_EVENT_ADAPTER: TypeAdapter[HistoryEvent] = TypeAdapter(
    Annotated[HistoryEvent, Field(discriminator="type")]
)
HISTORY_ADAPTER: TypeAdapter[list[HistoryEvent]] = TypeAdapter(
    list[Annotated[HistoryEvent, Field(discriminator="type")]]
)


def dump_event(event: HistoryEvent) -> dict[str, Any]:
    return HISTORY_EVENT_ADAPTER.dump_python(event, mode="json")


def load_event(data: dict[str, Any] | str) -> HistoryEvent:
    if isinstance(data, str):
        return HISTORY_EVENT_ADAPTER.validate_json(data)
    return HISTORY_EVENT_ADAPTER.validate_python(data)


def _new_id() -> MessageId:
    return str(uuid.uuid4())


def _now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class Stamper:
    """Source of event ids and timestamps, swappable in tests."""

    id_factory: Callable[[], MessageId] = _new_id
    clock: Callable[[], int] = _now_millis

    def stamp(self) -> dict[str, Any]:
        return {"id": self.id_factory(), "timestamp": self.clock()}


DEFAULT_STAMPER = Stamper()


def participant_utterance_turn(
    name: str,
    text: str,
    attachments: list[MediaAttachment] | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> ParticipantUtterance:
    return ParticipantUtterance(name=name, text=text, attachments=attachments, **stamper.stamp())


def own_utterance_turn(
    text: str,
    attachments: list[MediaAttachment] | None = None,
    model_metadata: ModelMetadata | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> OwnUtterance:
    return OwnUtterance(text=text, attachments=attachments, model_metadata=model_metadata, **stamper.stamp())


def participant_edit_message_turn(
    name: str,
    text: str,
    on_message: MessageId,
    attachments: list[MediaAttachment] | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> ParticipantEditMessage:
    return ParticipantEditMessage(
        name=name, text=text, on_message=on_message, attachments=attachments, **stamper.stamp()
    )


def own_edit_message_turn(
    text: str,
    on_message: MessageId,
    attachments: list[MediaAttachment] | None = None,
    model_metadata: ModelMetadata | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> OwnEditMessage:
    return OwnEditMessage(
        text=text,
        on_message=on_message,
        attachments=attachments,
        model_metadata=model_metadata,
        **stamper.stamp(),
    )


def participant_reaction_turn(
    name: str, reaction: str, on_message: MessageId, stamper: Stamper = DEFAULT_STAMPER
) -> ParticipantReaction:
    return ParticipantReaction(name=name, reaction=reaction, on_message=on_message, **stamper.stamp())


def own_reaction_turn(
    reaction: str,
    on_message: MessageId,
    model_metadata: ModelMetadata | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> OwnReaction:
    return OwnReaction(reaction=reaction, on_message=on_message, model_metadata=model_metadata, **stamper.stamp())


def tool_use_turn(
    name: str,
    parameters: dict[str, Any] | None = None,
    model_metadata: ModelMetadata | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> ToolCall:
    return ToolCall(name=name, parameters=parameters or {}, model_metadata=model_metadata, **stamper.stamp())


def tool_result_turn(
    name: str,
    result: str,
    attachments: list[MediaAttachment] | None = None,
    tool_call_id: str | None = None,
    stamper: Stamper = DEFAULT_STAMPER,
) -> ToolResult:
    return ToolResult(
        name=name, result=result, attachments=attachments, tool_call_id=tool_call_id, **stamper.stamp()
    )


def own_thought_turn(
    text: str, model_metadata: ModelMetadata | None = None, stamper: Stamper = DEFAULT_STAMPER
) -> OwnThought:
    return OwnThought(text=text, model_metadata=model_metadata, **stamper.stamp())


def do_nothing_event(model_metadata: ModelMetadata | None = None, stamper: Stamper = DEFAULT_STAMPER) -> DoNothing:
    return DoNothing(model_metadata=model_metadata, **stamper.stamp())
