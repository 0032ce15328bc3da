"""Repair history after a provider rejects content it references.

A provider may refuse a request because an uploaded file expired, is still
processing, is not accessible, or has a mime type it cannot ingest. The
offending attachments are replaced by a short text note on the event that
carried them. Replacements are persisted through ``rewrite_history`` before
the request is retried, and they accumulate across attempts.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Mapping, TypeVar

from agentloop.errors import ProviderError
from agentloop.models import (
    ATTACHMENT_EVENT_TYPES,
    FileAttachment,
    HistoryEvent,
    MediaAttachment,
    ToolResult,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
RewriteHistory = Callable[[Mapping[str, HistoryEvent]], Awaitable[None]]

_NOT_ACTIVE_RE = re.compile(r"not in an? active state|still processing", re.IGNORECASE)
_EXPIRED_RE = re.compile(r"expired", re.IGNORECASE)
_FORBIDDEN_RE = re.compile(r"permission|forbidden|may not exist", re.IGNORECASE)
_FILE_MENTION_RE = re.compile(r"\bfiles?\b", re.IGNORECASE)
_FILE_PATH_ID_RE = re.compile(r"\bfiles/([a-z0-9][a-z0-9-]*)", re.IGNORECASE)
_FILE_WORD_ID_RE = re.compile(r"\bFile\s+([a-z0-9][a-z0-9-]*)", re.IGNORECASE)
_MIME_RE = re.compile(
    r"(?:unsupported mime type|mime type)\W*([a-z0-9.+-]+/[a-z0-9.+-]+)", re.IGNORECASE
)
_UNSUPPORTED_RE = re.compile(r"unsupported|not supported", re.IGNORECASE)


class FailureKind(enum.Enum):
    TRANSIENT = "transient"
    FILE_NOT_ACTIVE = "file_not_active"
    FILE_EXPIRED = "file_expired"
    FILE_FORBIDDEN = "file_forbidden"
    UNSUPPORTED_MIME_TYPE = "unsupported_mime_type"
    UNRECOVERABLE = "unrecoverable"


FILE_FAILURES = frozenset(
    {FailureKind.FILE_NOT_ACTIVE, FailureKind.FILE_EXPIRED, FailureKind.FILE_FORBIDDEN}
)

_FILE_NOTES = {
    FailureKind.FILE_NOT_ACTIVE: "file still processing",
    FailureKind.FILE_EXPIRED: "file expired",
    FailureKind.FILE_FORBIDDEN: "file not accessible",
}


@dataclass(frozen=True, slots=True)
class Failure:
    kind: FailureKind
    file_id: str | None = None
    mime_type: str | None = None


def _extract_file_id(message: str) -> str | None:
    for pattern in (_FILE_PATH_ID_RE, _FILE_WORD_ID_RE):
        for match in pattern.finditer(message):
            candidate = match.group(1)
            # Real ids mix letters and digits; this skips words like "File is".
            if any(ch.isdigit() for ch in candidate):
                return candidate
    return None


def classify(error: ProviderError) -> Failure:
    """Map a provider error onto the repair that can fix it."""

    message = error.message
    if error.is_transient:
        return Failure(FailureKind.TRANSIENT)
    mime = _MIME_RE.search(message)
    if mime and _UNSUPPORTED_RE.search(message):
        return Failure(FailureKind.UNSUPPORTED_MIME_TYPE, mime_type=mime.group(1).lower())
    if _FILE_MENTION_RE.search(message):
        file_id = _extract_file_id(message)
        if _NOT_ACTIVE_RE.search(message):
            return Failure(FailureKind.FILE_NOT_ACTIVE, file_id=file_id)
        if _EXPIRED_RE.search(message):
            return Failure(FailureKind.FILE_EXPIRED, file_id=file_id)
        if error.status_code == 403 or _FORBIDDEN_RE.search(message):
            return Failure(FailureKind.FILE_FORBIDDEN, file_id=file_id)
    return Failure(FailureKind.UNRECOVERABLE)


def _append_note(text: str, note: str) -> str:
    return f"{text}\n{note}" if text else note


def _describe(attachment: MediaAttachment, reason: str) -> str:
    note = f"[Attachment removed ({attachment.mime_type}): {reason}]"
    if attachment.caption:
        note = f"{note} Caption: {attachment.caption}"
    return note


def strip_attachments(
    history: list[HistoryEvent],
    should_strip: Callable[[MediaAttachment], bool],
    reason: str,
) -> dict[str, HistoryEvent]:
    """Replacement events with matching attachments swapped for notes."""

    replacements: dict[str, HistoryEvent] = {}
    for event in history:
        if not isinstance(event, ATTACHMENT_EVENT_TYPES) or not event.attachments:
            continue
        removed = [a for a in event.attachments if should_strip(a)]
        if not removed:
            continue
        kept = [a for a in event.attachments if not should_strip(a)]
        note = "\n".join(_describe(a, reason) for a in removed)
        if isinstance(event, ToolResult):
            repaired = replace(event, attachments=kept or None, result=_append_note(event.result, note))
        else:
            repaired = replace(event, attachments=kept or None, text=_append_note(event.text, note))
        replacements[event.id] = repaired
    return replacements


def _references_file(attachment: MediaAttachment, file_id: str) -> bool:
    return isinstance(attachment, FileAttachment) and file_id in attachment.file_uri.split("/")


def repair(failure: Failure, history: list[HistoryEvent]) -> dict[str, HistoryEvent]:
    """Replacements that remove the cause of ``failure`` from ``history``."""

    if failure.kind == FailureKind.UNSUPPORTED_MIME_TYPE and failure.mime_type:
        mime_type = failure.mime_type
        return strip_attachments(
            history,
            lambda a: a.mime_type.lower() == mime_type,
            f"unsupported type {mime_type}",
        )
    if failure.kind in FILE_FAILURES:
        reason = _FILE_NOTES[failure.kind]
        if failure.file_id:
            file_id = failure.file_id
            replacements = strip_attachments(history, lambda a: _references_file(a, file_id), reason)
            if replacements:
                return replacements
            LOGGER.warning("File %s not referenced in history; stripping all file attachments", file_id)
        return strip_attachments(history, lambda a: isinstance(a, FileAttachment), reason)
    return {}


def apply_replacements(
    history: list[HistoryEvent], replacements: Mapping[str, HistoryEvent]
) -> list[HistoryEvent]:
    return [replacements.get(event.id, event) for event in history]


async def call_with_recovery(
    history: list[HistoryEvent],
    call: Callable[[list[HistoryEvent]], Awaitable[T]],
    rewrite_history: RewriteHistory,
    max_attempts: int,
) -> T:
    """Run ``call`` on ``history``, repairing and retrying known failures.

    Transient errors are expected to be retried inside ``call`` and are
    re-raised here, as is anything unrecognised, a repair that changes
    nothing, or a failure on the last of ``max_attempts`` calls.
    """

    working = list(history)
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call(working)
        except ProviderError as exc:
            failure = classify(exc)
            if failure.kind in (FailureKind.TRANSIENT, FailureKind.UNRECOVERABLE) or attempt >= max_attempts:
                raise
            replacements = repair(failure, working)
            if not replacements:
                raise
            LOGGER.warning(
                "Provider rejected history (%s); repairing %d event(s), attempt %d/%d",
                failure.kind.value,
                len(replacements),
                attempt,
                max_attempts,
            )
            await rewrite_history(replacements)
            working = apply_replacements(working, replacements)
