import dataclasses
import sqlite3

import pytest

from agentloop.config import Settings
from agentloop.history_store import InMemoryHistoryStore, SqliteHistoryStore
from agentloop.models import (
    FileAttachment,
    OwnThought,
    ParticipantUtterance,
    ToolCall,
    own_utterance_turn,
    participant_utterance_turn,
    tool_use_turn,
)


def _store(tmp_path, conversation_id="group-1") -> SqliteHistoryStore:
    store = SqliteHistoryStore(tmp_path / "history.db", conversation_id)
    store.initialize()
    return store


@pytest.mark.asyncio
async def test_sqlite_store_round_trips_events_in_order(tmp_path):
    store = _store(tmp_path)
    events = [
        participant_utterance_turn(
            "alice",
            "hello",
            attachments=[FileAttachment(mime_type="video/mp4", file_uri="files/abc123")],
        ),
        tool_use_turn("lookup", {"q": "x"}, {"provider": "gemini", "response_id": "r1"}),
        own_utterance_turn("hi"),
    ]
    for event in events:
        await store.output_event(event)

    history = await store.get_history()

    assert history == events
    assert isinstance(history[1], ToolCall)


@pytest.mark.asyncio
async def test_sqlite_rewrite_replaces_by_id_in_place(tmp_path):
    store = _store(tmp_path)
    first = participant_utterance_turn("alice", "one")
    second = participant_utterance_turn("alice", "two")
    await store.output_event(first)
    await store.output_event(second)

    repaired = dataclasses.replace(first, text="one\n[Attachment removed]")
    await store.rewrite_history({first.id: repaired, "unknown-id": repaired})

    history = await store.get_history()
    assert [e.text for e in history] == ["one\n[Attachment removed]", "two"]
    assert [e.id for e in history] == [first.id, second.id]


@pytest.mark.asyncio
async def test_sqlite_conversations_are_isolated(tmp_path):
    group_1 = _store(tmp_path, "group-1")
    group_2 = SqliteHistoryStore(tmp_path / "history.db", "group-2")
    await group_1.output_event(participant_utterance_turn("alice", "hello"))
    await group_2.output_event(participant_utterance_turn("bob", "hey"))

    group_1.clear_history()

    assert await group_1.get_history() == []
    assert [e.text for e in await group_2.get_history()] == ["hey"]


def test_sqlite_initialize_is_idempotent(tmp_path):
    store = _store(tmp_path)
    store.initialize()

    with sqlite3.connect(tmp_path / "history.db") as conn:
        versions = conn.execute("SELECT version FROM schema_version").fetchall()
    assert versions == [(1,)]


def test_sqlite_initialize_rejects_unknown_schema_version(tmp_path):
    _store(tmp_path)
    with sqlite3.connect(tmp_path / "history.db") as conn:
        conn.execute("UPDATE schema_version SET version = 99")

    with pytest.raises(RuntimeError):
        SqliteHistoryStore(tmp_path / "history.db", "group-1").initialize()


@pytest.mark.asyncio
async def test_sqlite_store_from_settings_uses_configured_path(tmp_path):
    settings = Settings(HISTORY_DATABASE_PATH=str(tmp_path / "configured.db"))
    store = SqliteHistoryStore.from_settings(settings, "group-1")
    store.initialize()

    await store.output_event(participant_utterance_turn("alice", "hello"))

    assert (tmp_path / "configured.db").exists()
    reopened = SqliteHistoryStore(tmp_path / "configured.db", "group-1")
    assert [e.text for e in await reopened.get_history()] == ["hello"]


@pytest.mark.asyncio
async def test_sqlite_rejects_duplicate_event_ids(tmp_path):
    store = _store(tmp_path)
    event = participant_utterance_turn("alice", "hello")
    await store.output_event(event)

    with pytest.raises(sqlite3.IntegrityError):
        await store.output_event(event)


@pytest.mark.asyncio
async def test_in_memory_store_shares_its_list():
    events = [ParticipantUtterance(id="u1", timestamp=0, name="alice", text="hi")]
    store = InMemoryHistoryStore(events)

    await store.output_event(OwnThought(id="th1", timestamp=1, text="hmm"))
    snapshot = await store.get_history()
    events.append(ParticipantUtterance(id="u2", timestamp=2, name="alice", text="again"))

    assert [e.id for e in snapshot] == ["u1", "th1"]
    assert [e.id for e in await store.get_history()] == ["u1", "th1", "u2"]


@pytest.mark.asyncio
async def test_in_memory_rewrite_keeps_positions():
    store = InMemoryHistoryStore()
    first = participant_utterance_turn("alice", "one")
    await store.output_event(first)
    await store.output_event(own_utterance_turn("two"))

    await store.rewrite_history({first.id: dataclasses.replace(first, text="ONE")})

    assert [e.text for e in store.events] == ["ONE", "two"]
