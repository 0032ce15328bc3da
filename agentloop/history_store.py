"""History stores: the externally owned event sequence an agent run works on."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Mapping, Protocol

from agentloop.config import Settings
from agentloop.models import HistoryEvent, dump_event, load_event

SCHEMA_VERSION = 1


class HistoryStore(Protocol):
    async def get_history(self) -> list[HistoryEvent]: ...

    async def output_event(self, event: HistoryEvent) -> None: ...

    async def rewrite_history(self, replacements: Mapping[str, HistoryEvent]) -> None: ...


class InMemoryHistoryStore:
    """List-backed store; ``events`` is the live list and may be appended to directly."""

    def __init__(self, events: list[HistoryEvent] | None = None) -> None:
        self.events: list[HistoryEvent] = events if events is not None else []

    async def get_history(self) -> list[HistoryEvent]:
        return list(self.events)

    async def output_event(self, event: HistoryEvent) -> None:
        self.events.append(event)

    async def rewrite_history(self, replacements: Mapping[str, HistoryEvent]) -> None:
        self.events[:] = [replacements.get(event.id, event) for event in self.events]


class SqliteHistoryStore:
    """One conversation's events in SQLite, stored as JSON in append order."""

    def __init__(self, path: Path, conversation_id: str) -> None:
        self._path = path
        self._conversation_id = conversation_id

    @classmethod
    def from_settings(cls, settings: Settings, conversation_id: str) -> SqliteHistoryStore:
        return cls(settings.history_database_path, conversation_id)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                event_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                event_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(conversation_id, event_id)
            );

            CREATE INDEX IF NOT EXISTS idx_events_conversation
                ON events(conversation_id, seq);
            """
        )

    async def get_history(self) -> list[HistoryEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT event_json FROM events WHERE conversation_id = ? ORDER BY seq ASC",
                (self._conversation_id,),
            ).fetchall()
        return [load_event(row["event_json"]) for row in rows]

    async def output_event(self, event: HistoryEvent) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO events(conversation_id, event_id, event_type, event_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self._conversation_id, event.id, event.type, json.dumps(dump_event(event)), now, now),
            )

    async def rewrite_history(self, replacements: Mapping[str, HistoryEvent]) -> None:
        """Replace events by id in place; unknown ids are ignored."""

        now = _utc_now_iso()
        with self._connect() as conn:
            for event_id, event in replacements.items():
                conn.execute(
                    """
                    UPDATE events SET event_type = ?, event_json = ?, updated_at = ?
                    WHERE conversation_id = ? AND event_id = ?
                    """,
                    (event.type, json.dumps(dump_event(event)), now, self._conversation_id, event_id),
                )

    def clear_history(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM events WHERE conversation_id = ?", (self._conversation_id,))


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
