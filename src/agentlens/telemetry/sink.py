"""Durable sinks the event emitter writes to.

``SQLiteEventSink`` stores events in <data_dir>/index/events.sqlite3 with a
unique (session_id, sequence) index, so a retried write of the same event is
ignored. ``NullSink`` discards everything for runs without a durable store.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from agentlens.telemetry.ingest_events import AgentIngestEvent


@runtime_checkable
class EventSink(Protocol):
    """Anything with an ``insert_event`` capability (sync or async)."""

    def insert_event(self, event: AgentIngestEvent) -> Any: ...


class NullSink:
    """Sink that accepts and drops every event."""

    def insert_event(self, event: AgentIngestEvent) -> bool:
        return False


def _connect(db_path: Path) -> sqlite3.Connection:
    """Open events.sqlite3 with WAL mode and dict row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.row_factory = sqlite3.Row
    return conn


class SQLiteEventSink:
    """Append-only agent event table keyed by (session_id, sequence)."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path).expanduser()
        self._init_db()

    def _init_db(self) -> None:
        """Create agent_events table and indexes if missing."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_events (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id  TEXT NOT NULL,
                    request_id  TEXT NOT NULL,
                    sequence    INTEGER NOT NULL,
                    kind        TEXT NOT NULL,
                    source      TEXT NOT NULL,
                    timestamp   INTEGER NOT NULL,
                    dedupe_key  TEXT,
                    event_json  TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_agent_events_session_seq "
                "ON agent_events(session_id, sequence)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_agent_events_kind ON agent_events(kind)"
            )

    def insert_event(self, event: AgentIngestEvent) -> bool:
        """Insert one event; returns False when (session_id, sequence) already exists."""
        with _connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO agent_events
                    (session_id, request_id, sequence, kind, source, timestamp, dedupe_key, event_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.session_id,
                    event.request_id,
                    event.sequence,
                    event.kind.value,
                    event.source,
                    event.timestamp,
                    event.dedupe_key,
                    json.dumps(event.to_wire(), ensure_ascii=False),
                ),
            )
            return cursor.rowcount > 0

    def list_events(self, session_id: str) -> list[dict[str, Any]]:
        """Return a session's events as wire dicts ordered by sequence."""
        with _connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT event_json FROM agent_events WHERE session_id = ? ORDER BY sequence",
                (session_id,),
            ).fetchall()
        return [json.loads(row["event_json"]) for row in rows]

    def count_events(self, kind: str | None = None) -> int:
        """Return the number of stored events, optionally for one kind."""
        with _connect(self.db_path) as conn:
            if kind:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM agent_events WHERE kind = ?", (kind,)
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS n FROM agent_events").fetchone()
        return int(row["n"])
