"""Unit tests for the SQLite event sink and ingestion event shapes."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agentlens.telemetry.ingest_events import (
    AgentEventKind,
    AgentIngestEvent,
    MessageLoggedPayload,
    PersonaPostProcessedPayload,
    PersonaPostProcessReason,
    coerce_payload,
)
from agentlens.telemetry.sink import EventSink, NullSink, SQLiteEventSink


def _event(sequence: int, *, session_id: str = "s1", kind=AgentEventKind.MESSAGE_LOGGED):
    return AgentIngestEvent(
        session_id=session_id,
        request_id="r1",
        timestamp=1_700_000_000_000 + sequence,
        sequence=sequence,
        kind=kind,
        payload={"role": "user", "messageId": f"m{sequence}"},
    )


def test_sqlite_sink_creates_db_under_missing_dirs(tmp_path):
    db = tmp_path / "nested" / "index" / "events.sqlite3"
    SQLiteEventSink(db)
    assert db.exists()


def test_insert_and_list_in_sequence_order(tmp_path):
    sink = SQLiteEventSink(tmp_path / "events.sqlite3")
    for seq in (2, 0, 1):
        assert sink.insert_event(_event(seq)) is True
    events = sink.list_events("s1")
    assert [e["sequence"] for e in events] == [0, 1, 2]
    assert events[0]["kind"] == "message_logged"
    assert events[0]["payload"]["messageId"] == "m0"


def test_duplicate_session_sequence_ignored(tmp_path):
    sink = SQLiteEventSink(tmp_path / "events.sqlite3")
    assert sink.insert_event(_event(0)) is True
    assert sink.insert_event(_event(0)) is False
    assert sink.count_events() == 1


def test_sessions_are_isolated(tmp_path):
    sink = SQLiteEventSink(tmp_path / "events.sqlite3")
    sink.insert_event(_event(0, session_id="a"))
    sink.insert_event(_event(0, session_id="b"))
    assert len(sink.list_events("a")) == 1
    assert sink.list_events("missing") == []


def test_count_events_by_kind(tmp_path):
    sink = SQLiteEventSink(tmp_path / "events.sqlite3")
    sink.insert_event(_event(0))
    sink.insert_event(_event(1, kind=AgentEventKind.SESSION_STARTED))
    assert sink.count_events("session_started") == 1
    assert sink.count_events() == 2


def test_sinks_satisfy_protocol(tmp_path):
    assert isinstance(NullSink(), EventSink)
    assert isinstance(SQLiteEventSink(tmp_path / "e.sqlite3"), EventSink)
    assert NullSink().insert_event(_event(0)) is False


def test_coerce_payload_validates_dicts():
    payload = coerce_payload("message_logged", {"role": "assistant", "messageId": "m1"})
    assert isinstance(payload, MessageLoggedPayload)
    with pytest.raises(ValidationError):
        coerce_payload("message_logged", {"role": "robot", "messageId": "m1"})


def test_coerce_payload_rejects_wrong_model():
    wrong = PersonaPostProcessedPayload(
        applied=False, reason=PersonaPostProcessReason.SKIPPED_EMPTY
    )
    with pytest.raises(TypeError):
        coerce_payload(AgentEventKind.MESSAGE_LOGGED, wrong)


def test_typed_payload_roundtrip():
    event = _event(3)
    typed = event.typed_payload()
    assert isinstance(typed, MessageLoggedPayload)
    assert typed.message_id == "m3"
