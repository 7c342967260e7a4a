"""Unit tests for the shared API functions behind the HTTP server and CLI."""

from __future__ import annotations

import pytest

from agentlens.app.api import (
    api_aggregate,
    api_config,
    api_health,
    api_ingest,
    api_rename_session,
    api_session_detail,
    api_sessions,
    api_telemetry_events,
    stream_hello,
)
from agentlens.errors import IngestValidationError, SessionNotFoundError
from agentlens.metrics.store import SessionEventStore
from agentlens.telemetry.sink import SQLiteEventSink


@pytest.fixture
def store():
    return SessionEventStore()


def _tool_end(**overrides):
    event = {
        "type": "tool_end",
        "toolCallId": "c1",
        "toolName": "web_search",
        "durationMs": 120,
        "success": True,
    }
    event.update(overrides)
    return event


def test_health():
    payload = api_health()
    assert payload["status"] == "ok"
    assert "version" in payload


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ({}, "Missing event payload"),
        ({"sessionId": "s1", "event": {}}, "Missing event payload"),
        (
            {"event": _tool_end()},
            "clientChatId required when sessionId is not provided",
        ),
        (
            {"clientChatId": "ghost", "event": _tool_end()},
            "Unknown clientChatId; no session mapping",
        ),
        (
            {"sessionId": "s1", "event": {"type": "tool_start", "toolName": "x"}},
            "tool_start requires toolCallId and toolName",
        ),
        (
            {"sessionId": "s1", "event": _tool_end(durationMs="fast")},
            "tool_end requires toolCallId, toolName, durationMs, success",
        ),
        (
            {"sessionId": "s1", "event": _tool_end(success="yes")},
            "tool_end requires toolCallId, toolName, durationMs, success",
        ),
        (
            {"sessionId": "s1", "event": _tool_end(durationMs=float("nan"))},
            "tool_end requires toolCallId, toolName, durationMs, success",
        ),
        (
            {"sessionId": "s1", "event": _tool_end(durationMs=float("inf"))},
            "tool_end requires toolCallId, toolName, durationMs, success",
        ),
        (
            {"sessionId": "s1", "event": _tool_end(durationMs=float("-inf"))},
            "tool_end requires toolCallId, toolName, durationMs, success",
        ),
        (
            {"sessionId": "s1", "event": {"type": "user_message"}},
            "Unsupported event type for client ingest: user_message",
        ),
    ],
)
def test_ingest_validation_messages(store, body, message):
    with pytest.raises(IngestValidationError) as exc:
        api_ingest(body, store=store)
    assert str(exc.value) == message


def test_ingest_resolves_client_chat_id(store):
    store.emit_session_init("s1", "chat-1")
    result = api_ingest({"clientChatId": "chat-1", "event": _tool_end()}, store=store)
    assert result == {"ok": True, "inserted": True}
    detail = store.get_session_detail("s1")
    [tool_event] = [e for e in detail.events if e.type == "tool_end"]
    assert tool_event.source == "client"
    assert tool_event.duration_ms == 120


def test_ingest_duplicate_reports_not_inserted(store):
    body = {"sessionId": "s1", "event": _tool_end()}
    assert api_ingest(body, store=store)["inserted"] is True
    assert api_ingest(body, store=store) == {"ok": True, "inserted": False}


def test_ingest_tool_start(store):
    body = {
        "sessionId": "s1",
        "event": {"type": "tool_start", "toolCallId": "c1", "toolName": "read", "inputSummary": "a.txt"},
    }
    assert api_ingest(body, store=store)["ok"] is True
    [event] = store.get_session_detail("s1").events
    assert event.input_summary == "a.txt"


def test_sessions_and_detail(store):
    api_ingest({"sessionId": "s1", "event": _tool_end()}, store=store)
    sessions = api_sessions(store=store)["sessions"]
    assert sessions[0]["sessionId"] == "s1"
    assert sessions[0]["toolCalls"] == 1
    detail = api_session_detail("s1", store=store)
    assert detail["sessionId"] == "s1"
    assert detail["toolDurations"] == {"c1": 120}
    with pytest.raises(SessionNotFoundError):
        api_session_detail("missing", store=store)


def test_rename_trims_and_caps(store):
    store.emit_user_message("s1", "hi")
    result = api_rename_session("s1", {"name": "  " + "n" * 200 + "  "}, store=store)
    assert result["ok"] is True
    assert result["name"] == "n" * 120
    assert api_rename_session("s1", {"name": "   "}, store=store) == {"ok": True}
    assert api_sessions(store=store)["sessions"][0].get("label") is None


def test_rename_unknown_session(store):
    with pytest.raises(SessionNotFoundError):
        api_rename_session("nope", {"name": "x"}, store=store)


def test_aggregate_over_store(store):
    for i in range(3):
        api_ingest(
            {"sessionId": "s1", "event": _tool_end(toolCallId=f"c{i}")}, store=store
        )
    report = api_aggregate(store=store)
    assert report["sessions"]["count"] == 1
    assert report["perTool"][0]["totalCalls"] == 3


def test_telemetry_events_requires_session_id(tmp_path):
    sink = SQLiteEventSink(tmp_path / "events.sqlite3")
    with pytest.raises(IngestValidationError):
        api_telemetry_events("", sink=sink)
    assert api_telemetry_events("s1", sink=sink) == {
        "sessionId": "s1",
        "count": 0,
        "events": [],
    }


def test_stream_hello_shape():
    hello = stream_hello("s1", False)
    assert hello["type"] == "hello"
    assert hello["sessionId"] == "s1"
    assert hello["all"] is False
    assert hello["source"] == "server"


def test_api_config_lists_sources():
    payload = api_config()
    assert "store" in payload["effective"]
    assert any(s["source"] == "explicit" for s in payload["sources"])
