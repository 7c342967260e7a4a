"""Shared API logic for CLI and HTTP endpoints.

Each ``api_*`` function takes plain request data and returns a JSON-ready
dict, raising ``IngestValidationError`` or ``SessionNotFoundError`` for the
server to map onto 400/404. Store and sink default to the process-wide ones.
"""

from __future__ import annotations

import math
from typing import Any

from agentlens import __version__
from agentlens.config.settings import get_config, get_config_sources
from agentlens.errors import IngestValidationError, SessionNotFoundError
from agentlens.metrics.aggregate import build_aggregate_report
from agentlens.metrics.store import SessionEventStore, get_store, iso_now
from agentlens.telemetry.sink import SQLiteEventSink

SESSION_NAME_MAX_CHARS = 120
CLIENT_EVENT_TYPES = ("tool_start", "tool_end")


def api_health() -> dict[str, Any]:
    """Return health check payload."""
    return {"status": "ok", "version": __version__}


def api_ingest(
    body: dict[str, Any], *, store: SessionEventStore | None = None
) -> dict[str, Any]:
    """Validate one client-originated tool event and append it to the store."""
    store = store or get_store()
    event = body.get("event")
    if not isinstance(event, dict) or not event:
        raise IngestValidationError("Missing event payload")

    client_chat_id = body.get("clientChatId") or None
    session_id = body.get("sessionId") or None
    if not session_id:
        if not client_chat_id:
            raise IngestValidationError(
                "clientChatId required when sessionId is not provided"
            )
        session_id = store.resolve_session_id(str(client_chat_id))
    if not session_id:
        raise IngestValidationError("Unknown clientChatId; no session mapping")

    event_type = str(event.get("type") or "")
    tool_call_id = event.get("toolCallId")
    tool_name = event.get("toolName")
    if event_type == "tool_start":
        if not tool_call_id or not tool_name:
            raise IngestValidationError("tool_start requires toolCallId and toolName")
        inserted = store.emit_tool_start(
            str(session_id),
            tool_call_id=str(tool_call_id),
            tool_name=str(tool_name),
            input_summary=_optional_str(event.get("inputSummary")),
            client_chat_id=client_chat_id,
            source="client",
        )
    elif event_type == "tool_end":
        duration = event.get("durationMs")
        success = event.get("success")
        if (
            not tool_call_id
            or not tool_name
            or isinstance(duration, bool)
            or not isinstance(duration, (int, float))
            or not math.isfinite(duration)
            or not isinstance(success, bool)
        ):
            raise IngestValidationError(
                "tool_end requires toolCallId, toolName, durationMs, success"
            )
        inserted = store.emit_tool_end(
            str(session_id),
            tool_call_id=str(tool_call_id),
            tool_name=str(tool_name),
            duration_ms=int(duration),
            success=success,
            error=_optional_str(event.get("error")),
            output_summary=_optional_str(event.get("outputSummary")),
            client_chat_id=client_chat_id,
            source="client",
        )
    else:
        raise IngestValidationError(
            f"Unsupported event type for client ingest: {event_type}"
        )
    return {"ok": True, "inserted": inserted}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def api_sessions(*, store: SessionEventStore | None = None) -> dict[str, Any]:
    """Return every session summary, most recent first."""
    store = store or get_store()
    return {"sessions": [s.to_wire() for s in store.list_session_summaries()]}


def api_session_detail(
    session_id: str, *, store: SessionEventStore | None = None
) -> dict[str, Any]:
    """Return one session's detail record."""
    store = store or get_store()
    detail = store.get_session_detail(session_id)
    if detail is None:
        raise SessionNotFoundError(session_id)
    return detail.to_wire()


def api_rename_session(
    session_id: str, body: dict[str, Any], *, store: SessionEventStore | None = None
) -> dict[str, Any]:
    """Set or clear a session's display label (trimmed, capped at 120 chars)."""
    store = store or get_store()
    raw = body.get("name")
    name = raw.strip()[:SESSION_NAME_MAX_CHARS] if isinstance(raw, str) else ""
    label = store.rename_session(session_id, name)
    payload: dict[str, Any] = {"ok": True}
    if label:
        payload["name"] = label
    return payload


def api_aggregate(*, store: SessionEventStore | None = None) -> dict[str, Any]:
    """Return the payload-weighted cross-session aggregate report."""
    store = store or get_store()
    details = []
    for summary in store.list_session_summaries():
        detail = store.get_session_detail(summary.session_id)
        if detail is not None:
            details.append(detail)
    return build_aggregate_report(details, pricing=store.pricing)


def api_telemetry_events(
    session_id: str, *, sink: SQLiteEventSink | None = None
) -> dict[str, Any]:
    """Return durable events recorded for one session, ordered by sequence."""
    if not session_id:
        raise IngestValidationError("sessionId is required")
    sink = sink or SQLiteEventSink(get_config().sink_db_path)
    events = sink.list_events(session_id)
    return {"sessionId": session_id, "count": len(events), "events": events}


def stream_hello(session_id: str | None, all_sessions: bool) -> dict[str, Any]:
    """Return the handshake record sent first on a live stream."""
    return {
        "type": "hello",
        "sessionId": session_id,
        "all": all_sessions,
        "timestamp": iso_now(),
        "source": "server",
    }


def api_config() -> dict[str, Any]:
    """Return effective config plus the files it was loaded from."""
    return {"effective": get_config().public_dict(), "sources": get_config_sources()}
