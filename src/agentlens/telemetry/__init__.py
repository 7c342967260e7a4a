"""Durable agent telemetry: ingestion event shapes, sinks, and the emitter."""

from agentlens.telemetry.emitter import AgentEventEmitter, EmitError, build_emitter
from agentlens.telemetry.ingest_events import (
    AgentEventKind,
    AgentIngestEvent,
    AgentSessionMeta,
    CapabilityIntent,
    PersonaPostProcessReason,
)
from agentlens.telemetry.sink import EventSink, NullSink, SQLiteEventSink

__all__ = [
    "AgentEventEmitter",
    "AgentEventKind",
    "AgentIngestEvent",
    "AgentSessionMeta",
    "CapabilityIntent",
    "EmitError",
    "EventSink",
    "NullSink",
    "PersonaPostProcessReason",
    "SQLiteEventSink",
    "build_emitter",
]
