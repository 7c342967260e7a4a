"""Durable ingestion event shapes written by the event emitter.

Each event carries session metadata, an epoch-millisecond timestamp, a
per-emitter ``sequence`` and a kind-specific payload. Payload models are
looked up from the event kind, so a payload is always validated against the
shape its kind promises before it is queued for the sink.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from agentlens.metrics.models import WireModel
from agentlens.metrics.pricing import UsageEstimates

IngestSource = Literal["server", "client"]


class AgentEventKind(str, Enum):
    SESSION_STARTED = "session_started"
    SESSION_FINISHED = "session_finished"
    STEP_FINISHED = "step_finished"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_FINISHED = "tool_call_finished"
    TOOL_CALL_OUTBOUND = "tool_call_outbound"
    TOOL_CALL_INBOUND = "tool_call_inbound"
    MESSAGE_LOGGED = "message_logged"
    CLASSIFICATION_DECIDED = "classification_decided"
    CAPABILITY_ROUTED = "capability_routed"
    PERSONA_POST_PROCESSED = "persona_post_processed"


class PersonaPostProcessReason(str, Enum):
    SKIPPED_DISABLED = "skipped-disabled"
    SKIPPED_EMPTY = "skipped-empty"
    SKIPPED_STRUCTURED = "skipped-structured"
    SKIPPED_PERSONA_MODE = "skipped-persona-mode"
    SKIPPED_BANTER = "skipped-banter"
    SKIPPED_ERROR = "skipped-error"
    APPLIED = "applied"


class CapabilityIntent(str, Enum):
    """Routed intent of a request; ``banter`` answers skip the persona rewrite."""

    BANTER = "banter"
    FACTUAL_LOOKUP = "factual_lookup"
    BUILD_EDIT = "build_edit"
    MEDIA = "media"
    DESKTOP = "desktop"


class AgentSessionMeta(BaseModel):
    """Per-request metadata stamped on every event of one emitter."""

    session_id: str
    request_id: str
    model: str = ""
    thread_id: str | None = None
    persona_mode: bool = False
    user_identifier: str | None = None
    tool_names: list[str] = Field(default_factory=list)
    session_started_at: int = 0


class PayloadSummary(WireModel):
    """Sanitized tool arguments or results with their size estimates."""

    sanitized: dict[str, Any] = Field(default_factory=dict)
    char_count: int = 0
    token_estimate: int = 0


class ResultSummary(PayloadSummary):
    is_error: bool = False
    error_message: str | None = None


class MessagePreview(WireModel):
    role: str
    text_preview: str
    char_count: int = 0
    tool_call_count: int = 0


class SessionStartedPayload(WireModel):
    persona_mode: bool = False
    attachments_count: int = 0
    message_previews: list[MessagePreview] = Field(default_factory=list)
    tool_names: list[str] = Field(default_factory=list)
    user_identifier: str | None = None
    session_started_at: int = 0


class SessionFinishedPayload(WireModel):
    finish_reason: str | None = None
    step_count: int = 0
    tool_call_count: int = 0
    session_duration_ms: int = 0
    estimated_usage: UsageEstimates = Field(default_factory=UsageEstimates)
    actual_usage: UsageEstimates | None = None
    estimated_cost_usd: float = 0.0
    actual_cost_usd: float | None = None


class StepFinishedPayload(WireModel):
    step_index: int
    finish_reason: str | None = None
    text_length: int = 0
    tool_calls_count: int = 0
    tool_results_count: int = 0
    usage: UsageEstimates | None = None
    generated_text_preview: str | None = None


class ToolCallStartedPayload(WireModel):
    step_index: int
    tool_call_id: str
    tool_name: str
    input_summary: PayloadSummary = Field(default_factory=PayloadSummary)


class ToolCallOutboundPayload(WireModel):
    step_index: int
    tool_call_id: str
    tool_name: str
    args_summary: PayloadSummary = Field(default_factory=PayloadSummary)
    estimated_cost_usd: float | None = None


class ToolCallFinishedPayload(WireModel):
    step_index: int
    tool_call_id: str
    tool_name: str
    duration_ms: int = 0
    input_summary: PayloadSummary = Field(default_factory=PayloadSummary)
    result_summary: ResultSummary = Field(default_factory=ResultSummary)
    token_usage: UsageEstimates = Field(default_factory=UsageEstimates)
    cost_usd: float = 0.0


class ToolCallInboundPayload(WireModel):
    step_index: int
    tool_call_id: str
    tool_name: str
    duration_ms: int | None = None
    result_summary: ResultSummary = Field(default_factory=ResultSummary)
    token_usage: UsageEstimates | None = None
    cost_usd: float | None = None


class MessageLoggedPayload(WireModel):
    role: Literal["user", "assistant", "system"]
    message_id: str
    text_preview: str = ""
    char_count: int = 0
    token_estimate: int | None = None
    step_index: int | None = None


class ClassificationDecidedPayload(WireModel):
    model: str
    result: Literal["agent", "persona"]
    duration_ms: int = 0
    started_at: int = 0
    finished_at: int = 0
    input_char_count: int = 0
    attachments_count: int = 0
    usage: UsageEstimates | None = None
    estimated_cost_usd: float | None = None
    raw_output_preview: str | None = None
    error: str | None = None


class CapabilityRoutedPayload(WireModel):
    capability_intent: CapabilityIntent
    confidence: Literal["low", "medium", "high"] = "medium"
    source: Literal["heuristic", "model"] = "heuristic"
    reason: str = ""
    model_id: str | None = None
    heuristic_intent: CapabilityIntent | None = None
    heuristic_reason: str | None = None
    resolved_agent_intent: str = ""
    tool_names: list[str] = Field(default_factory=list)


class PersonaPostProcessedPayload(WireModel):
    applied: bool
    reason: PersonaPostProcessReason
    original_char_count: int = 0
    final_char_count: int = 0
    model_id: str | None = None
    duration_ms: int | None = None
    capability_intent: CapabilityIntent | None = None


PAYLOAD_MODELS: dict[AgentEventKind, type[WireModel]] = {
    AgentEventKind.SESSION_STARTED: SessionStartedPayload,
    AgentEventKind.SESSION_FINISHED: SessionFinishedPayload,
    AgentEventKind.STEP_FINISHED: StepFinishedPayload,
    AgentEventKind.TOOL_CALL_STARTED: ToolCallStartedPayload,
    AgentEventKind.TOOL_CALL_FINISHED: ToolCallFinishedPayload,
    AgentEventKind.TOOL_CALL_OUTBOUND: ToolCallOutboundPayload,
    AgentEventKind.TOOL_CALL_INBOUND: ToolCallInboundPayload,
    AgentEventKind.MESSAGE_LOGGED: MessageLoggedPayload,
    AgentEventKind.CLASSIFICATION_DECIDED: ClassificationDecidedPayload,
    AgentEventKind.CAPABILITY_ROUTED: CapabilityRoutedPayload,
    AgentEventKind.PERSONA_POST_PROCESSED: PersonaPostProcessedPayload,
}


def coerce_payload(
    kind: AgentEventKind | str, payload: WireModel | dict[str, Any]
) -> WireModel:
    """Validate a payload against the model registered for ``kind``.

    Raises:
        TypeError: When a model instance of the wrong payload class is given.
        pydantic.ValidationError: When a dict does not match the payload shape.
    """
    model_cls = PAYLOAD_MODELS[AgentEventKind(kind)]
    if isinstance(payload, model_cls):
        return payload
    if isinstance(payload, WireModel):
        raise TypeError(
            f"payload {type(payload).__name__} does not match kind {AgentEventKind(kind).value}"
        )
    return model_cls.model_validate(payload)


class AgentIngestEvent(WireModel):
    """One fully stamped durable event as handed to the sink."""

    session_id: str
    request_id: str
    timestamp: int
    sequence: int
    kind: AgentEventKind
    source: IngestSource = "server"
    model: str | None = None
    thread_id: str | None = None
    persona_mode: bool | None = None
    user_identifier: str | None = None
    dedupe_key: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    def typed_payload(self) -> WireModel:
        """Return the payload parsed into its kind-specific model."""
        return coerce_payload(self.kind, self.payload)
