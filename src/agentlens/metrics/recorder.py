"""Record one agent run on both the live and the durable event paths.

The recorder is the glue an agent loop calls at each lifecycle point. Every
call appends the live metric event to the session store (dashboards, rollups)
and, when an emitter is attached, emits the matching durable event with a
dedupe key so retried hooks are written once. Emitting needs a running event
loop; the live path works from any thread.
"""

from __future__ import annotations

import json
import time
from typing import Any, Literal

from agentlens.metrics.pricing import (
    UsageEstimates,
    estimate_cost_usd,
    estimate_tokens_from_text,
    estimate_tool_call_usage,
    merge_usage,
)
from agentlens.metrics.store import SessionEventStore
from agentlens.telemetry.emitter import AgentEventEmitter
from agentlens.telemetry.ingest_events import (
    AgentEventKind,
    AgentSessionMeta,
    MessageLoggedPayload,
    MessagePreview,
    PayloadSummary,
    ResultSummary,
    SessionFinishedPayload,
    SessionStartedPayload,
    StepFinishedPayload,
    ToolCallFinishedPayload,
    ToolCallStartedPayload,
)

PREVIEW_CHARS = 100
TEXT_PREVIEW_CHARS = 280


def _preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def sanitize_payload(value: Any, *, depth: int = 0) -> Any:
    """Clip long strings in a tool payload so durable events stay small."""
    if isinstance(value, str):
        return _preview(value)
    if depth >= 4:
        return "<nested>"
    if isinstance(value, dict):
        return {str(k): sanitize_payload(v, depth=depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(v, depth=depth + 1) for v in value[:50]]
    return value


def _as_text(value: Any) -> str:
    """Serialize a tool payload the way it is summarized on live events."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _summary(value: Any, char_count: int, model: str | None) -> dict[str, Any]:
    sanitized = sanitize_payload(value)
    if not isinstance(sanitized, dict):
        sanitized = {"value": sanitized}
    tokens, _ = estimate_tokens_from_text(_as_text(value), model)
    return {"sanitized": sanitized, "char_count": char_count, "token_estimate": tokens}


class AgentRunRecorder:
    """Drive live metrics and durable telemetry for one agent request."""

    def __init__(
        self,
        meta: AgentSessionMeta,
        store: SessionEventStore,
        emitter: AgentEventEmitter | None = None,
        *,
        client_chat_id: str | None = None,
    ) -> None:
        self.meta = meta
        self.store = store
        self.emitter = emitter
        self.client_chat_id = client_chat_id
        self._started = time.monotonic()
        self._tool_started: dict[str, float] = {}
        self._tool_inputs: dict[str, Any] = {}
        self._step_count = 0
        self._tool_call_count = 0
        self._estimated = UsageEstimates()

    @property
    def session_id(self) -> str:
        return self.meta.session_id

    def _emit(self, kind: AgentEventKind, payload: Any, dedupe_key: str) -> None:
        if self.emitter is not None:
            self.emitter.emit(kind, payload, dedupe_key=dedupe_key)

    def session_started(
        self,
        *,
        messages: list[dict[str, Any]] | None = None,
        attachments_count: int = 0,
    ) -> None:
        """Map the client chat to this session and log the run start."""
        if self.client_chat_id:
            self.store.emit_session_init(self.session_id, self.client_chat_id)
        previews = [
            MessagePreview(
                role=str(msg.get("role", "user")),
                text_preview=_preview(str(msg.get("content", "")), TEXT_PREVIEW_CHARS),
                char_count=len(str(msg.get("content", ""))),
                tool_call_count=len(msg.get("tool_calls") or []),
            )
            for msg in messages or []
        ]
        self._emit(
            AgentEventKind.SESSION_STARTED,
            SessionStartedPayload(
                persona_mode=self.meta.persona_mode,
                attachments_count=attachments_count,
                message_previews=previews,
                tool_names=list(self.meta.tool_names),
                user_identifier=self.meta.user_identifier,
                session_started_at=self.meta.session_started_at,
            ),
            "session_started",
        )

    def message(
        self,
        role: Literal["user", "assistant"],
        content: str,
        *,
        message_id: str,
        step_index: int | None = None,
    ) -> None:
        """Record a user or assistant message."""
        if role == "user":
            self.store.emit_user_message(
                self.session_id,
                content,
                message_id=message_id,
                client_chat_id=self.client_chat_id,
            )
        else:
            self.store.emit_assistant_message(
                self.session_id,
                content,
                message_id=message_id,
                client_chat_id=self.client_chat_id,
            )
        tokens, chars = estimate_tokens_from_text(content, self.meta.model)
        self._emit(
            AgentEventKind.MESSAGE_LOGGED,
            MessageLoggedPayload(
                role=role,
                message_id=message_id,
                text_preview=_preview(content, TEXT_PREVIEW_CHARS),
                char_count=chars,
                token_estimate=tokens,
                step_index=step_index,
            ),
            f"message_logged:{message_id}",
        )

    def tool_started(
        self, tool_call_id: str, tool_name: str, tool_input: Any, *, step_index: int
    ) -> None:
        """Record a tool call being issued."""
        self._tool_started[tool_call_id] = time.monotonic()
        self._tool_inputs[tool_call_id] = tool_input
        input_text = _as_text(tool_input)
        self.store.emit_tool_start(
            self.session_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            input_summary=input_text or None,
            client_chat_id=self.client_chat_id,
        )
        self._emit(
            AgentEventKind.TOOL_CALL_STARTED,
            ToolCallStartedPayload(
                step_index=step_index,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                input_summary=PayloadSummary.model_validate(
                    _summary(tool_input, len(input_text), self.meta.model)
                ),
            ),
            f"tool_call_started:{tool_call_id}",
        )

    def tool_finished(
        self,
        tool_call_id: str,
        tool_name: str,
        tool_output: Any,
        *,
        step_index: int,
        error: str | None = None,
        duration_ms: int | None = None,
    ) -> None:
        """Record a tool result; duration is measured from ``tool_started`` when not given."""
        started = self._tool_started.pop(tool_call_id, None)
        if duration_ms is None:
            duration_ms = (
                int((time.monotonic() - started) * 1000) if started is not None else 0
            )
        tool_input = self._tool_inputs.pop(tool_call_id, None)
        output_text = _as_text(tool_output)
        self.store.emit_tool_end(
            self.session_id,
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            duration_ms=duration_ms,
            success=error is None,
            error=error,
            output_summary=output_text or None,
            client_chat_id=self.client_chat_id,
        )
        usage, in_chars, out_chars = estimate_tool_call_usage(
            tool_input, tool_output, self.meta.model
        )
        self._estimated = merge_usage(self._estimated, usage)
        self._tool_call_count += 1
        result = _summary(tool_output, out_chars, self.meta.model)
        result.update(is_error=error is not None, error_message=error)
        self._emit(
            AgentEventKind.TOOL_CALL_FINISHED,
            ToolCallFinishedPayload(
                step_index=step_index,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                duration_ms=duration_ms,
                input_summary=PayloadSummary.model_validate(
                    _summary(tool_input, in_chars, self.meta.model)
                ),
                result_summary=ResultSummary.model_validate(result),
                token_usage=usage,
                cost_usd=estimate_cost_usd(usage, self.meta.model),
            ),
            f"tool_call_finished:{tool_call_id}",
        )

    def step_finished(
        self,
        step_index: int,
        *,
        input_tokens: int,
        output_tokens: int,
        tool_call_ids: list[str] | None = None,
        finish_reason: str | None = None,
        text: str = "",
    ) -> None:
        """Record one model step's usage and the tool calls it issued."""
        ids = list(tool_call_ids or [])
        self._step_count += 1
        self.store.emit_step_usage(
            self.session_id,
            step_index=step_index,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            tool_call_ids=ids,
            client_chat_id=self.client_chat_id,
        )
        self._emit(
            AgentEventKind.STEP_FINISHED,
            StepFinishedPayload(
                step_index=step_index,
                finish_reason=finish_reason,
                text_length=len(text),
                tool_calls_count=len(ids),
                tool_results_count=len(ids),
                usage=UsageEstimates(
                    prompt_tokens=input_tokens,
                    completion_tokens=output_tokens,
                    total_tokens=input_tokens + output_tokens,
                ),
                generated_text_preview=_preview(text, TEXT_PREVIEW_CHARS) or None,
            ),
            f"step_finished:{step_index}",
        )

    def session_finished(
        self,
        *,
        input_tokens: int,
        output_tokens: int,
        finish_reason: str | None = None,
    ) -> None:
        """Record final usage and close out the run."""
        self.store.emit_total_usage(
            self.session_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=self.meta.model,
            client_chat_id=self.client_chat_id,
        )
        actual = UsageEstimates(
            prompt_tokens=input_tokens,
            completion_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )
        self._emit(
            AgentEventKind.SESSION_FINISHED,
            SessionFinishedPayload(
                finish_reason=finish_reason,
                step_count=self._step_count,
                tool_call_count=self._tool_call_count,
                session_duration_ms=int((time.monotonic() - self._started) * 1000),
                estimated_usage=self._estimated,
                actual_usage=actual,
                estimated_cost_usd=estimate_cost_usd(self._estimated, self.meta.model),
                actual_cost_usd=round(
                    self.store.pricing.cost(input_tokens, output_tokens), 6
                ),
            ),
            "session_finished",
        )
