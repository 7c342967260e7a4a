"""Data models for live metric events and the summaries folded from them.

Wire keys are camelCase (``sessionId``, ``toolCallId``) so dashboards and
client SDKs can post and read events unchanged; Python attributes stay
snake_case. Events are frozen once built.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

MetricSource = Literal["server", "client"]

EVENT_TYPES = (
    "session_init",
    "user_message",
    "assistant_message",
    "step_usage",
    "tool_start",
    "tool_end",
    "total_usage",
)


class WireModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Return a JSON-ready dict using camelCase keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class BaseEvent(WireModel):
    """Fields shared by every live event."""

    session_id: str
    timestamp: str
    source: MetricSource = "server"
    client_chat_id: str | None = None


class SessionInitEvent(BaseEvent):
    """First event of a session; binds a client chat handle to the session."""

    type: Literal["session_init"] = "session_init"
    client_chat_id: str


class UserMessageEvent(BaseEvent):
    type: Literal["user_message"] = "user_message"
    message_id: str | None = None
    content: str = ""


class AssistantMessageEvent(BaseEvent):
    type: Literal["assistant_message"] = "assistant_message"
    message_id: str | None = None
    content: str = ""


class StepUsageEvent(BaseEvent):
    """Token usage of one model step plus the tool calls issued in it."""

    type: Literal["step_usage"] = "step_usage"
    step_index: int
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    tool_call_ids: list[str] = Field(default_factory=list)


class ToolStartEvent(BaseEvent):
    type: Literal["tool_start"] = "tool_start"
    tool_call_id: str
    tool_name: str
    input_summary: str | None = None


class ToolEndEvent(BaseEvent):
    type: Literal["tool_end"] = "tool_end"
    tool_call_id: str
    tool_name: str
    duration_ms: int = 0
    success: bool = True
    error: str | None = None
    output_summary: str | None = None


class TotalUsageEvent(BaseEvent):
    """Final usage snapshot; overrides step token sums in summaries."""

    type: Literal["total_usage"] = "total_usage"
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    total_cost: float = 0.0


MetricEvent = Annotated[
    Union[
        SessionInitEvent,
        UserMessageEvent,
        AssistantMessageEvent,
        StepUsageEvent,
        ToolStartEvent,
        ToolEndEvent,
        TotalUsageEvent,
    ],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[MetricEvent] = TypeAdapter(MetricEvent)


def parse_event(raw: dict[str, Any]) -> MetricEvent:
    """Validate a wire dict into the matching event model (raises pydantic.ValidationError)."""
    return _EVENT_ADAPTER.validate_python(raw)


class ToolCount(WireModel):
    name: str
    count: int


class SessionSummary(WireModel):
    """Per-session rollup; every field is a fold over the session's event log."""

    session_id: str
    client_chat_id: str | None = None
    label: str | None = None
    started_at: str | None = None
    last_event_at: str | None = None
    message_count: int = 0
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_tool_duration_ms: int = 0
    top_tools: list[ToolCount] = Field(default_factory=list)


class SessionDetail(WireModel):
    """Ordered event log plus indices recomputed from it."""

    session_id: str
    client_chat_id: str | None = None
    label: str | None = None
    events: list[MetricEvent] = Field(default_factory=list)
    step_to_tool_map: dict[int, list[str]] = Field(default_factory=dict)
    tool_durations: dict[str, int] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with the ``timeline`` alias dashboards read alongside ``events``."""
        payload = super().to_wire()
        payload["timeline"] = payload.get("events", [])
        return payload


if __name__ == "__main__":
    """Run model smoke checks."""
    ev = parse_event(
        {
            "type": "tool_end",
            "sessionId": "s1",
            "timestamp": "2026-01-01T00:00:00Z",
            "toolCallId": "c1",
            "toolName": "web_search",
            "durationMs": 12,
            "success": False,
        }
    )
    assert isinstance(ev, ToolEndEvent)
    assert ev.to_wire()["durationMs"] == 12
    print("metrics models: self-test passed")
