"""Live metric events, the session store and bus, and cross-session rollups."""

from agentlens.metrics.aggregate import build_aggregate_report
from agentlens.metrics.attribution import (
    AttributionStrategy,
    compute_per_tool_attribution,
)
from agentlens.metrics.bus import EventBus, get_bus
from agentlens.metrics.models import (
    MetricEvent,
    SessionDetail,
    SessionSummary,
    parse_event,
)
from agentlens.metrics.store import SessionEventStore, get_store, reset_store

__all__ = [
    "AttributionStrategy",
    "EventBus",
    "MetricEvent",
    "SessionDetail",
    "SessionEventStore",
    "SessionSummary",
    "build_aggregate_report",
    "compute_per_tool_attribution",
    "get_bus",
    "get_store",
    "parse_event",
    "reset_store",
]
