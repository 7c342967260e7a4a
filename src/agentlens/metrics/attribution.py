"""Per-tool token and cost attribution for one session's event log.

Each ``step_usage`` record lists the tool calls issued in that step. Its
tokens are split across those calls by a weighting strategy, and each share
is credited to the call's tool name. Tool calls outside any step still get
their call count, duration and error tallies from ``tool_end`` events.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from agentlens.metrics.models import (
    MetricEvent,
    StepUsageEvent,
    ToolEndEvent,
    ToolStartEvent,
)
from agentlens.metrics.pricing import DEFAULT_PRICING, TokenPricing
from agentlens.metrics.stats import round_half_up


class AttributionStrategy(str, Enum):
    """How a step's tokens are split across the tool calls it issued."""

    EQUAL = "equal"
    DURATION_WEIGHTED = "durationWeighted"
    PAYLOAD_WEIGHTED = "payloadWeighted"


@dataclass
class ToolAttribution:
    """Token/cost share and call tallies attributed to one tool name."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    count: int = 0
    total_duration_ms: int = 0
    errors: int = 0


def _weights(
    ids: list[str],
    strategy: AttributionStrategy,
    starts: dict[str, ToolStartEvent],
    ends: dict[str, ToolEndEvent],
) -> list[float]:
    """Return normalized weights for ``ids``; equal split when all raw weights are zero."""
    raw: list[float] = []
    if strategy is AttributionStrategy.DURATION_WEIGHTED:
        raw = [float(ends[i].duration_ms or 0) if i in ends else 0.0 for i in ids]
    elif strategy is AttributionStrategy.PAYLOAD_WEIGHTED:
        for call_id in ids:
            start = starts.get(call_id)
            end = ends.get(call_id)
            size = len((start.input_summary if start else None) or "")
            size += len((end.output_summary if end else None) or "")
            raw.append(float(size))
    total = sum(raw)
    if raw and total > 0:
        return [w / total for w in raw]
    return [1 / len(ids)] * len(ids)


def compute_per_tool_attribution(
    events: Iterable[MetricEvent],
    strategy: AttributionStrategy | str = AttributionStrategy.EQUAL,
    pricing: TokenPricing = DEFAULT_PRICING,
) -> dict[str, ToolAttribution]:
    """Attribute step token usage and cost to tool names.

    Args:
        events: One session's events, in stored order.
        strategy: Split policy for a step's tokens across its tool calls.
        pricing: Per-million token prices used for the cost share.

    Returns:
        Mapping of tool name to its attribution, in first-seen order.
    """
    strategy = AttributionStrategy(strategy)
    evs = list(events)
    starts: dict[str, ToolStartEvent] = {}
    ends: dict[str, ToolEndEvent] = {}
    for ev in evs:
        if isinstance(ev, ToolEndEvent):
            ends[ev.tool_call_id] = ev
        elif isinstance(ev, ToolStartEvent):
            starts[ev.tool_call_id] = ev

    per_tool: dict[str, ToolAttribution] = {}
    for step in evs:
        if not isinstance(step, StepUsageEvent):
            continue
        ids = [call_id for call_id in step.tool_call_ids if call_id]
        if not ids:
            continue
        for call_id, weight in zip(ids, _weights(ids, strategy, starts, ends)):
            end = ends.get(call_id)
            start = starts.get(call_id)
            name = (end.tool_name if end else None) or (
                start.tool_name if start else None
            ) or "unknown"
            share = per_tool.setdefault(name, ToolAttribution())
            in_tok = round_half_up(step.input_tokens * weight)
            out_tok = round_half_up(step.output_tokens * weight)
            share.input_tokens += in_tok
            share.output_tokens += out_tok
            share.total_tokens += round_half_up(step.total_tokens * weight)
            share.cost += pricing.cost(in_tok, out_tok)

    for ev in evs:
        if isinstance(ev, ToolEndEvent):
            share = per_tool.setdefault(ev.tool_name or "unknown", ToolAttribution())
            share.count += 1
            share.total_duration_ms += ev.duration_ms or 0
            if not ev.success:
                share.errors += 1
    return per_tool
