"""Cross-session per-tool rollup behind the aggregate report.

Per session: attribution shares are folded into a per-tool accumulator, then
the session's ``tool_end`` events are scanned in timestamp order for call
counts, durations, errors and consecutive-run lengths. Session-local run
maxima are folded into the global ``maxConsecutive`` with ``max`` so merging
a session can never lower it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from agentlens.metrics.attribution import (
    AttributionStrategy,
    compute_per_tool_attribution,
)
from agentlens.metrics.models import MetricEvent, SessionDetail, ToolEndEvent
from agentlens.metrics.pricing import DEFAULT_PRICING, TokenPricing
from agentlens.metrics.stats import p95, round_half_up, safe_ratio
from agentlens.metrics.store import ordered_events

REPEAT_MIN_CALLS = 3
REPEAT_ERROR_RATE_MIN_CALLS = 10
REPEAT_TOP_N = 10


@dataclass
class ToolAccumulator:
    """Running totals for one tool across every merged session."""

    tool: str
    total_calls: int = 0
    unique_sessions: set[str] = field(default_factory=set)
    durations: list[int] = field(default_factory=list)
    errors: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    max_consecutive: int = 0

    def fold_max_consecutive(self, session_max: int) -> None:
        """Raise the global run maximum; never lowers it."""
        self.max_consecutive = max(self.max_consecutive, session_max)

    def row(self, session_count: int) -> dict[str, Any]:
        """Return the derived per-tool report row."""
        unique = len(self.unique_sessions)
        return {
            "tool": self.tool,
            "totalCalls": self.total_calls,
            "uniqueSessions": unique,
            "avgCallsPerSession": safe_ratio(self.total_calls, session_count),
            "avgWhenUsed": safe_ratio(self.total_calls, unique),
            "errors": self.errors,
            "errorRate": safe_ratio(self.errors, self.total_calls),
            "avgMs": (
                round_half_up(sum(self.durations) / self.total_calls)
                if self.total_calls > 0
                else 0
            ),
            "p95Ms": p95(self.durations),
            "totalTokens": self.total_tokens,
            "cost": self.cost,
            "maxConsecutive": self.max_consecutive,
        }


def session_run_maxima(events: Iterable[MetricEvent]) -> dict[str, int]:
    """Return the longest run of consecutive ``tool_end`` events per tool name."""
    maxima: dict[str, int] = {}
    last_tool: str | None = None
    run = 0
    for ev in ordered_events(events):
        if not isinstance(ev, ToolEndEvent):
            continue
        name = ev.tool_name or "unknown"
        if name == last_tool:
            run += 1
        else:
            last_tool = name
            run = 1
        if run > maxima.get(name, 0):
            maxima[name] = run
    return maxima


class AggregateBuilder:
    """Fold sessions one at a time into per-tool accumulators."""

    def __init__(
        self,
        *,
        strategy: AttributionStrategy = AttributionStrategy.PAYLOAD_WEIGHTED,
        pricing: TokenPricing = DEFAULT_PRICING,
    ) -> None:
        self.strategy = strategy
        self.pricing = pricing
        self.tools: dict[str, ToolAccumulator] = {}
        self.session_count = 0
        self.first_event_at: str | None = None
        self.last_event_at: str | None = None

    def _acc(self, name: str) -> ToolAccumulator:
        acc = self.tools.get(name)
        if acc is None:
            acc = ToolAccumulator(tool=name)
            self.tools[name] = acc
        return acc

    def merge_session(self, session_id: str, events: Sequence[MetricEvent]) -> None:
        """Merge one session's events into the running totals."""
        self.session_count += 1
        if events:
            first, last = events[0].timestamp, events[-1].timestamp
            if self.first_event_at is None or first < self.first_event_at:
                self.first_event_at = first
            if self.last_event_at is None or last > self.last_event_at:
                self.last_event_at = last

        shares = compute_per_tool_attribution(events, self.strategy, self.pricing)
        for name, share in shares.items():
            acc = self._acc(name)
            acc.input_tokens += share.input_tokens
            acc.output_tokens += share.output_tokens
            acc.total_tokens += share.total_tokens
            acc.cost += share.cost
            acc.unique_sessions.add(session_id)

        for ev in ordered_events(events):
            if not isinstance(ev, ToolEndEvent):
                continue
            acc = self._acc(ev.tool_name or "unknown")
            acc.total_calls += 1
            acc.durations.append(ev.duration_ms or 0)
            if not ev.success:
                acc.errors += 1
            acc.unique_sessions.add(session_id)

        for name, session_max in session_run_maxima(events).items():
            self.tools[name].fold_max_consecutive(session_max)

    def report(self) -> dict[str, Any]:
        """Return the aggregate payload for everything merged so far."""
        per_tool = [acc.row(self.session_count) for acc in self.tools.values()]

        totals = {
            "toolCalls": 0,
            "inputTokens": 0,
            "outputTokens": 0,
            "totalTokens": 0,
            "totalCost": 0.0,
        }
        for row in per_tool:
            src = self.tools[row["tool"]]
            totals["toolCalls"] += row["totalCalls"]
            totals["inputTokens"] += src.input_tokens
            totals["outputTokens"] += src.output_tokens
            totals["totalTokens"] += src.total_tokens
            totals["totalCost"] += row["cost"]

        offenders = [r for r in per_tool if r["totalCalls"] >= REPEAT_MIN_CALLS]

        def _top(rows: list[dict[str, Any]], key: str) -> list[dict[str, Any]]:
            return sorted(rows, key=lambda r: r[key], reverse=True)[:REPEAT_TOP_N]

        return {
            "strategy": self.strategy.value,
            "timeframe": {
                "firstEventAt": self.first_event_at,
                "lastEventAt": self.last_event_at,
            },
            "sessions": {"count": self.session_count},
            "totals": totals,
            "perTool": sorted(per_tool, key=lambda r: r["totalCalls"], reverse=True),
            "repeatOffenders": {
                "byTotalCalls": _top(offenders, "totalCalls"),
                "byAvgCallsPerSession": _top(offenders, "avgCallsPerSession"),
                "byMaxConsecutive": _top(offenders, "maxConsecutive"),
                "byErrorRate": _top(
                    [
                        r
                        for r in offenders
                        if r["totalCalls"] >= REPEAT_ERROR_RATE_MIN_CALLS
                    ],
                    "errorRate",
                ),
            },
        }


def build_aggregate_report(
    sessions: Iterable[SessionDetail],
    *,
    pricing: TokenPricing = DEFAULT_PRICING,
) -> dict[str, Any]:
    """Build the payload-weighted aggregate report over session details."""
    builder = AggregateBuilder(
        strategy=AttributionStrategy.PAYLOAD_WEIGHTED, pricing=pricing
    )
    for detail in sessions:
        builder.merge_session(detail.session_id, detail.events)
    return builder.report()
