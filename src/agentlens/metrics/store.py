"""Process-wide in-memory registry of live metric events per session.

Sessions are created implicitly by their first event, grow by append only,
and are evicted by idle TTL and LRU capacity (last activity). Summaries and
details are pure folds over the stored log; the per-session summary cache is
dropped on every append or rename. All maps are guarded by one lock because
the HTTP server handles requests on threads.
"""

from __future__ import annotations

import threading
import time
from collections import Counter, OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import assert_never

from agentlens.config.logging import logger
from agentlens.config.settings import Config, get_config
from agentlens.errors import SessionNotFoundError
from agentlens.metrics.bus import EventBus, get_bus
from agentlens.metrics.models import (
    AssistantMessageEvent,
    MetricEvent,
    MetricSource,
    SessionDetail,
    SessionInitEvent,
    SessionSummary,
    StepUsageEvent,
    ToolCount,
    ToolEndEvent,
    ToolStartEvent,
    TotalUsageEvent,
    UserMessageEvent,
)
from agentlens.metrics.pricing import DEFAULT_PRICING, TokenPricing, pricing_from_config
from agentlens.metrics.stats import round_half_up

# Cap on ``topTools`` entries in a session summary.
TOP_TOOLS_LIMIT = 5
# Tool input/output summaries longer than this are truncated on append.
SUMMARY_TEXT_LIMIT = 2000


@dataclass(frozen=True)
class StoreLimits:
    """Retention bounds for the session store."""

    max_sessions: int = 1000
    session_ttl_seconds: int = 86400
    max_events_per_session: int = 5000
    max_recent_sessions: int = 200
    top_tools: int = TOP_TOOLS_LIMIT

    @classmethod
    def from_config(cls, config: Config) -> StoreLimits:
        """Build limits from the ``[store]`` and ``[metrics]`` config tables."""
        return cls(
            max_sessions=config.store_max_sessions,
            session_ttl_seconds=config.store_session_ttl_seconds,
            max_events_per_session=config.store_max_events_per_session,
            max_recent_sessions=config.store_max_recent_sessions,
            top_tools=config.top_tools_limit,
        )


@dataclass
class _SessionBuffer:
    events: list[MetricEvent] = field(default_factory=list)
    seen_keys: set[str] = field(default_factory=set)
    client_chat_id: str | None = None
    label: str | None = None
    last_activity: float = 0.0
    summary: SessionSummary | None = None


def iso_now() -> str:
    """Return current UTC time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


def idempotency_key(event: MetricEvent) -> str | None:
    """Return the duplicate-suppression key for an event, or None for messages."""
    if isinstance(event, ToolStartEvent):
        return f"tool_start|{event.session_id}|{event.tool_call_id}|start"
    if isinstance(event, ToolEndEvent):
        return f"tool_end|{event.session_id}|{event.tool_call_id}|end"
    if isinstance(event, StepUsageEvent):
        return f"step_usage|{event.session_id}|{event.step_index}"
    if isinstance(event, TotalUsageEvent):
        return f"total_usage|{event.session_id}|total"
    if isinstance(event, (SessionInitEvent, UserMessageEvent, AssistantMessageEvent)):
        return None
    assert_never(event)


def _truncate(text: str | None) -> str | None:
    if text is None or len(text) <= SUMMARY_TEXT_LIMIT:
        return text
    return text[:SUMMARY_TEXT_LIMIT] + "…"


def _normalize(event: MetricEvent) -> MetricEvent:
    """Clamp oversized tool summaries before the event is stored."""
    if isinstance(event, ToolStartEvent) and event.input_summary:
        return event.model_copy(update={"input_summary": _truncate(event.input_summary)})
    if isinstance(event, ToolEndEvent) and event.output_summary:
        return event.model_copy(
            update={"output_summary": _truncate(event.output_summary)}
        )
    return event


def ordered_events(events: Iterable[MetricEvent]) -> list[MetricEvent]:
    """Sort events by ISO timestamp, keeping insertion order for ties."""
    return sorted(events, key=lambda ev: ev.timestamp)


def summarize_events(
    session_id: str,
    events: Iterable[MetricEvent],
    *,
    client_chat_id: str | None = None,
    label: str | None = None,
    top_tools: int = TOP_TOOLS_LIMIT,
) -> SessionSummary:
    """Fold one session's event log into its summary.

    Token totals add up ``step_usage`` records until a ``total_usage`` event
    is seen, which replaces them and supplies ``totalCost``.
    """
    evs = ordered_events(events)
    message_count = 0
    tool_ends = 0
    input_tokens = output_tokens = total_tokens = 0
    total_cost = 0.0
    sum_duration = 0
    tool_counts: Counter[str] = Counter()

    for ev in evs:
        if isinstance(ev, (UserMessageEvent, AssistantMessageEvent)):
            message_count += 1
        elif isinstance(ev, ToolEndEvent):
            tool_ends += 1
            sum_duration += ev.duration_ms or 0
            tool_counts[ev.tool_name or "unknown"] += 1
        elif isinstance(ev, StepUsageEvent):
            input_tokens += ev.input_tokens
            output_tokens += ev.output_tokens
            total_tokens += ev.total_tokens
        elif isinstance(ev, TotalUsageEvent):
            input_tokens = ev.input_tokens
            output_tokens = ev.output_tokens
            total_tokens = ev.total_tokens
            total_cost = ev.total_cost

    ranked = sorted(tool_counts.items(), key=lambda item: item[1], reverse=True)
    return SessionSummary(
        session_id=session_id,
        client_chat_id=client_chat_id,
        label=label,
        started_at=evs[0].timestamp if evs else None,
        last_event_at=evs[-1].timestamp if evs else None,
        message_count=message_count,
        tool_calls=tool_ends,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
        total_cost=total_cost,
        avg_tool_duration_ms=round_half_up(sum_duration / tool_ends) if tool_ends else 0,
        top_tools=[ToolCount(name=name, count=count) for name, count in ranked[:top_tools]],
    )


def build_session_detail(
    session_id: str,
    events: Iterable[MetricEvent],
    *,
    client_chat_id: str | None = None,
    label: str | None = None,
) -> SessionDetail:
    """Build the ordered detail record and its step/duration indices."""
    evs = ordered_events(events)
    step_to_tools: dict[int, list[str]] = {}
    durations: dict[str, int] = {}
    for ev in evs:
        if isinstance(ev, StepUsageEvent):
            ids = step_to_tools.setdefault(ev.step_index, [])
            for call_id in ev.tool_call_ids:
                if call_id not in ids:
                    ids.append(call_id)
        elif isinstance(ev, ToolEndEvent):
            durations[ev.tool_call_id] = ev.duration_ms or 0
    return SessionDetail(
        session_id=session_id,
        client_chat_id=client_chat_id,
        label=label,
        events=evs,
        step_to_tool_map=step_to_tools,
        tool_durations=durations,
    )


class SessionEventStore:
    """Bounded, thread-safe session event registry feeding the event bus."""

    def __init__(
        self,
        *,
        limits: StoreLimits | None = None,
        bus: EventBus | None = None,
        pricing: TokenPricing | None = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limits = limits or StoreLimits()
        self.bus = bus
        self.pricing = pricing or DEFAULT_PRICING
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.RLock()
        self._sessions: OrderedDict[str, _SessionBuffer] = OrderedDict()
        self._client_to_session: dict[str, str] = {}

    # -- internals -----------------------------------------------------------

    def _touch_locked(self, session_id: str, buf: _SessionBuffer) -> None:
        buf.last_activity = self._clock()
        self._sessions.move_to_end(session_id)

    def _upsert_locked(self, session_id: str) -> _SessionBuffer:
        buf = self._sessions.get(session_id)
        if buf is None:
            buf = _SessionBuffer(last_activity=self._clock())
            self._sessions[session_id] = buf
        return buf

    def _drop_locked(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        stale = [c for c, s in self._client_to_session.items() if s == session_id]
        for client in stale:
            del self._client_to_session[client]

    def _evict_locked(self) -> None:
        """Drop idle sessions past the TTL, then oldest sessions over capacity."""
        ttl = self.limits.session_ttl_seconds
        if ttl > 0:
            cutoff = self._clock() - ttl
            expired = [
                sid for sid, buf in self._sessions.items() if buf.last_activity < cutoff
            ]
            for sid in expired:
                self._drop_locked(sid)
            if expired:
                logger.debug("metrics store | evicted {} idle sessions", len(expired))
        while len(self._sessions) > self.limits.max_sessions:
            oldest = next(iter(self._sessions))
            self._drop_locked(oldest)
            logger.debug("metrics store | evicted session {} (capacity)", oldest)

    # -- writes --------------------------------------------------------------

    def append(self, event: MetricEvent) -> bool:
        """Index one event under its session; returns False for duplicates or when disabled."""
        if not self.enabled:
            return False
        event = _normalize(event)
        key = idempotency_key(event)
        with self._lock:
            buf = self._upsert_locked(event.session_id)
            if key is not None:
                if key in buf.seen_keys:
                    self._touch_locked(event.session_id, buf)
                    return False
                buf.seen_keys.add(key)
            buf.events.append(event)
            over = len(buf.events) - self.limits.max_events_per_session
            if over > 0:
                del buf.events[:over]
            if buf.client_chat_id is None and event.client_chat_id:
                buf.client_chat_id = event.client_chat_id
            buf.summary = None
            self._touch_locked(event.session_id, buf)
            self._evict_locked()
        if self.bus is not None:
            self.bus.publish(event)
        return True

    def register_client_session(self, client_handle: str, session_id: str) -> None:
        """Map a client chat handle to a session id, creating the session if needed."""
        if not self.enabled:
            return
        with self._lock:
            self._client_to_session[client_handle] = session_id
            buf = self._upsert_locked(session_id)
            if buf.client_chat_id is None:
                buf.client_chat_id = client_handle
                buf.summary = None
            self._touch_locked(session_id, buf)
            self._evict_locked()

    def rename_session(self, session_id: str, label: str) -> str | None:
        """Set or clear (empty label) the display label; raises SessionNotFoundError."""
        with self._lock:
            self._evict_locked()
            buf = self._sessions.get(session_id)
            if buf is None:
                raise SessionNotFoundError(session_id)
            buf.label = label or None
            buf.summary = None
            self._touch_locked(session_id, buf)
            return buf.label

    def clear(self) -> None:
        """Forget every session and client mapping."""
        with self._lock:
            self._sessions.clear()
            self._client_to_session.clear()

    # -- reads ---------------------------------------------------------------

    def resolve_session_id(self, client_handle: str) -> str | None:
        """Return the session id mapped to a client chat handle, if any."""
        with self._lock:
            self._evict_locked()
            return self._client_to_session.get(client_handle)

    def list_session_summaries(self) -> list[SessionSummary]:
        """Return one summary per known session, most recent activity first."""
        with self._lock:
            self._evict_locked()
            out: list[SessionSummary] = []
            for session_id, buf in self._sessions.items():
                if buf.summary is None:
                    buf.summary = summarize_events(
                        session_id,
                        buf.events,
                        client_chat_id=buf.client_chat_id,
                        label=buf.label,
                        top_tools=self.limits.top_tools,
                    )
                out.append(buf.summary)
        out.sort(key=lambda s: s.last_event_at or "", reverse=True)
        return out[: self.limits.max_recent_sessions]

    def get_session_detail(self, session_id: str) -> SessionDetail | None:
        """Return the full detail record, or None for unknown session ids."""
        with self._lock:
            self._evict_locked()
            buf = self._sessions.get(session_id)
            if buf is None:
                return None
            self._touch_locked(session_id, buf)
            events = list(buf.events)
            client_chat_id, label = buf.client_chat_id, buf.label
        return build_session_detail(
            session_id, events, client_chat_id=client_chat_id, label=label
        )

    def session_count(self) -> int:
        """Return the number of retained sessions."""
        with self._lock:
            self._evict_locked()
            return len(self._sessions)

    # -- convenience emitters ------------------------------------------------

    def emit_session_init(
        self, session_id: str, client_chat_id: str, *, source: MetricSource = "server"
    ) -> bool:
        """Map the client handle and record the ``session_init`` event."""
        self.register_client_session(client_chat_id, session_id)
        return self.append(
            SessionInitEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                timestamp=iso_now(),
                source=source,
            )
        )

    def emit_user_message(
        self,
        session_id: str,
        content: str,
        *,
        message_id: str | None = None,
        client_chat_id: str | None = None,
        source: MetricSource = "server",
    ) -> bool:
        return self.append(
            UserMessageEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                message_id=message_id,
                content=content,
                timestamp=iso_now(),
                source=source,
            )
        )

    def emit_assistant_message(
        self,
        session_id: str,
        content: str,
        *,
        message_id: str | None = None,
        client_chat_id: str | None = None,
        source: MetricSource = "server",
    ) -> bool:
        return self.append(
            AssistantMessageEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                message_id=message_id,
                content=content,
                timestamp=iso_now(),
                source=source,
            )
        )

    def emit_step_usage(
        self,
        session_id: str,
        *,
        step_index: int,
        input_tokens: int,
        output_tokens: int,
        total_tokens: int | None = None,
        tool_call_ids: list[str] | None = None,
        client_chat_id: str | None = None,
        source: MetricSource = "server",
    ) -> bool:
        return self.append(
            StepUsageEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                step_index=step_index,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=(
                    total_tokens
                    if total_tokens is not None
                    else input_tokens + output_tokens
                ),
                tool_call_ids=list(tool_call_ids or []),
                timestamp=iso_now(),
                source=source,
            )
        )

    def emit_tool_start(
        self,
        session_id: str,
        *,
        tool_call_id: str,
        tool_name: str,
        input_summary: str | None = None,
        client_chat_id: str | None = None,
        source: MetricSource = "server",
    ) -> bool:
        return self.append(
            ToolStartEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                input_summary=input_summary,
                timestamp=iso_now(),
                source=source,
            )
        )

    def emit_tool_end(
        self,
        session_id: str,
        *,
        tool_call_id: str,
        tool_name: str,
        duration_ms: int,
        success: bool,
        error: str | None = None,
        output_summary: str | None = None,
        client_chat_id: str | None = None,
        source: MetricSource = "server",
    ) -> bool:
        return self.append(
            ToolEndEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                duration_ms=duration_ms,
                success=success,
                error=error,
                output_summary=output_summary,
                timestamp=iso_now(),
                source=source,
            )
        )

    def emit_total_usage(
        self,
        session_id: str,
        *,
        input_tokens: int,
        output_tokens: int,
        model: str,
        total_tokens: int | None = None,
        total_cost: float | None = None,
        client_chat_id: str | None = None,
        source: MetricSource = "server",
    ) -> bool:
        """Record final usage; cost is priced from token counts when not given."""
        cost = (
            total_cost
            if total_cost is not None
            else self.pricing.cost(input_tokens, output_tokens)
        )
        return self.append(
            TotalUsageEvent(
                session_id=session_id,
                client_chat_id=client_chat_id,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=(
                    total_tokens
                    if total_tokens is not None
                    else input_tokens + output_tokens
                ),
                model=model,
                total_cost=cost,
                timestamp=iso_now(),
                source=source,
            )
        )


_STORE_LOCK = threading.Lock()
_STORE: SessionEventStore | None = None


def get_store() -> SessionEventStore:
    """Return the process-wide store wired to the global bus and config limits."""
    global _STORE
    with _STORE_LOCK:
        if _STORE is None:
            config = get_config()
            _STORE = SessionEventStore(
                limits=StoreLimits.from_config(config),
                bus=get_bus(),
                pricing=pricing_from_config(config),
                enabled=config.metrics_enabled,
            )
        return _STORE


def reset_store() -> None:
    """Drop the process-wide store so the next ``get_store`` rebuilds it."""
    global _STORE
    with _STORE_LOCK:
        _STORE = None
