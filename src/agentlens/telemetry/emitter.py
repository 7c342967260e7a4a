"""Ordered, de-duplicated, never-raising writer of durable agent events.

One emitter is created per agent request. ``emit`` stamps the event and puts
it on a bounded asyncio queue; a single worker task drains the queue and
writes to the sink strictly one at a time, in submission order. Sink failures
and queue overflow are logged and reported on the error channel
(``errors`` plus the optional ``on_error`` callback) but never raised to the
caller. Ordering holds within one emitter only.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Literal

from agentlens.config.logging import logger
from agentlens.config.settings import Config
from agentlens.metrics.models import WireModel
from agentlens.telemetry.ingest_events import (
    AgentEventKind,
    AgentIngestEvent,
    AgentSessionMeta,
    IngestSource,
    coerce_payload,
)
from agentlens.telemetry.sink import EventSink, SQLiteEventSink

DEFAULT_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class EmitError:
    """One event that did not reach the sink, and why.

    ``event`` is None for ``invalid`` emits, whose payload never became an event.
    """

    event: AgentIngestEvent | None
    reason: Literal["sink_failed", "queue_full", "closed", "invalid"]
    detail: str = ""


def now_ms() -> int:
    """Return the current epoch time in milliseconds."""
    return int(time.time() * 1000)


class AgentEventEmitter:
    """Serialize durable writes for one session/request."""

    def __init__(
        self,
        meta: AgentSessionMeta,
        sink: EventSink,
        *,
        initial_sequence: int = 0,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        on_error: Callable[[EmitError], None] | None = None,
    ) -> None:
        self.meta = meta
        self.sink = sink
        self.queue_size = queue_size
        self.on_error = on_error
        self.errors: list[EmitError] = []
        self._sequence = initial_sequence
        self._dedupe_keys: set[str] = set()
        self._queue: asyncio.Queue[tuple[AgentIngestEvent, asyncio.Future[bool]]] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        """Number of queued events not yet written."""
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_worker(self) -> asyncio.Queue[tuple[AgentIngestEvent, asyncio.Future[bool]]]:
        """Start the drain task on the running loop if it is not alive."""
        loop = asyncio.get_running_loop()
        if self._queue is None or self._loop is not loop:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
            self._loop = loop
            self._worker = None
        if self._worker is None or self._worker.done():
            self._worker = loop.create_task(self._drain(self._queue))
        return self._queue

    def _report(self, error: EmitError) -> None:
        """Record a failed event and notify ``on_error``."""
        self.errors.append(error)
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception as exc:
            logger.warning("telemetry | on_error callback failed: {}", exc)

    def build_event(
        self,
        kind: AgentEventKind | str,
        payload: WireModel | dict[str, Any],
        *,
        timestamp: int | None = None,
        dedupe_key: str | None = None,
        source: IngestSource = "server",
        sequence: int | None = None,
    ) -> AgentIngestEvent:
        """Stamp meta, timestamp and sequence onto a validated payload."""
        kind = AgentEventKind(kind)
        body = coerce_payload(kind, payload)
        stamped = self._sequence if sequence is None else sequence
        event = AgentIngestEvent(
            session_id=self.meta.session_id,
            request_id=self.meta.request_id,
            model=self.meta.model or None,
            thread_id=self.meta.thread_id,
            persona_mode=self.meta.persona_mode,
            user_identifier=self.meta.user_identifier,
            timestamp=timestamp if timestamp is not None else now_ms(),
            sequence=stamped,
            kind=kind,
            source=source,
            dedupe_key=dedupe_key,
            payload=body.to_wire(),
        )
        if sequence is None:
            self._sequence += 1
        return event

    def emit(
        self,
        kind: AgentEventKind | str,
        payload: WireModel | dict[str, Any],
        *,
        timestamp: int | None = None,
        dedupe_key: str | None = None,
        source: IngestSource = "server",
        sequence: int | None = None,
    ) -> asyncio.Future[bool]:
        """Queue one event for the sink; must be called from a running event loop.

        Returns a future that resolves to True once the sink accepted the
        write, or False when the event was a duplicate, invalid, dropped, or
        failed. Neither the call nor the future raises.
        """
        loop = asyncio.get_running_loop()
        done: asyncio.Future[bool] = loop.create_future()
        if dedupe_key and dedupe_key in self._dedupe_keys:
            done.set_result(False)
            return done

        try:
            event = self.build_event(
                kind,
                payload,
                timestamp=timestamp,
                dedupe_key=dedupe_key,
                source=source,
                sequence=sequence,
            )
        except (ValueError, TypeError) as exc:
            logger.warning("telemetry | invalid {} event, dropping: {}", kind, exc)
            self._report(EmitError(None, "invalid", str(exc)))
            done.set_result(False)
            return done
        if dedupe_key:
            self._dedupe_keys.add(dedupe_key)

        if self._closed:
            logger.warning("telemetry | emitter closed, dropping {}", event.kind.value)
            self._report(EmitError(event, "closed"))
            done.set_result(False)
            return done

        queue = self._ensure_worker()
        try:
            queue.put_nowait((event, done))
        except asyncio.QueueFull:
            logger.warning(
                "telemetry | emitter queue full ({}), dropping {} seq={}",
                self.queue_size,
                event.kind.value,
                event.sequence,
            )
            if dedupe_key:
                self._dedupe_keys.discard(dedupe_key)
            self._report(EmitError(event, "queue_full"))
            done.set_result(False)
        return done

    async def _write(self, event: AgentIngestEvent) -> None:
        if inspect.iscoroutinefunction(self.sink.insert_event):
            await self.sink.insert_event(event)
        else:
            await asyncio.to_thread(self.sink.insert_event, event)

    async def _drain(
        self, queue: asyncio.Queue[tuple[AgentIngestEvent, asyncio.Future[bool]]]
    ) -> None:
        """Write queued events one at a time until cancelled."""
        while True:
            event, done = await queue.get()
            ok = False
            try:
                await self._write(event)
                ok = True
            except asyncio.CancelledError:
                queue.task_done()
                self._report(EmitError(event, "closed"))
                if not done.done():
                    done.set_result(False)
                raise
            except Exception as exc:
                logger.warning(
                    "telemetry | failed to write {} seq={}: {}",
                    event.kind.value,
                    event.sequence,
                    exc,
                )
                self._report(EmitError(event, "sink_failed", str(exc)))
            if not done.done():
                done.set_result(ok)
            queue.task_done()

    async def flush(self, timeout_ms: int | None = None) -> bool:
        """Wait for queued writes; returns False if ``timeout_ms`` elapsed first.

        A timeout only stops waiting: the in-flight write keeps running.
        """
        queue = self._queue
        if queue is None or self._loop is not asyncio.get_running_loop():
            return True
        if timeout_ms is None:
            await queue.join()
            return True
        try:
            await asyncio.wait_for(asyncio.shield(queue.join()), max(timeout_ms, 0) / 1000)
        except asyncio.TimeoutError:
            logger.debug(
                "telemetry | flush timed out after {}ms with {} pending",
                timeout_ms,
                queue.qsize(),
            )
            return False
        return True

    async def close(self, timeout_ms: int | None = None) -> bool:
        """Flush, then stop the worker; later emits are dropped."""
        self._closed = True
        drained = await self.flush(timeout_ms)
        worker = self._worker
        self._worker = None
        if worker is not None and not worker.done():
            worker.cancel()
            with suppress(asyncio.CancelledError):
                await worker
        queue = self._queue
        while queue is not None and not queue.empty():
            event, done = queue.get_nowait()
            queue.task_done()
            self._report(EmitError(event, "closed"))
            if not done.done():
                done.set_result(False)
        return drained


def build_emitter(
    meta: AgentSessionMeta,
    config: Config,
    *,
    sink: EventSink | None = None,
    on_error: Callable[[EmitError], None] | None = None,
) -> AgentEventEmitter:
    """Create an emitter writing to the configured SQLite sink unless one is given."""
    return AgentEventEmitter(
        meta,
        sink if sink is not None else SQLiteEventSink(config.sink_db_path),
        queue_size=config.emitter_queue_size,
        on_error=on_error,
    )
