"""In-process publish/subscribe fan-out of live metric events.

Each subscriber owns a bounded delivery queue drained by its own daemon
thread, so ``publish`` never waits on a slow handler. There is no replay:
a subscriber sees only events published after it joined.
"""

from __future__ import annotations

import itertools
import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from agentlens.config.logging import logger
from agentlens.metrics.models import MetricEvent

MetricsHandler = Callable[[MetricEvent], None]
Unsubscribe = Callable[[], None]

DEFAULT_SUBSCRIBER_QUEUE = 1000
_STOP = object()


class _Subscriber:
    """One handler plus the queue and thread that deliver to it."""

    def __init__(self, handler: MetricsHandler, *, name: str, queue_size: int) -> None:
        self.handler = handler
        self._queue: queue.Queue[object] = queue.Queue(maxsize=queue_size)
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def offer(self, event: MetricEvent) -> bool:
        """Queue one event for delivery; drop it with a warning when the queue is full."""
        if self._closed.is_set():
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(
                "metrics bus | subscriber {} backlog full, dropping {} event",
                self._thread.name,
                event.type,
            )
            return False
        return True

    def close(self) -> None:
        """Stop delivery; queued events not yet handled are discarded."""
        self._closed.set()
        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            pass

    def _run(self) -> None:
        """Deliver queued events until closed."""
        while True:
            item = self._queue.get()
            if item is _STOP or self._closed.is_set():
                return
            try:
                self.handler(item)  # type: ignore[arg-type]
            except Exception as exc:
                logger.warning(
                    "metrics bus | subscriber {} failed: {}", self._thread.name, exc
                )


class EventBus:
    """Fan-out of appended events to global and per-session subscribers."""

    def __init__(self, *, subscriber_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._all: dict[int, _Subscriber] = {}
        self._by_session: dict[str, dict[int, _Subscriber]] = {}
        self._queue_size = subscriber_queue_size

    def publish(self, event: MetricEvent) -> None:
        """Deliver one event to every matching subscriber exactly once."""
        with self._lock:
            targets = list(self._all.values())
            targets.extend(self._by_session.get(event.session_id, {}).values())
        for subscriber in targets:
            subscriber.offer(event)

    def subscribe_all(self, handler: MetricsHandler) -> Unsubscribe:
        """Receive every event; returns an idempotent unsubscribe function."""
        sub_id = next(self._ids)
        subscriber = _Subscriber(
            handler, name=f"metrics-sub-{sub_id}", queue_size=self._queue_size
        )
        with self._lock:
            self._all[sub_id] = subscriber

        def _unsubscribe() -> None:
            """Detach the subscriber and stop its delivery thread."""
            with self._lock:
                removed = self._all.pop(sub_id, None)
            if removed is not None:
                removed.close()

        return _unsubscribe

    def subscribe_to_session(
        self, session_id: str, handler: MetricsHandler
    ) -> Unsubscribe:
        """Receive events of one session; returns an idempotent unsubscribe function."""
        sub_id = next(self._ids)
        subscriber = _Subscriber(
            handler,
            name=f"metrics-sub-{sub_id}-{session_id[:8]}",
            queue_size=self._queue_size,
        )
        with self._lock:
            self._by_session.setdefault(session_id, {})[sub_id] = subscriber

        def _unsubscribe() -> None:
            """Detach the subscriber and drop the session entry when it empties."""
            with self._lock:
                bucket = self._by_session.get(session_id)
                removed = bucket.pop(sub_id, None) if bucket is not None else None
                if bucket is not None and not bucket:
                    del self._by_session[session_id]
            if removed is not None:
                removed.close()

        return _unsubscribe

    @contextmanager
    def subscription(
        self, handler: MetricsHandler, *, session_id: str | None = None
    ) -> Iterator[None]:
        """Scope a subscription to a ``with`` block; always unsubscribes on exit."""
        if session_id:
            unsubscribe = self.subscribe_to_session(session_id, handler)
        else:
            unsubscribe = self.subscribe_all(handler)
        try:
            yield
        finally:
            unsubscribe()

    def subscriber_count(self) -> int:
        """Return the number of live subscribers across all scopes."""
        with self._lock:
            return len(self._all) + sum(len(b) for b in self._by_session.values())


_BUS_LOCK = threading.Lock()
_BUS: EventBus | None = None


def get_bus() -> EventBus:
    """Return the process-wide event bus, creating it on first use."""
    global _BUS
    with _BUS_LOCK:
        if _BUS is None:
            _BUS = EventBus()
        return _BUS
