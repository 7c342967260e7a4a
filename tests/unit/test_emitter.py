"""Unit tests for the durable event emitter.

Each test drives its own event loop with ``asyncio.run`` and a small
in-memory sink.
"""

from __future__ import annotations

import asyncio

from agentlens.telemetry.emitter import AgentEventEmitter, EmitError, build_emitter
from agentlens.telemetry.ingest_events import (
    AgentEventKind,
    AgentSessionMeta,
    MessageLoggedPayload,
)
from agentlens.telemetry.sink import SQLiteEventSink
from tests.helpers import make_config

META = AgentSessionMeta(session_id="sess-1", request_id="req-1", model="test/model")


class MemorySink:
    def __init__(self) -> None:
        self.events = []

    def insert_event(self, event) -> bool:
        self.events.append(event)
        return True


class AsyncMemorySink:
    def __init__(self) -> None:
        self.events = []

    async def insert_event(self, event) -> bool:
        await asyncio.sleep(0)
        self.events.append(event)
        return True


class FailingSink:
    def __init__(self, fail_on: set[int]) -> None:
        self.fail_on = fail_on
        self.events = []

    async def insert_event(self, event) -> bool:
        if event.sequence in self.fail_on:
            raise RuntimeError("disk full")
        self.events.append(event)
        return True


class BlockingSink:
    """Async sink whose writes wait until ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.events = []

    async def insert_event(self, event) -> bool:
        await self.release.wait()
        self.events.append(event)
        return True


def _message(n: int) -> dict:
    return {"role": "user", "message_id": f"m{n}", "text_preview": f"hello {n}"}


def test_events_written_in_submission_order():
    sink = AsyncMemorySink()

    async def scenario():
        emitter = AgentEventEmitter(META, sink)
        futures = [
            emitter.emit(AgentEventKind.MESSAGE_LOGGED, _message(i)) for i in range(5)
        ]
        assert await emitter.flush() is True
        return [await f for f in futures]

    results = asyncio.run(scenario())
    assert results == [True] * 5
    assert [e.sequence for e in sink.events] == [0, 1, 2, 3, 4]
    assert [e.payload["messageId"] for e in sink.events] == [f"m{i}" for i in range(5)]


def test_sync_sink_runs_off_loop():
    sink = MemorySink()

    async def scenario():
        emitter = AgentEventEmitter(META, sink, initial_sequence=10)
        ok = await emitter.emit("message_logged", _message(1))
        return ok

    assert asyncio.run(scenario()) is True
    [event] = sink.events
    assert event.sequence == 10
    assert event.session_id == "sess-1"
    assert event.request_id == "req-1"
    assert event.model == "test/model"
    assert event.kind is AgentEventKind.MESSAGE_LOGGED


def test_dedupe_key_writes_once():
    sink = MemorySink()

    async def scenario():
        emitter = AgentEventEmitter(META, sink)
        first = emitter.emit("message_logged", _message(1), dedupe_key="message_logged:m1")
        second = emitter.emit("message_logged", _message(1), dedupe_key="message_logged:m1")
        assert second.done() and second.result() is False
        await emitter.flush()
        return await first

    assert asyncio.run(scenario()) is True
    assert len(sink.events) == 1
    assert sink.events[0].dedupe_key == "message_logged:m1"


def test_sink_failure_is_reported_not_raised():
    sink = FailingSink(fail_on={1})
    reported: list[EmitError] = []

    async def scenario():
        emitter = AgentEventEmitter(META, sink, on_error=reported.append)
        futures = [emitter.emit("message_logged", _message(i)) for i in range(3)]
        await emitter.flush()
        return emitter, [await f for f in futures]

    emitter, results = asyncio.run(scenario())
    assert results == [True, False, True]
    assert [e.sequence for e in sink.events] == [0, 2]
    assert len(reported) == 1
    assert reported[0].reason == "sink_failed"
    assert "disk full" in reported[0].detail
    assert emitter.errors == reported


def test_on_error_callback_failure_is_swallowed():
    def explode(error: EmitError) -> None:
        raise ValueError("callback broke")

    async def scenario():
        emitter = AgentEventEmitter(META, FailingSink(fail_on={0}), on_error=explode)
        ok = await emitter.emit("message_logged", _message(0))
        return emitter, ok

    emitter, ok = asyncio.run(scenario())
    assert ok is False
    assert len(emitter.errors) == 1


def test_flush_timeout_returns_false():
    async def scenario():
        sink = BlockingSink()
        emitter = AgentEventEmitter(META, sink)
        pending = emitter.emit("message_logged", _message(0))
        timed_out = await emitter.flush(timeout_ms=20)
        sink.release.set()
        drained = await emitter.flush(timeout_ms=1000)
        return timed_out, drained, await pending

    timed_out, drained, ok = asyncio.run(scenario())
    assert timed_out is False
    assert drained is True
    assert ok is True


def test_queue_full_drops_and_reports():
    async def scenario():
        emitter = AgentEventEmitter(META, BlockingSink(), queue_size=1)
        first = emitter.emit("message_logged", _message(0), dedupe_key="k0")
        second = emitter.emit("message_logged", _message(1), dedupe_key="k1")
        dropped = second.done() and second.result() is False
        emitter.sink.release.set()
        await emitter.flush()
        # A dropped key may be retried later.
        retry = await emitter.emit("message_logged", _message(1), dedupe_key="k1")
        return emitter, await first, dropped, retry

    emitter, first, dropped, retry = asyncio.run(scenario())
    assert first is True
    assert dropped is True
    assert retry is True
    assert [e.reason for e in emitter.errors] == ["queue_full"]


def test_close_drops_later_emits():
    sink = MemorySink()

    async def scenario():
        emitter = AgentEventEmitter(META, sink)
        await emitter.emit("message_logged", _message(0))
        assert await emitter.close() is True
        late = await emitter.emit("message_logged", _message(1))
        return emitter, late

    emitter, late = asyncio.run(scenario())
    assert late is False
    assert len(sink.events) == 1
    assert emitter.errors[-1].reason == "closed"


def test_close_with_timeout_resolves_stuck_writes():
    async def scenario():
        emitter = AgentEventEmitter(META, BlockingSink())
        futures = [emitter.emit("message_logged", _message(i)) for i in range(3)]
        drained = await emitter.close(timeout_ms=20)
        return drained, [await f for f in futures], emitter

    drained, results, emitter = asyncio.run(scenario())
    assert drained is False
    assert results == [False, False, False]
    assert emitter.pending == 0
    # The cancelled in-flight write is reported like the queued ones.
    assert [e.reason for e in emitter.errors] == ["closed"] * 3
    assert [e.event.sequence for e in emitter.errors] == [0, 1, 2]


def test_invalid_payload_is_reported_and_key_stays_free():
    sink = MemorySink()
    reported: list[EmitError] = []

    async def scenario():
        emitter = AgentEventEmitter(META, sink, on_error=reported.append)
        bad = emitter.emit("message_logged", {"role": "bogus"}, dedupe_key="k1")
        assert bad.done() and bad.result() is False
        retry = emitter.emit("message_logged", _message(1), dedupe_key="k1")
        await emitter.flush()
        return await retry

    assert asyncio.run(scenario()) is True
    [event] = sink.events
    assert event.dedupe_key == "k1"
    assert event.sequence == 0
    assert [e.reason for e in reported] == ["invalid"]
    assert reported[0].event is None


def test_unknown_kind_is_reported_not_raised():
    async def scenario():
        emitter = AgentEventEmitter(META, MemorySink())
        ok = await emitter.emit("not_a_kind", {})
        return emitter, ok

    emitter, ok = asyncio.run(scenario())
    assert ok is False
    assert emitter.errors[0].reason == "invalid"


def test_build_emitter_uses_sqlite_sink(tmp_path):
    cfg = make_config(tmp_path)

    async def scenario():
        emitter = build_emitter(META, cfg)
        ok = await emitter.emit(
            AgentEventKind.MESSAGE_LOGGED,
            MessageLoggedPayload(role="assistant", message_id="m1", text_preview="done"),
        )
        return emitter, ok

    emitter, ok = asyncio.run(scenario())
    assert ok is True
    assert isinstance(emitter.sink, SQLiteEventSink)
    assert emitter.sink.count_events() == 1
