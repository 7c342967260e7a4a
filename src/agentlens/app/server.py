"""Metrics HTTP server: ingest, live SSE stream, session and aggregate APIs.

Runs on the stdlib ``ThreadingHTTPServer``; each request gets its own thread,
so the live stream blocks only its own connection. Metrics routes answer 404
when metrics are disabled in config.
"""

from __future__ import annotations

import json
import queue
import threading
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

from agentlens.app.api import (
    api_aggregate,
    api_health,
    api_ingest,
    api_rename_session,
    api_session_detail,
    api_sessions,
    api_telemetry_events,
    stream_hello,
)
from agentlens.config.logging import logger
from agentlens.config.settings import Config, get_config
from agentlens.errors import IngestValidationError, SessionNotFoundError
from agentlens.metrics.bus import EventBus, get_bus
from agentlens.metrics.models import MetricEvent
from agentlens.metrics.store import SessionEventStore, get_store
from agentlens.telemetry.sink import SQLiteEventSink

MAX_BODY_BYTES = 1_000_000
STREAM_BACKLOG = 1000
SESSION_PREFIX = "/api/metrics/session/"


def _parse_int(raw: str | None, default: int, *, minimum: int, maximum: int) -> int:
    """Parse bounded integer values from query/header strings."""
    try:
        value = int(str(raw))
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, value))


def _first(query: dict[str, list[str]], key: str) -> str:
    return (query.get(key) or [""])[0]


class MetricsServer(ThreadingHTTPServer):
    """HTTP server bound to one store, bus and config."""

    daemon_threads = True

    def __init__(
        self,
        address: tuple[str, int],
        *,
        config: Config,
        store: SessionEventStore,
        bus: EventBus,
        sink: SQLiteEventSink | None = None,
    ) -> None:
        super().__init__(address, MetricsHandler)
        self.config = config
        self.store = store
        self.bus = bus
        self.sink = sink
        self.stopping = threading.Event()

    def server_close(self) -> None:
        """Stop live streams, then close the listening socket."""
        self.stopping.set()
        super().server_close()


class MetricsHandler(BaseHTTPRequestHandler):
    """HTTP handler for metrics, telemetry and health APIs."""

    server_version = "AgentLens/0.1"
    server: MetricsServer

    def log_message(self, fmt: str, *args: object) -> None:  # noqa: A003
        """Route request logs through project logger."""
        logger.debug("server | " + fmt, *args)

    def _json(self, payload: dict | list, status: int = HTTPStatus.OK) -> None:
        """Write JSON response with status code."""
        body = json.dumps(payload, ensure_ascii=True, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _error(self, status: int, message: str) -> None:
        """Write standard JSON error payload."""
        self._json({"error": message}, status=status)

    def _read_json_body(self) -> dict[str, Any] | None:
        """Read the request body as a JSON object; None when it is not valid JSON."""
        size = _parse_int(
            self.headers.get("Content-Length"), 0, minimum=0, maximum=MAX_BODY_BYTES
        )
        if size <= 0:
            return {}
        body = self.rfile.read(size)
        if not body:
            return {}
        try:
            parsed = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return parsed if isinstance(parsed, dict) else {}

    def _metrics_enabled(self) -> bool:
        """Answer 404 and return False when metrics are switched off."""
        if self.server.config.metrics_enabled:
            return True
        self._error(HTTPStatus.NOT_FOUND, "Not Found")
        return False

    def _session_id_from_path(self, path: str) -> str:
        return unquote(path[len(SESSION_PREFIX):]).strip("/")

    # -- routes ----------------------------------------------------------------

    def _api_ingest(self) -> None:
        body = self._read_json_body()
        if body is None:
            self._json({"ok": False, "error": "Invalid JSON body"}, HTTPStatus.BAD_REQUEST)
            return
        try:
            self._json(api_ingest(body, store=self.server.store))
        except IngestValidationError as exc:
            self._json({"ok": False, "error": str(exc)}, HTTPStatus.BAD_REQUEST)

    def _api_session_detail(self, path: str) -> None:
        session_id = self._session_id_from_path(path)
        if not session_id:
            self._error(HTTPStatus.BAD_REQUEST, "Bad Request")
            return
        try:
            self._json(api_session_detail(session_id, store=self.server.store))
        except SessionNotFoundError:
            self._error(HTTPStatus.NOT_FOUND, "Not Found")

    def _api_rename_session(self, path: str) -> None:
        session_id = self._session_id_from_path(path)
        if not session_id:
            self._error(HTTPStatus.BAD_REQUEST, "Bad Request")
            return
        body = self._read_json_body() or {}
        try:
            self._json(api_rename_session(session_id, body, store=self.server.store))
        except SessionNotFoundError:
            self._error(HTTPStatus.NOT_FOUND, "Not Found")

    def _api_telemetry_events(self, query: dict[str, list[str]]) -> None:
        session_id = _first(query, "sessionId").strip()
        try:
            self._json(api_telemetry_events(session_id, sink=self.server.sink))
        except IngestValidationError as exc:
            self._error(HTTPStatus.BAD_REQUEST, str(exc))

    def _api_stream(self, query: dict[str, list[str]]) -> None:
        """Relay bus events as Server-Sent Events until the client disconnects."""
        all_flag = _first(query, "all").lower() in {"1", "true"}
        session_id = _first(query, "sessionId") or None
        scope = None if all_flag or not session_id else session_id
        backlog: queue.Queue[MetricEvent] = queue.Queue(maxsize=STREAM_BACKLOG)

        def _deliver(event: MetricEvent) -> None:
            """Hand one bus event to this connection's writer."""
            try:
                backlog.put_nowait(event)
            except queue.Full:
                logger.warning("server | stream backlog full, dropping {}", event.type)

        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Cache-Control", "no-cache, no-transform")
        self.send_header("Connection", "keep-alive")
        self.end_headers()

        keepalive = self.server.config.keepalive_seconds
        with self.server.bus.subscription(_deliver, session_id=scope):
            try:
                self._write_sse(stream_hello(session_id, all_flag))
                next_ping = time.monotonic() + keepalive
                while not self.server.stopping.is_set():
                    remaining = next_ping - time.monotonic()
                    if remaining <= 0:
                        self.wfile.write(b": ping\n\n")
                        self.wfile.flush()
                        next_ping = time.monotonic() + keepalive
                        continue
                    try:
                        event = backlog.get(timeout=remaining)
                    except queue.Empty:
                        continue
                    self._write_sse(event.to_wire())
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("server | stream client disconnected")

    def _write_sse(self, payload: dict[str, Any]) -> None:
        data = json.dumps(payload, ensure_ascii=True, default=str)
        self.wfile.write(f"data: {data}\n\n".encode("utf-8"))
        self.wfile.flush()

    # -- dispatch --------------------------------------------------------------

    def _handle_api_get(self, path: str, query: dict[str, list[str]]) -> None:
        """Dispatch GET API routes to the matching handler."""
        if path == "/api/health":
            self._json(api_health())
            return
        if path == "/api/telemetry/events":
            self._api_telemetry_events(query)
            return
        if not path.startswith("/api/metrics/"):
            self._error(HTTPStatus.NOT_FOUND, "Not found")
            return
        if not self._metrics_enabled():
            return
        store = self.server.store
        no_query_handlers = {
            "/api/metrics/sessions": lambda: self._json(api_sessions(store=store)),
            "/api/metrics/aggregate": lambda: self._json(api_aggregate(store=store)),
        }
        if path == "/api/metrics/stream":
            self._api_stream(query)
            return
        if path in no_query_handlers:
            no_query_handlers[path]()
            return
        if path.startswith(SESSION_PREFIX):
            self._api_session_detail(path)
            return
        self._error(HTTPStatus.NOT_FOUND, "Not found")

    def _run(self, handler: Any, *args: Any) -> None:
        """Run one route handler, mapping unexpected failures to HTTP 500."""
        try:
            handler(*args)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("server | client went away")
        except Exception as exc:
            logger.exception("server | unhandled error on {}", self.path)
            self._error(HTTPStatus.INTERNAL_SERVER_ERROR, str(exc))

    def do_GET(self) -> None:  # noqa: N802
        """Serve GET API routes."""
        parsed = urlparse(self.path)
        query = parse_qs(parsed.query or "", keep_blank_values=True)
        self._run(self._handle_api_get, parsed.path or "/", query)

    def do_POST(self) -> None:  # noqa: N802
        """Serve the ingest endpoint."""
        path = urlparse(self.path).path or "/"
        if path != "/api/metrics/ingest":
            self._error(HTTPStatus.NOT_FOUND, "Not found")
            return
        if self._metrics_enabled():
            self._run(self._api_ingest)

    def do_PATCH(self) -> None:  # noqa: N802
        """Serve session rename."""
        path = urlparse(self.path).path or "/"
        if not path.startswith(SESSION_PREFIX):
            self._error(HTTPStatus.NOT_FOUND, "Not found")
            return
        if self._metrics_enabled():
            self._run(self._api_rename_session, path)


def build_server(
    host: str | None = None,
    port: int | None = None,
    *,
    config: Config | None = None,
    store: SessionEventStore | None = None,
    bus: EventBus | None = None,
) -> MetricsServer:
    """Bind a metrics server; defaults come from config and the process-wide store."""
    cfg = config or get_config()
    bind_host = host or cfg.server_host or "127.0.0.1"
    bind_port = int(port if port is not None else cfg.server_port)
    return MetricsServer(
        (bind_host, bind_port),
        config=cfg,
        store=store or get_store(),
        bus=bus or get_bus(),
        sink=SQLiteEventSink(cfg.sink_db_path),
    )


def run_server(host: str | None = None, port: int | None = None) -> int:
    """Run the metrics HTTP server until interrupted."""
    httpd = build_server(host, port)
    bind_host, bind_port = httpd.server_address[:2]
    logger.info("agentlens server running at http://{}:{}/", bind_host, bind_port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down agentlens server")
    finally:
        httpd.server_close()
    return 0
