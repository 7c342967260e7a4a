"""Command-line interface for the agentlens metrics server and telemetry store.

``serve`` runs the HTTP server in-process. ``sessions`` and ``aggregate`` are
thin HTTP clients that talk to a running server (live metrics are held in the
server's memory). ``events`` and ``config`` run locally against the durable
sink and the effective config.
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import urllib.error
import urllib.request
from typing import Any

from agentlens import __version__
from agentlens.app.api import api_config, api_telemetry_events
from agentlens.config.logging import configure_logging, logger
from agentlens.config.settings import get_config
from agentlens.config.tracing import configure_tracing


def _emit(message: object = "", *, file: Any | None = None) -> None:
    """Write one CLI output line to stdout or a provided file-like target."""
    target = file if file is not None else sys.stdout
    target.write(f"{message}\n")


def _emit_structured(*, title: str, payload: dict[str, Any], as_json: bool) -> None:
    """Emit a dict payload either as JSON or as key/value lines."""
    if as_json:
        _emit(json.dumps(payload, indent=2, ensure_ascii=True, default=str))
        return
    _emit(title)
    for key, value in payload.items():
        _emit(f"- {key}: {value}")


def _not_running() -> int:
    """Print an error that the server is not reachable and return exit 1."""
    _emit("agentlens server is not running. Start with: agentlens serve", file=sys.stderr)
    return 1


def _api_get(path: str) -> dict[str, Any] | None:
    """GET from the running server. Returns None if not reachable."""
    config = get_config()
    url = f"http://{config.server_host}:{config.server_port}{path}"
    try:
        req = urllib.request.Request(url, method="GET")
        with urllib.request.urlopen(req, timeout=30) as resp:
            return json.loads(resp.read().decode())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None


def _hoist_global_json_flag(raw: list[str]) -> list[str]:
    """Allow ``--json`` before or after subcommands by normalizing argv order."""
    if "--json" not in raw:
        return raw
    return ["--json"] + [item for item in raw if item != "--json"]


def _cmd_serve(args: argparse.Namespace) -> int:
    """Run the metrics HTTP server until SIGTERM/SIGINT."""
    import threading

    from agentlens.app.server import build_server

    httpd = build_server(args.host, args.port)

    def _shutdown(signum: int, frame: Any) -> None:
        """Handle graceful shutdown on SIGTERM/SIGINT."""
        threading.Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    host, port = httpd.server_address[:2]
    logger.info("agentlens serve running at http://{}:{}/", host, port)
    try:
        httpd.serve_forever()
    finally:
        httpd.server_close()
    return 0


def _cmd_sessions(args: argparse.Namespace) -> int:
    """List live session summaries from the running server."""
    data = _api_get("/api/metrics/sessions")
    if data is None:
        return _not_running()
    sessions = data.get("sessions", [])
    if args.json:
        _emit(json.dumps(data, indent=2, ensure_ascii=True))
        return 0
    if not sessions:
        _emit("No sessions recorded.")
        return 0
    for row in sessions[: args.limit]:
        label = row.get("label") or row.get("clientChatId") or "-"
        _emit(
            f"{row.get('sessionId')}  {label}  msgs={row.get('messageCount', 0)} "
            f"tools={row.get('toolCalls', 0)} tokens={row.get('totalTokens', 0)} "
            f"cost=${row.get('totalCost', 0):.4f}  last={row.get('lastEventAt') or '-'}"
        )
    return 0


def _cmd_aggregate(args: argparse.Namespace) -> int:
    """Print the cross-session per-tool report from the running server."""
    data = _api_get("/api/metrics/aggregate")
    if data is None:
        return _not_running()
    if args.json:
        _emit(json.dumps(data, indent=2, ensure_ascii=True))
        return 0
    totals = data.get("totals", {})
    _emit(
        f"Sessions: {data.get('sessions', {}).get('count', 0)}  "
        f"tool calls: {totals.get('toolCalls', 0)}  "
        f"tokens: {totals.get('totalTokens', 0)}  "
        f"cost: ${totals.get('totalCost', 0):.4f}"
    )
    for row in data.get("perTool", [])[: args.limit]:
        _emit(
            f"- {row['tool']}: calls={row['totalCalls']} sessions={row['uniqueSessions']} "
            f"errors={row['errors']} avg={row['avgMs']}ms p95={row['p95Ms']}ms "
            f"maxRun={row['maxConsecutive']}"
        )
    return 0


def _cmd_events(args: argparse.Namespace) -> int:
    """Dump durable telemetry events of one session from the local sink."""
    data = api_telemetry_events(args.session_id)
    if args.json:
        _emit(json.dumps(data, indent=2, ensure_ascii=True))
        return 0
    if not data["events"]:
        _emit(f"No events recorded for {args.session_id}.")
        return 0
    for event in data["events"]:
        _emit(f"#{event.get('sequence')} {event.get('kind')} source={event.get('source')}")
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    """Show the effective configuration."""
    data = api_config()
    if args.json:
        _emit(json.dumps(data, indent=2, ensure_ascii=True))
        return 0
    _emit_structured(title="Config:", payload=data["effective"], as_json=False)
    _emit("Sources:")
    for source in data["sources"]:
        _emit(f"- {source.get('source')}: {source.get('path')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Construct the agentlens command-line parser."""
    _F = argparse.RawDescriptionHelpFormatter  # noqa: N806
    parser = argparse.ArgumentParser(
        prog="agentlens",
        formatter_class=_F,
        description="agentlens -- live metrics, durable telemetry and persona\n"
        "rewrites for agent sessions.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit structured JSON instead of human-readable text.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ────────────────────────────────────────────────────────
    serve = sub.add_parser(
        "serve",
        formatter_class=_F,
        help="Start the metrics HTTP server",
        description=(
            "Serve ingest, live stream, session and aggregate APIs.\n\n"
            "Examples:\n"
            "  agentlens serve\n"
            "  agentlens serve --host 0.0.0.0 --port 8787"
        ),
    )
    serve.add_argument("--host", help="Bind address (default: [server] host).")
    serve.add_argument("--port", type=int, help="Bind port (default: [server] port).")
    serve.set_defaults(func=_cmd_serve)

    # ── sessions ─────────────────────────────────────────────────────
    sessions = sub.add_parser(
        "sessions",
        help="List live sessions from a running server",
    )
    sessions.add_argument("--limit", type=int, default=20, help="Rows to print.")
    sessions.set_defaults(func=_cmd_sessions)

    # ── aggregate ────────────────────────────────────────────────────
    aggregate = sub.add_parser(
        "aggregate",
        help="Show the per-tool aggregate report from a running server",
    )
    aggregate.add_argument("--limit", type=int, default=20, help="Tools to print.")
    aggregate.set_defaults(func=_cmd_aggregate)

    # ── events ───────────────────────────────────────────────────────
    events = sub.add_parser(
        "events",
        formatter_class=_F,
        help="Dump durable telemetry events for one session",
        description=(
            "Read the local SQLite event sink.\n\n"
            "Examples:\n"
            "  agentlens events 3f2c9a\n"
            "  agentlens events 3f2c9a --json"
        ),
    )
    events.add_argument("session_id", help="Session id to dump.")
    events.set_defaults(func=_cmd_events)

    # ── config ───────────────────────────────────────────────────────
    config = sub.add_parser("config", help="Show effective configuration")
    config.set_defaults(func=_cmd_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for CLI invocation with global flags and dispatch."""
    configure_logging()
    configure_tracing(get_config())
    parser = build_parser()
    raw = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(_hoist_global_json_flag(raw))

    if not getattr(args, "command", None):
        parser.print_help()
        return 0

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
