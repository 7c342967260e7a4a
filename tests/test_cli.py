"""CLI parser and command-contract tests."""

from __future__ import annotations

import argparse
import io
from contextlib import redirect_stdout

import pytest

from agentlens.app import cli
from agentlens.config.settings import get_config
from agentlens.telemetry.ingest_events import AgentEventKind, AgentIngestEvent
from agentlens.telemetry.sink import SQLiteEventSink
from tests.helpers import run_cli, run_cli_json


def test_help_lists_commands() -> None:
    parser = cli.build_parser()
    out = io.StringIO()
    with redirect_stdout(out), pytest.raises(SystemExit) as exc:
        parser.parse_args(["--help"])
    assert exc.value.code == 0
    text = out.getvalue()
    for command in ("serve", "sessions", "aggregate", "events", "config"):
        assert command in text


def test_serve_parser_flags() -> None:
    args = cli.build_parser().parse_args(["serve", "--host", "0.0.0.0", "--port", "9000"])
    assert isinstance(args, argparse.Namespace)
    assert args.command == "serve"
    assert args.host == "0.0.0.0"
    assert args.port == 9000


def test_json_flag_hoisted_after_subcommand() -> None:
    assert cli._hoist_global_json_flag(["config", "--json"]) == ["--json", "config"]
    assert cli._hoist_global_json_flag(["config"]) == ["config"]


def test_no_command_prints_help() -> None:
    code, output = run_cli([])
    assert code == 0
    assert "agentlens" in output


def test_config_json() -> None:
    code, payload = run_cli_json(["config", "--json"])
    assert code == 0
    assert payload["effective"]["server_port"] == 8787
    assert payload["sources"][-1]["source"] == "explicit"


def test_config_text() -> None:
    code, output = run_cli(["config"])
    assert code == 0
    assert output.startswith("Config:")
    assert "Sources:" in output


def test_events_reads_local_sink() -> None:
    sink = SQLiteEventSink(get_config().sink_db_path)
    sink.insert_event(
        AgentIngestEvent(
            session_id="s1",
            request_id="r1",
            timestamp=1,
            sequence=0,
            kind=AgentEventKind.SESSION_STARTED,
            payload={},
        )
    )
    code, payload = run_cli_json(["--json", "events", "s1"])
    assert code == 0
    assert payload["count"] == 1
    code, output = run_cli(["events", "s1"])
    assert "#0 session_started source=server" in output


def test_events_empty_session() -> None:
    code, output = run_cli(["events", "nobody"])
    assert code == 0
    assert "No events recorded for nobody." in output


def test_sessions_when_server_down(monkeypatch) -> None:
    monkeypatch.setattr(cli, "_api_get", lambda path: None)
    code, _ = run_cli(["sessions"])
    assert code == 1


def test_sessions_lists_rows(monkeypatch) -> None:
    rows = {
        "sessions": [
            {
                "sessionId": "s1",
                "label": "Release",
                "messageCount": 2,
                "toolCalls": 3,
                "totalTokens": 90,
                "totalCost": 0.5,
                "lastEventAt": "2026-01-01T00:00:00Z",
            }
        ]
    }
    monkeypatch.setattr(cli, "_api_get", lambda path: rows)
    code, output = run_cli(["sessions"])
    assert code == 0
    assert "s1  Release  msgs=2 tools=3 tokens=90 cost=$0.5000" in output


def test_aggregate_prints_tools(monkeypatch) -> None:
    report = {
        "sessions": {"count": 1},
        "totals": {"toolCalls": 2, "totalTokens": 10, "totalCost": 0.0},
        "perTool": [
            {
                "tool": "read",
                "totalCalls": 2,
                "uniqueSessions": 1,
                "errors": 0,
                "avgMs": 5,
                "p95Ms": 6,
                "maxConsecutive": 2,
            }
        ],
    }
    monkeypatch.setattr(cli, "_api_get", lambda path: report)
    code, output = run_cli(["aggregate"])
    assert code == 0
    assert "Sessions: 1" in output
    assert "- read: calls=2 sessions=1 errors=0 avg=5ms p95=6ms maxRun=2" in output
