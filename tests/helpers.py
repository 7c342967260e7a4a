"""Shared test utilities for constructing canonical runtime configuration."""

from __future__ import annotations

import io
import json
from contextlib import redirect_stdout
from pathlib import Path
from typing import Any

from agentlens.config.settings import Config, LLMRoleConfig
from agentlens.metrics.models import (
    StepUsageEvent,
    ToolEndEvent,
    ToolStartEvent,
)


def make_config(base: Path) -> Config:
    """Build a deterministic Config object rooted at ``base`` for tests."""
    return Config(
        data_dir=base,
        sink_db_path=base / "index" / "events.sqlite3",
        server_host="127.0.0.1",
        server_port=8787,
        metrics_enabled=True,
        keepalive_seconds=15,
        top_tools_limit=5,
        store_max_sessions=1000,
        store_session_ttl_seconds=86400,
        store_max_events_per_session=5000,
        store_max_recent_sessions=200,
        pricing_input_per_million=1.25,
        pricing_output_per_million=10.0,
        emitter_queue_size=1000,
        emitter_flush_timeout_ms=2000,
        persona_enabled=True,
        persona_role=LLMRoleConfig(
            provider="openrouter",
            model="google/gemini-2.0-flash-001",
            api_base="",
            fallback_models=(),
            timeout_seconds=30,
            openrouter_provider_order=(),
        ),
        tracing_enabled=False,
        tracing_include_httpx=False,
        openai_api_key=None,
        openrouter_api_key=None,
        provider_api_bases={
            "openai": "https://api.openai.com/v1",
            "openrouter": "https://openrouter.ai/api/v1",
            "ollama": "http://127.0.0.1:11434",
        },
    )


def write_test_config(tmp_path: Path, **sections: dict[str, Any]) -> Path:
    """Write a test config.toml pointing data dir to ``tmp_path``.

    Usage::

        write_test_config(tmp_path, store={"max_sessions": 10})
    """
    all_sections: dict[str, dict[str, Any]] = {
        "data": {"dir": str(tmp_path)},
    }
    for name, payload in sections.items():
        if isinstance(payload, dict):
            all_sections[name.replace("__", ".")] = payload

    lines: list[str] = []
    for section_name, fields in all_sections.items():
        lines.append(f"[{section_name}]")
        for key, value in fields.items():
            if isinstance(value, bool):
                lines.append(f"{key} = {'true' if value else 'false'}")
            elif isinstance(value, (int, float)):
                lines.append(f"{key} = {value}")
            else:
                lines.append(f'{key} = "{value}"')
        lines.append("")

    config_path = tmp_path / "test_config.toml"
    config_path.write_text("\n".join(lines), encoding="utf-8")
    return config_path


def run_cli(args: list[str]) -> tuple[int, str]:
    """Run CLI command and return ``(exit_code, stdout_text)``."""
    from agentlens.app import cli

    out = io.StringIO()
    with redirect_stdout(out):
        code = cli.main(args)
    return code, out.getvalue()


def run_cli_json(args: list[str]) -> tuple[int, dict]:
    """Run CLI command and parse stdout JSON payload."""
    code, output = run_cli(args)
    return code, json.loads(output)


def ts(second: int) -> str:
    """Return a fixed ISO timestamp ``second`` seconds into a test day."""
    minutes, secs = divmod(second, 60)
    return f"2026-01-01T00:{minutes:02d}:{secs:02d}.000Z"


def tool_start(
    session_id: str,
    call_id: str,
    name: str,
    *,
    at: int = 0,
    input_summary: str | None = None,
) -> ToolStartEvent:
    return ToolStartEvent(
        session_id=session_id,
        timestamp=ts(at),
        tool_call_id=call_id,
        tool_name=name,
        input_summary=input_summary,
    )


def tool_end(
    session_id: str,
    call_id: str,
    name: str,
    *,
    at: int = 0,
    duration_ms: int = 10,
    success: bool = True,
    output_summary: str | None = None,
) -> ToolEndEvent:
    return ToolEndEvent(
        session_id=session_id,
        timestamp=ts(at),
        tool_call_id=call_id,
        tool_name=name,
        duration_ms=duration_ms,
        success=success,
        error=None if success else "boom",
        output_summary=output_summary,
    )


def step_usage(
    session_id: str,
    step_index: int,
    *,
    at: int = 0,
    input_tokens: int = 0,
    output_tokens: int = 0,
    tool_call_ids: list[str] | None = None,
) -> StepUsageEvent:
    return StepUsageEvent(
        session_id=session_id,
        timestamp=ts(at),
        step_index=step_index,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=input_tokens + output_tokens,
        tool_call_ids=list(tool_call_ids or []),
    )
