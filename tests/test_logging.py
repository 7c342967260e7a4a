"""test logging."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from agentlens.config import logging as logging_mod


def test_configure_logging_sets_root_handler() -> None:
    logging.getLogger().handlers.clear()
    logging_mod.configure_logging("INFO")
    handlers = logging.getLogger().handlers
    assert any(isinstance(h, logging_mod._InterceptHandler) for h in handlers)


def test_configure_logging_clears_existing_handlers() -> None:
    logger = logging.getLogger("test_logger")
    dummy = logging.StreamHandler()
    logger.addHandler(dummy)
    logging_mod.configure_logging("INFO")
    assert logger.handlers == []
    assert logger.propagate is True


def test_loguru_messages_do_not_use_percent_style_placeholders() -> None:
    source_root = Path(__file__).resolve().parents[1] / "src" / "agentlens"
    pattern = re.compile(
        r"logger\.(?:trace|debug|info|success|warning|error|critical|exception)\(.*%[0-9\.\-]*[sdiforx]"
    )

    violations: list[str] = []
    for py_file in source_root.rglob("*.py"):
        for lineno, line in enumerate(
            py_file.read_text(encoding="utf-8").splitlines(), start=1
        ):
            if pattern.search(line):
                relative = py_file.relative_to(source_root.parent)
                violations.append(f"{relative}:{lineno}: {line.strip()}")

    assert not violations, (
        "Found percent-style placeholders in loguru logger calls:\n"
        + "\n".join(violations)
    )


def test_log_filter_hides_http_client_noise() -> None:
    assert logging_mod._log_filter({"name": "httpx"}) is False
    assert logging_mod._log_filter({"name": "agentlens.metrics.store"}) is True


def test_log_filter_can_enable_openai_http(monkeypatch) -> None:
    monkeypatch.delenv("AGENTLENS_LOG_OPENAI_HTTP", raising=False)
    assert logging_mod._log_filter({"name": "openai._base_client"}) is False
    monkeypatch.setenv("AGENTLENS_LOG_OPENAI_HTTP", "1")
    assert logging_mod._log_filter({"name": "openai._base_client"}) is True
