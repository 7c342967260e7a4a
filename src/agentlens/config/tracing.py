"""OpenTelemetry tracing for the persona rewrite model calls.

Sends spans to Logfire cloud when a token is present. Activated by
``tracing.enabled = true`` in config or ``AGENTLENS_TRACING=1``.
"""

from __future__ import annotations

import logfire
from loguru import logger

from agentlens.config.settings import Config


def configure_tracing(config: Config) -> None:
    """Activate OpenTelemetry tracing if enabled in config or via AGENTLENS_TRACING.

    Must be called once at startup before any persona rewriter is constructed.
    """
    if not config.tracing_enabled:
        return

    logfire.configure(
        send_to_logfire="if-token-present",
        console=False,
    )
    logfire.instrument_pydantic_ai()
    if config.tracing_include_httpx:
        logfire.instrument_httpx(capture_all=True)

    logger.info("OTel tracing enabled → Logfire")


if __name__ == "__main__":
    """Minimal self-test: configure_tracing runs without error."""
    from agentlens.config.settings import load_config

    cfg = load_config()
    configure_tracing(cfg)
    state = "enabled" if cfg.tracing_enabled else "disabled"
    print(f"tracing.py self-test passed (tracing {state})")
