"""Layered TOML settings plus the logging and tracing setup built on them."""

from agentlens.config.settings import (
    Config,
    LLMRoleConfig,
    get_config,
    get_config_sources,
    reload_config,
)

__all__ = [
    "Config",
    "LLMRoleConfig",
    "get_config",
    "get_config_sources",
    "reload_config",
]
