"""Central config loading from layered TOML files.

Layers (low to high priority):
1. agentlens/config/default.toml
2. ~/.agentlens/config.toml
3. AGENTLENS_CONFIG env path (optional explicit override)

API keys are read from environment variables only.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "default.toml"
USER_CONFIG_PATH = Path.home() / ".agentlens" / "config.toml"
GLOBAL_DATA_DIR = Path.home() / ".agentlens"

_LAST_CONFIG_SOURCES: list[dict[str, str]] = []
_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LLMRoleConfig:
    """Role config for the PydanticAI persona rewrite agent."""

    provider: str
    model: str
    api_base: str
    fallback_models: tuple[str, ...]
    timeout_seconds: int
    openrouter_provider_order: tuple[str, ...]


def load_toml_file(path: Path | None) -> dict[str, Any]:
    """Load TOML file into a dict; return empty dict on failures."""
    if not path or not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    except Exception:
        return {}
    return payload if isinstance(payload, dict) else {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge dict values with override precedence."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _expand(value: Any, default: Path) -> Path:
    """Expand user path with fallback to default path."""
    if value in (None, ""):
        return default
    try:
        return Path(str(value)).expanduser()
    except (TypeError, OSError, ValueError):
        return default


def _to_non_empty_string(value: Any) -> str:
    """Convert value to stripped string, defaulting to empty string."""
    if value is None:
        return ""
    return str(value).strip()


def _to_int(value: Any, default: int, minimum: int = 1) -> int:
    """Convert value to bounded integer with fallback default."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def _to_float(value: Any, default: float, minimum: float, maximum: float) -> float:
    """Convert value to bounded float with fallback default."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, min(maximum, parsed))


def _to_bool(value: Any, default: bool) -> bool:
    """Convert TOML bool/string values to bool with fallback default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_VALUES
    return default


def _to_string_tuple(value: Any) -> tuple[str, ...]:
    """Normalize a TOML list/string into a tuple of non-empty strings."""
    if isinstance(value, list):
        return tuple(str(item).strip() for item in value if str(item).strip())
    if isinstance(value, str):
        parts = [item.strip() for item in value.split(",")]
        return tuple(item for item in parts if item)
    return ()


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a TOML table by name, or an empty dict for missing/invalid tables."""
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def get_user_config_path() -> Path:
    """Return canonical user config path."""
    return USER_CONFIG_PATH


def ensure_user_config_exists() -> Path:
    """Create user config scaffold outside pytest if it does not exist."""
    path = USER_CONFIG_PATH
    if path.exists() or os.getenv("PYTEST_CURRENT_TEST"):
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        """\
# agentlens user overrides
# Override only keys you need.

# [store]
# max_sessions = 500

# [roles.persona]
# provider = "openrouter"
# model = "google/gemini-2.0-flash-001"
""",
        encoding="utf-8",
    )
    return path


def _load_layers() -> tuple[dict[str, Any], list[dict[str, str]]]:
    """Load and merge all configuration layers in precedence order."""
    merged: dict[str, Any] = {}
    sources: list[dict[str, str]] = []

    layers: list[tuple[str, Path]] = [
        ("package_default", DEFAULT_CONFIG_PATH),
        ("user", USER_CONFIG_PATH),
    ]

    explicit = os.getenv("AGENTLENS_CONFIG")
    if explicit:
        layers.append(("explicit", Path(explicit).expanduser()))

    for source_name, path in layers:
        payload = load_toml_file(path)
        if payload:
            merged = _deep_merge(merged, payload)
            sources.append({"source": source_name, "path": str(path)})

    return merged, sources


def get_config_sources() -> list[dict[str, str]]:
    """Return last-computed config source list."""
    return [dict(item) for item in _LAST_CONFIG_SOURCES]


@dataclass(frozen=True)
class Config:
    """Effective runtime configuration from TOML layers and environment."""

    data_dir: Path
    sink_db_path: Path

    server_host: str
    server_port: int

    metrics_enabled: bool
    keepalive_seconds: int
    top_tools_limit: int

    store_max_sessions: int
    store_session_ttl_seconds: int
    store_max_events_per_session: int
    store_max_recent_sessions: int

    pricing_input_per_million: float
    pricing_output_per_million: float

    emitter_queue_size: int
    emitter_flush_timeout_ms: int

    persona_enabled: bool
    persona_role: LLMRoleConfig

    tracing_enabled: bool
    tracing_include_httpx: bool

    openai_api_key: str | None
    openrouter_api_key: str | None

    provider_api_bases: dict[str, str] = field(default_factory=dict)

    def public_dict(self) -> dict[str, Any]:
        """Return safe serialized config for CLI/API visibility."""
        return {
            "data_dir": str(self.data_dir),
            "sink_db_path": str(self.sink_db_path),
            "server_host": self.server_host,
            "server_port": self.server_port,
            "metrics_enabled": self.metrics_enabled,
            "keepalive_seconds": self.keepalive_seconds,
            "top_tools_limit": self.top_tools_limit,
            "store": {
                "max_sessions": self.store_max_sessions,
                "session_ttl_seconds": self.store_session_ttl_seconds,
                "max_events_per_session": self.store_max_events_per_session,
                "max_recent_sessions": self.store_max_recent_sessions,
            },
            "pricing": {
                "input_per_million": self.pricing_input_per_million,
                "output_per_million": self.pricing_output_per_million,
            },
            "emitter": {
                "queue_size": self.emitter_queue_size,
                "flush_timeout_ms": self.emitter_flush_timeout_ms,
            },
            "persona_enabled": self.persona_enabled,
            "persona_role": {
                "provider": self.persona_role.provider,
                "model": self.persona_role.model,
                "api_base": self.persona_role.api_base,
                "fallback_models": list(self.persona_role.fallback_models),
                "timeout_seconds": self.persona_role.timeout_seconds,
                "openrouter_provider_order": list(
                    self.persona_role.openrouter_provider_order
                ),
            },
            "tracing_enabled": self.tracing_enabled,
            "tracing_include_httpx": self.tracing_include_httpx,
        }


def _build_llm_role(
    raw: dict[str, Any], *, default_provider: str, default_model: str
) -> LLMRoleConfig:
    """Build one model role config from TOML payload."""
    provider = _to_non_empty_string(raw.get("provider")) or default_provider
    model = _to_non_empty_string(raw.get("model")) or default_model
    return LLMRoleConfig(
        provider=provider,
        model=model,
        api_base=_to_non_empty_string(raw.get("api_base")),
        fallback_models=_to_string_tuple(raw.get("fallback_models")),
        timeout_seconds=_to_int(raw.get("timeout_seconds"), 30, minimum=1),
        openrouter_provider_order=_to_string_tuple(
            raw.get("openrouter_provider_order")
        ),
    )


@lru_cache(maxsize=1)
def load_config() -> Config:
    """Load effective config from TOML layers plus env API keys."""
    load_dotenv()
    ensure_user_config_exists()
    toml_data, sources = _load_layers()

    global _LAST_CONFIG_SOURCES
    _LAST_CONFIG_SOURCES = sources

    data = _section(toml_data, "data")
    server = _section(toml_data, "server")
    metrics = _section(toml_data, "metrics")
    store = _section(toml_data, "store")
    pricing = _section(toml_data, "pricing")
    emitter = _section(toml_data, "emitter")
    persona = _section(toml_data, "persona")
    roles = _section(toml_data, "roles")
    providers = _section(toml_data, "providers")
    tracing = _section(toml_data, "tracing")

    data_dir = _expand(data.get("dir"), GLOBAL_DATA_DIR)

    persona_role = _build_llm_role(
        _section(roles, "persona"),
        default_provider="openrouter",
        default_model="google/gemini-2.0-flash-001",
    )

    port = _to_int(server.get("port"), 8787, minimum=1)
    if port > 65535:
        port = 8787

    metrics_env = os.getenv("AGENTLENS_METRICS", "").strip().lower()

    return Config(
        data_dir=data_dir,
        sink_db_path=data_dir / "index" / "events.sqlite3",
        server_host=_to_non_empty_string(server.get("host")) or "127.0.0.1",
        server_port=port,
        metrics_enabled=_to_bool(metrics.get("enabled"), True)
        or metrics_env in _TRUE_VALUES,
        keepalive_seconds=_to_int(metrics.get("keepalive_seconds"), 15, minimum=1),
        top_tools_limit=_to_int(metrics.get("top_tools"), 5, minimum=1),
        store_max_sessions=_to_int(store.get("max_sessions"), 1000, minimum=1),
        store_session_ttl_seconds=_to_int(
            store.get("session_ttl_seconds"), 86400, minimum=0
        ),
        store_max_events_per_session=_to_int(
            store.get("max_events_per_session"), 5000, minimum=1
        ),
        store_max_recent_sessions=_to_int(
            store.get("max_recent_sessions"), 200, minimum=1
        ),
        pricing_input_per_million=_to_float(
            pricing.get("input_per_million"), 1.25, minimum=0.0, maximum=1_000.0
        ),
        pricing_output_per_million=_to_float(
            pricing.get("output_per_million"), 10.0, minimum=0.0, maximum=1_000.0
        ),
        emitter_queue_size=_to_int(emitter.get("queue_size"), 1000, minimum=1),
        emitter_flush_timeout_ms=_to_int(
            emitter.get("flush_timeout_ms"), 2000, minimum=0
        ),
        persona_enabled=_to_bool(persona.get("enabled"), True),
        persona_role=persona_role,
        tracing_enabled=_to_bool(tracing.get("enabled"), False)
        or os.getenv("AGENTLENS_TRACING", "").strip().lower() in _TRUE_VALUES,
        tracing_include_httpx=_to_bool(tracing.get("include_httpx"), False),
        openai_api_key=_to_non_empty_string(os.environ.get("OPENAI_API_KEY")) or None,
        openrouter_api_key=_to_non_empty_string(os.environ.get("OPENROUTER_API_KEY"))
        or None,
        provider_api_bases={
            str(name): _to_non_empty_string(url) for name, url in providers.items()
        },
    )


def get_config() -> Config:
    """Return cached effective configuration."""
    return load_config()


def reload_config() -> Config:
    """Clear config cache and return reloaded configuration."""
    load_config.cache_clear()
    return load_config()


if __name__ == "__main__":
    """Run a real-path config smoke test."""
    cfg = load_config()
    assert cfg.data_dir
    assert cfg.sink_db_path.name == "events.sqlite3"
    assert cfg.top_tools_limit >= 1
    assert cfg.persona_role.provider
    payload = cfg.public_dict()
    assert "store" in payload
    assert "persona_role" in payload
    print(
        f"""\
Config loaded: \
data_dir={cfg.data_dir}, \
persona={cfg.persona_role.provider}/{cfg.persona_role.model}"""
    )
