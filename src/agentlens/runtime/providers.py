"""Provider builders for the PydanticAI persona rewrite model."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_ai.models.fallback import FallbackModel
from pydantic_ai.models.openai import OpenAIChatModel
from pydantic_ai.models.openrouter import OpenRouterModel, OpenRouterModelSettings
from pydantic_ai.providers.openai import OpenAIProvider
from pydantic_ai.providers.openrouter import OpenRouterProvider

from agentlens.config.settings import Config, LLMRoleConfig, get_config


@dataclass(frozen=True)
class FallbackSpec:
    """Parsed fallback descriptor used for model-chain construction."""

    provider: str
    model: str


def _default_api_base(provider: str, config: Config) -> str:
    """Return provider default API base from config's [providers] section."""
    return config.provider_api_bases.get(provider, "")


def _api_key_for_provider(config: Config, provider: str) -> str | None:
    """Resolve API key for a provider from environment-backed config."""
    if provider == "openrouter":
        return config.openrouter_api_key
    if provider == "openai":
        return config.openai_api_key
    return None


def parse_fallback_spec(
    raw: str, *, default_provider: str = "openrouter"
) -> FallbackSpec:
    """Parse fallback descriptor in the format ``provider:model`` or ``model``."""
    text = str(raw).strip()
    if not text:
        raise RuntimeError("fallback_model_empty")
    if ":" not in text:
        return FallbackSpec(provider=default_provider, model=text)
    provider, model = text.split(":", 1)
    provider = provider.strip().lower()
    model = model.strip()
    if not provider or not model:
        raise RuntimeError(f"fallback_model_invalid:{raw}")
    return FallbackSpec(provider=provider, model=model)


def _build_single_model(
    *,
    provider: str,
    model: str,
    api_base: str,
    config: Config,
    openrouter_provider_order: tuple[str, ...] = (),
):
    """Build one PydanticAI model object for a provider/model pair."""
    provider_name = provider.strip().lower()
    if provider_name == "openrouter":
        provider_obj = OpenRouterProvider(
            api_key=_api_key_for_provider(config, "openrouter")
        )
        settings = None
        if openrouter_provider_order:
            settings = OpenRouterModelSettings(
                openrouter_provider={"order": list(openrouter_provider_order)}
            )
        return OpenRouterModel(
            model_name=model, provider=provider_obj, settings=settings
        )
    if provider_name == "ollama":
        ollama_base = api_base or _default_api_base("ollama", config)
        provider_obj = OpenAIProvider(
            api_key="ollama",
            base_url=f"{ollama_base}/v1"
            if not ollama_base.endswith("/v1")
            else ollama_base,
        )
        return OpenAIChatModel(model_name=model, provider=provider_obj)
    if provider_name == "openai":
        provider_obj = OpenAIProvider(
            api_key=_api_key_for_provider(config, provider_name),
            base_url=api_base or _default_api_base(provider_name, config),
        )
        return OpenAIChatModel(model_name=model, provider=provider_obj)
    raise RuntimeError(f"unsupported_model_provider:{provider_name}")


def build_model_from_role(
    role_cfg: LLMRoleConfig,
    *,
    config: Config | None = None,
):
    """Build PydanticAI model chain (primary plus fallbacks) from a role config."""
    cfg = config or get_config()
    primary = _build_single_model(
        provider=role_cfg.provider,
        model=role_cfg.model,
        api_base=role_cfg.api_base,
        config=cfg,
        openrouter_provider_order=role_cfg.openrouter_provider_order,
    )
    fallback_specs = [parse_fallback_spec(item) for item in role_cfg.fallback_models]
    if not fallback_specs:
        return primary
    fallback_models = [
        _build_single_model(
            provider=item.provider,
            model=item.model,
            api_base="",
            config=cfg,
            openrouter_provider_order=role_cfg.openrouter_provider_order,
        )
        for item in fallback_specs
    ]
    return FallbackModel(primary, *fallback_models)


def build_persona_model(*, config: Config | None = None):
    """Build the model used by the persona rewrite from ``[roles.persona]``."""
    cfg = config or get_config()
    return build_model_from_role(cfg.persona_role, config=cfg)


if __name__ == "__main__":
    """Run provider-layer self-test for the persona role."""
    cfg = get_config()
    model = build_persona_model(config=cfg)
    assert model is not None
    if cfg.persona_role.fallback_models:
        assert isinstance(model, FallbackModel)
    print(
        f"providers: persona={cfg.persona_role.provider}/{cfg.persona_role.model} "
        f"fallbacks={len(cfg.persona_role.fallback_models)}"
    )
