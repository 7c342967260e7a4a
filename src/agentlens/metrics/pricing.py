"""Token pricing and character-based usage estimation.

Step and total usage events carry real token counts; tool payloads and
persona rewrites only have text, so their usage is estimated from character
counts (default 4 chars per token) and priced per model.
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from typing import Any

from agentlens.config.settings import Config
from agentlens.metrics.models import WireModel


@dataclass(frozen=True)
class TokenPricing:
    """USD price per one million input/output tokens."""

    input_per_million: float = 1.25
    output_per_million: float = 10.0

    def cost(self, input_tokens: float, output_tokens: float) -> float:
        """Return USD cost for the given token counts."""
        return (input_tokens / 1_000_000) * self.input_per_million + (
            output_tokens / 1_000_000
        ) * self.output_per_million


DEFAULT_PRICING = TokenPricing()


def pricing_from_config(config: Config) -> TokenPricing:
    """Build token pricing from the ``[pricing]`` config table."""
    return TokenPricing(
        input_per_million=config.pricing_input_per_million,
        output_per_million=config.pricing_output_per_million,
    )


@dataclass(frozen=True)
class ModelEstimation:
    chars_per_token: float = 4
    prompt_cost_per_million: float = 2
    completion_cost_per_million: float = 2


_DEFAULT_ESTIMATION = ModelEstimation()

MODEL_OVERRIDES: dict[str, dict[str, float]] = {
    "alibaba/qwen3-coder": {
        "prompt_cost_per_million": 2,
        "completion_cost_per_million": 2,
    },
    "google/gemini-2.0-flash": {
        "prompt_cost_per_million": 0.1,
        "completion_cost_per_million": 0.4,
    },
    "openai/gpt-5": {
        "prompt_cost_per_million": 5,
        "completion_cost_per_million": 15,
    },
}


class UsageEstimates(WireModel):
    """Token usage, either reported by a provider or estimated from text."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0
    char_count: int = 0

    def is_empty(self) -> bool:
        """Return True when no token or character count is set."""
        return not any(
            (
                self.prompt_tokens,
                self.completion_tokens,
                self.total_tokens,
                self.char_count,
            )
        )


def _env_chars_per_token() -> float | None:
    """Read AGENTLENS_CHARS_PER_TOKEN; ignore missing or non-positive values."""
    raw = os.getenv("AGENTLENS_CHARS_PER_TOKEN")
    try:
        parsed = float(raw) if raw else 0.0
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def estimation_for_model(model: str | None = None) -> ModelEstimation:
    """Resolve chars-per-token and per-model costs with overrides applied."""
    override = MODEL_OVERRIDES.get(model or "", {})
    return ModelEstimation(
        chars_per_token=override.get("chars_per_token")
        or _env_chars_per_token()
        or _DEFAULT_ESTIMATION.chars_per_token,
        prompt_cost_per_million=override.get(
            "prompt_cost_per_million", _DEFAULT_ESTIMATION.prompt_cost_per_million
        ),
        completion_cost_per_million=override.get(
            "completion_cost_per_million",
            _DEFAULT_ESTIMATION.completion_cost_per_million,
        ),
    )


def estimate_tokens_from_text(text: str, model: str | None = None) -> tuple[int, int]:
    """Return ``(tokens, char_count)``; any non-empty text is at least one token."""
    char_count = len(text)
    if char_count == 0:
        return 0, 0
    per_token = estimation_for_model(model).chars_per_token
    return max(1, math.ceil(char_count / per_token)), char_count


def estimate_tokens_from_json(value: Any, model: str | None = None) -> tuple[int, int]:
    """Estimate tokens for a JSON-serializable value (strings are used as-is)."""
    if isinstance(value, str):
        serialized = value
    else:
        try:
            serialized = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            serialized = ""
    return estimate_tokens_from_text(serialized, model)


def estimate_tool_call_usage(
    tool_input: Any, tool_output: Any, model: str | None = None
) -> tuple[UsageEstimates, int, int]:
    """Estimate usage of one tool call: input counts as prompt, output as completion."""
    in_tokens, in_chars = estimate_tokens_from_json(tool_input, model)
    out_tokens, out_chars = estimate_tokens_from_json(tool_output, model)
    usage = UsageEstimates(
        prompt_tokens=in_tokens,
        completion_tokens=out_tokens,
        total_tokens=in_tokens + out_tokens,
        char_count=in_chars + out_chars,
    )
    return usage, in_chars, out_chars


def estimate_cost_usd(usage: UsageEstimates, model: str | None = None) -> float:
    """Price an estimate with per-model rates, rounded to 6 decimals."""
    rates = estimation_for_model(model)
    prompt_cost = (usage.prompt_tokens / 1_000_000) * rates.prompt_cost_per_million
    completion_cost = (
        usage.completion_tokens / 1_000_000
    ) * rates.completion_cost_per_million
    return round(prompt_cost + completion_cost, 6)


def merge_usage(base: UsageEstimates, other: UsageEstimates) -> UsageEstimates:
    """Return the field-wise sum of two usage records."""
    return UsageEstimates(
        prompt_tokens=base.prompt_tokens + other.prompt_tokens,
        completion_tokens=base.completion_tokens + other.completion_tokens,
        total_tokens=base.total_tokens + other.total_tokens,
        reasoning_tokens=base.reasoning_tokens + other.reasoning_tokens,
        cached_input_tokens=base.cached_input_tokens + other.cached_input_tokens,
        char_count=base.char_count + other.char_count,
    )
