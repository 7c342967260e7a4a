"""Runtime exports for model provider builders.

Uses lazy __getattr__ so importing agentlens.runtime does not pull in
pydantic-ai model classes until a builder is actually requested.
"""

from __future__ import annotations

from typing import Any

__all__ = ["build_model_from_role", "build_persona_model"]


def __getattr__(name: str) -> Any:
    """Lazy-load runtime exports."""
    if name == "build_model_from_role":
        from agentlens.runtime.providers import build_model_from_role

        return build_model_from_role
    if name == "build_persona_model":
        from agentlens.runtime.providers import build_persona_model

        return build_persona_model
    raise AttributeError(name)
