"""Prompt builders for the persona rewrite flow."""

from agentlens.runtime.prompts.persona import PERSONA_PROMPT, build_persona_rewrite_prompt

__all__ = [
    "PERSONA_PROMPT",
    "build_persona_rewrite_prompt",
]
