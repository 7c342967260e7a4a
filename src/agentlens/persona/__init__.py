"""Persona voice rewrite of outbound answer streams."""

from agentlens.persona.rewrite import (
    PersonaOptions,
    PersonaOutcome,
    PersonaRewriteTransform,
    PersonaState,
    create_persona_transform,
    looks_structured,
)

__all__ = [
    "PersonaOptions",
    "PersonaOutcome",
    "PersonaRewriteTransform",
    "PersonaState",
    "create_persona_transform",
    "looks_structured",
]
