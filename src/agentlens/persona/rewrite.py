"""Persona rewrite of the agent's final answer on its outbound chunk stream.

The transform holds back ``text-delta`` chunks, and when the stream reaches
``finish`` (or ends) it asks a secondary model to restate the buffered answer
in the persona voice. The rewritten text goes out as one ``text-delta`` with
the original chunk id, followed by the held ``text-end`` and ``finish``.
Structured or empty answers, banter turns and persona-mode sessions are left
alone. Every outcome is reported as a ``persona_post_processed`` event.

Rewrites are memoized per transform by SHA-256 of the exact text, and
concurrent identical requests share one in-flight task. Aborting the stream
cancels any rewrite still in flight.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
import time
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import logfire
from pydantic_ai import Agent

from agentlens.config.logging import logger
from agentlens.config.settings import Config, get_config
from agentlens.runtime.prompts import PERSONA_PROMPT, build_persona_rewrite_prompt
from agentlens.runtime.providers import build_persona_model
from agentlens.telemetry.emitter import AgentEventEmitter
from agentlens.telemetry.ingest_events import (
    AgentEventKind,
    CapabilityIntent,
    PersonaPostProcessedPayload,
    PersonaPostProcessReason,
)

DEFAULT_PERSONA_MODEL_ID = "google/gemini-2.0-flash"

Rewriter = Callable[[str], Awaitable[str]]

_BRACKET_LINE_RE = re.compile(r"\n\s*[{}\[\]]")


class PersonaState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    REWRITING = "rewriting"
    FORWARDING = "forwarding"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class PersonaOutcome:
    """Decision for one buffered answer and the text to forward."""

    applied: bool
    text: str
    reason: PersonaPostProcessReason
    model_id: str | None = None
    duration_ms: int | None = None
    raw_model_output: str | None = None


@dataclass(frozen=True)
class PersonaOptions:
    enabled: bool = True
    persona_mode: bool = False
    capability_intent: CapabilityIntent | None = None
    emitter: AgentEventEmitter | None = None
    model_id: str = DEFAULT_PERSONA_MODEL_ID


def looks_structured(text: str) -> bool:
    """Return True for JSON bodies, fenced code, or lines opening with a bracket."""
    trimmed = text.strip()
    if not trimmed:
        return False
    if trimmed.startswith(("{", "[")):
        try:
            json.loads(trimmed)
            return True
        except ValueError:
            pass
    if "```" in trimmed:
        return True
    return bool(_BRACKET_LINE_RE.search(trimmed))


def text_digest(text: str) -> str:
    """Return the memo key for an exact answer text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class PydanticAIRewriter:
    """Default rewriter: one PydanticAI agent run with the persona instructions."""

    def __init__(self, model: Any = None, *, config: Config | None = None) -> None:
        cfg = config or get_config()
        self.model_id = cfg.persona_role.model
        self.timeout_seconds = cfg.persona_role.timeout_seconds
        self._agent = Agent(
            model=model or build_persona_model(config=cfg),
            output_type=str,
            name="agentlens-persona",
            instructions=PERSONA_PROMPT,
            retries=1,
        )

    async def __call__(self, text: str) -> str:
        with logfire.span("persona rewrite", model=self.model_id, chars=len(text)):
            result = await asyncio.wait_for(
                self._agent.run(build_persona_rewrite_prompt(text)),
                timeout=self.timeout_seconds,
            )
        return str(result.output or "")


class PersonaRewriteTransform:
    """Buffer, rewrite, and re-emit the answer text of one agent response."""

    def __init__(
        self,
        options: PersonaOptions | None = None,
        *,
        rewriter: Rewriter | None = None,
        config: Config | None = None,
    ) -> None:
        self.options = options or PersonaOptions()
        self._rewriter = rewriter
        self._config = config
        self._memo: dict[str, asyncio.Future[PersonaOutcome]] = {}
        self.state = PersonaState.PASSTHROUGH if self.passthrough else PersonaState.IDLE

    @property
    def passthrough(self) -> bool:
        """True when the stream must be forwarded untouched."""
        opts = self.options
        return (
            not opts.enabled
            or opts.persona_mode
            or opts.capability_intent == CapabilityIntent.BANTER
        )

    def _get_rewriter(self) -> Rewriter:
        if self._rewriter is None:
            self._rewriter = PydanticAIRewriter(config=self._config)
        return self._rewriter

    def _skip_reason(self, text: str) -> PersonaPostProcessReason | None:
        opts = self.options
        if not opts.enabled:
            return PersonaPostProcessReason.SKIPPED_DISABLED
        if opts.persona_mode:
            return PersonaPostProcessReason.SKIPPED_PERSONA_MODE
        if opts.capability_intent == CapabilityIntent.BANTER:
            return PersonaPostProcessReason.SKIPPED_BANTER
        if not text.strip():
            return PersonaPostProcessReason.SKIPPED_EMPTY
        if looks_structured(text):
            return PersonaPostProcessReason.SKIPPED_STRUCTURED
        return None

    def _report(self, outcome: PersonaOutcome, original: str) -> None:
        """Emit the outcome as a durable event without waiting on the write."""
        emitter = self.options.emitter
        if emitter is None:
            return
        payload = PersonaPostProcessedPayload(
            applied=outcome.applied,
            reason=outcome.reason,
            original_char_count=len(original),
            final_char_count=len(outcome.text),
            model_id=outcome.model_id,
            duration_ms=outcome.duration_ms,
            capability_intent=self.options.capability_intent,
        )
        try:
            emitter.emit(AgentEventKind.PERSONA_POST_PROCESSED, payload)
        except Exception as exc:
            logger.warning("persona | failed to report outcome: {}", exc)

    async def _decide(self, text: str) -> PersonaOutcome:
        reason = self._skip_reason(text)
        if reason is not None:
            outcome = PersonaOutcome(applied=False, text=text, reason=reason)
            self._report(outcome, text)
            return outcome

        model_id = self.options.model_id
        self.state = PersonaState.REWRITING
        started = time.monotonic()
        try:
            raw = await self._get_rewriter()(text)
        except asyncio.CancelledError:
            logger.debug("persona | rewrite cancelled ({} chars)", len(text))
            raise
        except Exception as exc:
            logger.warning("persona | rewrite failed, forwarding original: {}", exc)
            outcome = PersonaOutcome(
                applied=False,
                text=text,
                reason=PersonaPostProcessReason.SKIPPED_ERROR,
                model_id=model_id,
                raw_model_output=str(exc),
            )
        else:
            duration_ms = int((time.monotonic() - started) * 1000)
            rewritten = (raw or "").strip()
            outcome = PersonaOutcome(
                applied=bool(rewritten),
                text=rewritten or text,
                reason=(
                    PersonaPostProcessReason.APPLIED
                    if rewritten
                    else PersonaPostProcessReason.SKIPPED_ERROR
                ),
                model_id=model_id,
                duration_ms=duration_ms,
                raw_model_output=raw,
            )
        self._report(outcome, text)
        return outcome

    async def process(self, text: str) -> PersonaOutcome:
        """Decide and (maybe) rewrite one answer; identical text is decided once."""
        key = text_digest(text)
        task = self._memo.get(key)
        if task is None or task.cancelled():
            task = asyncio.ensure_future(self._decide(text))
            self._memo[key] = task
        return await asyncio.shield(task)

    def cancel(self) -> int:
        """Cancel every rewrite still in flight; returns how many were cancelled."""
        cancelled = 0
        for key, task in list(self._memo.items()):
            if not task.done():
                task.cancel()
                del self._memo[key]
                cancelled += 1
        if cancelled:
            logger.debug("persona | cancelled {} in-flight rewrite(s)", cancelled)
        return cancelled

    async def _release(
        self, buffer: list[str], chunk_id: str | None, pending_end: Any
    ) -> list[Any]:
        """Return the chunks that replace the buffered text and held ``text-end``."""
        out: list[Any] = []
        text = "".join(buffer)
        if text:
            outcome = await self.process(text)
            if outcome.text:
                chunk: dict[str, Any] = {"type": "text-delta", "delta": outcome.text}
                if chunk_id is not None:
                    chunk["id"] = chunk_id
                out.append(chunk)
        if pending_end is not None:
            out.append(pending_end)
        self.state = PersonaState.FORWARDING
        return out

    async def _rewrite_stream(self, stream: AsyncIterable[Any]) -> AsyncIterator[Any]:
        buffer: list[str] = []
        chunk_id: str | None = None
        pending_end: Any = None
        finished = False
        try:
            async for chunk in stream:
                if not isinstance(chunk, Mapping):
                    yield chunk
                    continue
                kind = chunk.get("type")
                if kind == "text-start":
                    if isinstance(chunk.get("id"), str):
                        chunk_id = chunk["id"]
                    yield chunk
                elif kind == "text-delta":
                    if isinstance(chunk.get("id"), str):
                        chunk_id = chunk["id"]
                    delta = chunk.get("delta")
                    if isinstance(delta, str):
                        buffer.append(delta)
                    self.state = PersonaState.BUFFERING
                elif kind == "text-end":
                    pending_end = chunk
                elif kind == "finish":
                    finished = True
                    for out in await self._release(buffer, chunk_id, pending_end):
                        yield out
                    buffer, pending_end = [], None
                    yield chunk
                else:
                    yield chunk
            if not finished:
                for out in await self._release(buffer, chunk_id, pending_end):
                    yield out
        except (GeneratorExit, asyncio.CancelledError):
            self.cancel()
            raise

    def wrap_stream(self, stream: AsyncIterable[Any]) -> AsyncIterable[Any]:
        """Return the stream unchanged in passthrough, else the rewriting generator."""
        if self.passthrough:
            return stream
        return self._rewrite_stream(stream)


def create_persona_transform(
    *,
    config: Config | None = None,
    emitter: AgentEventEmitter | None = None,
    persona_mode: bool = False,
    capability_intent: CapabilityIntent | None = None,
    rewriter: Rewriter | None = None,
) -> PersonaRewriteTransform:
    """Build a transform from the ``[persona]`` and ``[roles.persona]`` config."""
    cfg = config or get_config()
    options = PersonaOptions(
        enabled=cfg.persona_enabled,
        persona_mode=persona_mode,
        capability_intent=capability_intent,
        emitter=emitter,
        model_id=cfg.persona_role.model,
    )
    return PersonaRewriteTransform(options, rewriter=rewriter, config=cfg)
