"""Exception taxonomy shared by the metrics API, store, and HTTP server."""

from __future__ import annotations


class AgentLensError(Exception):
    """Base class for agentlens errors surfaced to callers."""


class IngestValidationError(AgentLensError):
    """Malformed or incomplete ingestion payload (maps to HTTP 400)."""


class SessionNotFoundError(AgentLensError):
    """Unknown session id on a detail, summary, or rename request (HTTP 404)."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session_not_found:{session_id}")
        self.session_id = session_id
