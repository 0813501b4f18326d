"""Domain error taxonomy.

Boundary errors (ValidationError, SessionNotFound, ...) are rendered by the
FastAPI handlers in src.api.errors. Stage errors never leave the
orchestrator: they are retried or turned into a failed session.
"""

from __future__ import annotations

from src.models.enums import PipelineStage, ServiceErrorKind


class PolicyLensError(Exception):
    """Base class. `message` and `hint` are safe to show to a user."""

    code = "internal_error"

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint


# ── Boundary ─────────────────────────────────────────────────────────


class ValidationError(PolicyLensError):
    """Bad submission (no file, wrong type, too large, empty text)."""

    code = "validation_error"

    def __init__(self, code: str, message: str, hint: str | None = None) -> None:
        super().__init__(message, hint)
        self.code = code


class RateLimited(PolicyLensError):
    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int) -> None:
        super().__init__("Too many requests. Please wait before submitting again.", f"Retry in {retry_after}s")
        self.retry_after = retry_after


class SessionNotFound(PolicyLensError):
    """Unknown, expired or deleted session id."""

    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__("Session not found or has expired", "Submit your policy again to start a new analysis")
        self.session_id = session_id


class SessionNotReady(PolicyLensError):
    code = "session_not_ready"

    def __init__(self, session_id: str) -> None:
        super().__init__("Analysis is still in progress", "Poll the progress endpoint until it completes")
        self.session_id = session_id


class AnalysisFailed(PolicyLensError):
    """Results requested for a session that ended in `failed`. Carries the stored detail."""

    code = "analysis_failed"

    def __init__(self, session_id: str, code: str, message: str, hint: str | None = None, stage: str | None = None) -> None:
        super().__init__(message, hint)
        self.session_id = session_id
        self.code = code
        self.stage = stage


class SessionExists(PolicyLensError):
    code = "session_exists"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} already exists")
        self.session_id = session_id


class InvalidTransition(PolicyLensError):
    code = "invalid_transition"


class InternalError(PolicyLensError):
    """Anything unanticipated. Rendered as an opaque message."""

    code = "internal_error"


# ── Privacy ──────────────────────────────────────────────────────────


class DetectionDegraded(PolicyLensError):
    """PII detection could not be trusted; the document is fully redacted instead."""

    code = "detection_degraded"


class VaultMiss(PolicyLensError):
    """Reveal on an absent, expired, purged or wrong-key entry."""

    code = "vault_miss"

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__("Original data is no longer available for this session")
        self.session_id = session_id
        self.reason = reason


class VaultClosed(PolicyLensError):
    """A store was attempted after the session's vault was purged."""

    code = "vault_closed"

    def __init__(self, session_id: str) -> None:
        super().__init__("Data for this session has been deleted")
        self.session_id = session_id


# ── Pipeline ─────────────────────────────────────────────────────────


class ServiceError(PolicyLensError):
    """Typed failure from an external collaborator (extraction, LLM)."""

    code = "service_error"

    def __init__(self, service: str, kind: ServiceErrorKind, detail: str = "") -> None:
        super().__init__(f"{service} failed ({kind.value})")
        self.service = service
        self.kind = kind
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.kind in (ServiceErrorKind.RATE_LIMITED, ServiceErrorKind.UNAVAILABLE)


class StageError(PolicyLensError):
    """Raised inside a stage attempt. `code` ends up in the session's ErrorDetail."""

    def __init__(
        self,
        stage: PipelineStage,
        message: str,
        hint: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, hint)
        self.stage = stage
        if code is not None:
            self.code = code


class StageTransient(StageError):
    """A retryable failure (rate limit, timeout, transient network) that outlasted the retry budget."""

    code = "stage_transient"


class StageTerminal(StageError):
    """Fail the session immediately (invalid input, unsupported jurisdiction, corrupt document)."""

    code = "stage_terminal"
