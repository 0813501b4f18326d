"""Processing orchestrator — runs the fixed stage sequence for one session.

    ingest → anonymize → extract-structure → analyze → score → finalize

One asyncio task per session, spawned by start() and tracked so shutdown
can drain or cancel it. Each stage records its progress checkpoint
BEFORE doing the work. Collaborator failures are retried inside the stage
(rate-limited / unavailable) with exponential backoff; invalid-input and
exhausted budgets fail the session with a user-safe ErrorDetail.

Every exit path ends in a store write. If the session was deleted while
the task was running (store write returns False, or the vault refuses a
late store) the task stops quietly.

Usage:
    orchestrator = Orchestrator(store, anonymizer, consent, extractor, llm, PolicyCatalog.default())
    record = await orchestrator.open_session(metadata)
    orchestrator.start(record.session_id, submission, metadata)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol, TypeVar

from src.catalog.policies import PolicyCatalog
from src.clock import Clock, utcnow
from src.config import settings
from src.errors import InternalError, ServiceError, StageError, StageTerminal, StageTransient, VaultClosed
from src.events.bus import EventBus
from src.models.enums import PipelineStage, ServiceErrorKind
from src.pipeline.handoff import KeyHandoff
from src.schemas.events import EventType, SystemEvent
from src.schemas.session import AnalysisResults, ComparisonResult, ErrorDetail, PolicyFeatures, SessionRecord
from src.schemas.submission import ExtractionResult, FileSubmission, Submission, SubmissionMetadata
from src.scoring.engine import overall_confidence, rank
from src.security.anonymizer import AnonymizationEngine, AnonymizedDocument
from src.security.consent import ConsentLedger, retention_ttl
from src.sessions.lifecycle import STAGE_PROGRESS, estimate_remaining_seconds
from src.sessions.store import SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Extractor(Protocol):
    async def extract(self, data: bytes, filename: str, content_type: str, session_id: str) -> ExtractionResult: ...

    async def extract_structure(self, anonymized_text: str, session_id: str) -> ExtractionResult: ...


class PolicyAnalyzer(Protocol):
    async def analyze_policy(
        self,
        anonymized_text: str,
        structure: ExtractionResult,
        jurisdiction: str,
        session_id: str,
    ) -> PolicyFeatures: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with exponential backoff between them."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.processing.max_retry_attempts,
            base_delay=settings.processing.retry_base_delay,
            multiplier=settings.processing.retry_backoff_multiplier,
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.base_delay * self.multiplier ** (attempt - 1)


# ── User-facing failure text per stage ───────────────────────────────

_RETRY_HINT = "Wait a few minutes and try again"
_DOCUMENT_HINT = "Verify your document is clearly readable and try uploading it again"

# (code, message) shown when a stage fails
_STAGE_FAILURES: dict[PipelineStage, tuple[str, str]] = {
    PipelineStage.INGEST: (
        "document_extraction_failed",
        "Unable to extract text from your document. Please ensure it's a readable PDF.",
    ),
    PipelineStage.ANONYMIZE: (
        "pii_detection_failed",
        "Error occurred while protecting your personal information. Please try again.",
    ),
    PipelineStage.EXTRACT_STRUCTURE: (
        "document_extraction_failed",
        "Unable to extract text from your document. Please ensure it's a readable PDF.",
    ),
    PipelineStage.ANALYZE: (
        "ai_service_error",
        "Our AI analysis service is temporarily unavailable. Please try again later.",
    ),
    PipelineStage.SCORE: (
        "comparison_engine_error",
        "Unable to complete policy comparison. Please try again later.",
    ),
    PipelineStage.FINALIZE: (
        "data_save_failed",
        "Failed to save analysis results. Please try again.",
    ),
}

_RATE_LIMITED_MESSAGE = "Too many requests. Please wait a moment before trying again."
_INTERNAL_MESSAGE = "Unable to process your policy. Please check the document and try again."


class _SessionGone(Exception):
    """The session was deleted mid-run; stop without further writes."""


@dataclass
class _Run:
    """Per-task state threaded through the stages."""

    session_id: str
    jurisdiction: str
    started: float
    stage: PipelineStage = PipelineStage.INGEST


class Orchestrator:
    """Explicitly constructed pipeline runner. Holds no per-session state besides task handles."""

    def __init__(
        self,
        store: SessionStore,
        anonymizer: AnonymizationEngine,
        consent: ConsentLedger,
        extractor: Extractor,
        analyzer: PolicyAnalyzer,
        catalog: PolicyCatalog,
        handoff: KeyHandoff | None = None,
        retry: RetryPolicy | None = None,
        top_n: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        self._events = events or EventBus()
        self._store = store
        self._anonymizer = anonymizer
        self._consent = consent
        self._extractor = extractor
        self._analyzer = analyzer
        self._catalog = catalog
        self.handoff = handoff or KeyHandoff(clock)
        self._retry = retry or RetryPolicy.from_settings()
        self._top_n = top_n or settings.processing.results_top_n
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # ── Session creation (synchronous, before start) ─────────────────

    async def open_session(self, metadata: SubmissionMetadata) -> SessionRecord:
        """Create the session record (and consent, if supplied) before any background work."""
        session_id = str(uuid.uuid4())
        jurisdiction = metadata.jurisdiction.upper()
        now = self._clock()
        lifetime = timedelta(days=settings.retention_days_for(jurisdiction))
        if metadata.consent is not None:
            lifetime = min(lifetime, retention_ttl(metadata.consent.data_retention))

        record = await self._store.create_session(session_id, jurisdiction, now + lifetime)
        if metadata.consent is not None:
            await self._consent.record_consent(
                session_id,
                metadata.consent,
                source_ip=metadata.source_ip,
                user_agent=metadata.user_agent,
            )

        await self._events.emit(SystemEvent(
            event_type=EventType.SESSION_CREATED,
            session_id=session_id,
            data={"jurisdiction": jurisdiction, "expires_at": record.expires_at.isoformat()},
            source_module="pipeline.orchestrator",
        ))
        return record

    # ── Task management ──────────────────────────────────────────────

    def start(self, session_id: str, submission: Submission, metadata: SubmissionMetadata) -> asyncio.Task[None]:
        """Spawn the background task for a session created by open_session()."""
        task = asyncio.create_task(self.run(session_id, submission, metadata), name=f"session:{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))
        return task

    @property
    def active_sessions(self) -> int:
        return len(self._tasks)

    async def wait(self, session_id: str) -> None:
        """Wait for a session's task to finish (no-op when none is running)."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Let running sessions finish for up to `timeout` seconds, then cancel the rest."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Orchestrator stopped: finished=%d cancelled=%d", len(tasks) - len(pending), len(pending))

    # ── Pipeline ─────────────────────────────────────────────────────

    async def run(self, session_id: str, submission: Submission, metadata: SubmissionMetadata) -> None:
        """Execute all stages. Never raises except on cancellation."""
        run = _Run(session_id=session_id, jurisdiction=metadata.jurisdiction.upper(), started=time.monotonic())
        try:
            text = await self._ingest(run, submission)
            document = await self._anonymize(run, text)
            structure = await self._extract_structure(run, document)
            features = await self._analyze(run, document, structure)
            recommendations = await self._score(run, features)
            await self._finalize(run, document, features, recommendations)
        except _SessionGone:
            await self._withdrawn(run)
        except StageError as exc:
            await self._fail(run, ErrorDetail(stage=exc.stage, code=exc.code, message=exc.message, hint=exc.hint))
        except asyncio.CancelledError:
            await self._fail(run, ErrorDetail(
                stage=run.stage,
                code="processing_interrupted",
                message="Processing was interrupted. Please submit your policy again.",
                hint=_RETRY_HINT,
            ))
            raise
        except Exception as exc:
            logger.exception("Unexpected pipeline error: session=%s stage=%s", session_id, run.stage.value)
            internal = InternalError(_INTERNAL_MESSAGE, "Contact support if the problem continues")
            await self._fail(run, ErrorDetail(
                stage=run.stage,
                code=internal.code,
                message=internal.message,
                hint=internal.hint,
            ))
            await self._events.emit(SystemEvent(
                event_type=EventType.SYSTEM_ERROR,
                session_id=session_id,
                data={"stage": run.stage.value, "error_type": type(exc).__name__},
                source_module="pipeline.orchestrator",
            ))

    async def _ingest(self, run: _Run, submission: Submission) -> str:
        await self._enter(run, PipelineStage.INGEST)
        if isinstance(submission, FileSubmission):
            result = await self._with_retries(
                run,
                lambda: self._extractor.extract(submission.data, submission.filename, submission.content_type, run.session_id),
            )
            text = result.text
        else:
            text = submission.content

        if not text.strip():
            raise StageTerminal(
                PipelineStage.INGEST,
                "The uploaded file appears to be empty or unreadable. Please try uploading again.",
                _DOCUMENT_HINT,
                code="empty_document",
            )
        return text

    async def _anonymize(self, run: _Run, text: str) -> AnonymizedDocument:
        await self._enter(run, PipelineStage.ANONYMIZE)
        record = await self._store.get_session(run.session_id)
        if record is None or record.deleted_at is not None:
            raise _SessionGone
        consent = await self._consent.get_consent(run.session_id)
        ttl = retention_ttl(consent.choices.data_retention)

        try:
            document = await self._anonymizer.detect_and_isolate(text, run.session_id, ttl, record.expires_at)
        except VaultClosed as exc:
            raise _SessionGone from exc

        if document.encryption_key is not None:
            self.handoff.deposit(run.session_id, document.encryption_key, min(self._clock() + ttl, record.expires_at))
        if not await self._store.record_anonymization(run.session_id, document.pii_detected, document.detection_confidence):
            self.handoff.discard(run.session_id)
            raise _SessionGone
        return document

    async def _extract_structure(self, run: _Run, document: AnonymizedDocument) -> ExtractionResult:
        await self._enter(run, PipelineStage.EXTRACT_STRUCTURE)
        return await self._with_retries(
            run,
            lambda: self._extractor.extract_structure(document.anonymized_content, run.session_id),
        )

    async def _analyze(self, run: _Run, document: AnonymizedDocument, structure: ExtractionResult) -> PolicyFeatures:
        await self._enter(run, PipelineStage.ANALYZE)
        return await self._with_retries(
            run,
            lambda: self._analyzer.analyze_policy(document.anonymized_content, structure, run.jurisdiction, run.session_id),
        )

    async def _score(self, run: _Run, features: PolicyFeatures) -> list[ComparisonResult]:
        await self._enter(run, PipelineStage.SCORE)
        candidates = self._catalog.for_jurisdiction(run.jurisdiction)
        if candidates is None:
            raise StageTerminal(
                PipelineStage.SCORE,
                f"Policy comparison is not available for jurisdiction {run.jurisdiction}.",
                f"Supported jurisdictions: {', '.join(sorted(self._catalog.jurisdictions))}",
                code="unsupported_jurisdiction",
            )
        return rank(features, candidates, self._top_n)

    async def _finalize(
        self,
        run: _Run,
        document: AnonymizedDocument,
        features: PolicyFeatures,
        recommendations: list[ComparisonResult],
    ) -> None:
        run.stage = PipelineStage.FINALIZE
        results = AnalysisResults(
            session_id=run.session_id,
            jurisdiction=run.jurisdiction,
            user_policy_features=features,
            recommendations=recommendations,
            total_policies_compared=len(self._catalog.for_jurisdiction(run.jurisdiction) or ()),
            processing_time_ms=int((time.monotonic() - run.started) * 1000),
            confidence=overall_confidence(recommendations),
            pii_detected=document.pii_detected,
            detection_confidence=document.detection_confidence,
            generated_at=self._clock(),
        )
        # Status flip, results and 100% land in one write
        if not await self._store.complete_with_results(run.session_id, results):
            raise _SessionGone

        await self._events.emit(SystemEvent(
            event_type=EventType.SESSION_COMPLETED,
            session_id=run.session_id,
            data={
                "recommendations": len(recommendations),
                "processing_time_ms": results.processing_time_ms,
                "pii_detected": document.pii_detected,
            },
            source_module="pipeline.orchestrator",
        ))

    # ── Helpers ──────────────────────────────────────────────────────

    async def _enter(self, run: _Run, stage: PipelineStage) -> None:
        run.stage = stage
        percent = STAGE_PROGRESS[stage]
        if not await self._store.update_progress(run.session_id, stage, percent, estimate_remaining_seconds(percent)):
            raise _SessionGone
        await self._events.emit(SystemEvent(
            event_type=EventType.SESSION_STAGE_ENTERED,
            session_id=run.session_id,
            data={"stage": stage.value, "progress": percent},
            source_module="pipeline.orchestrator",
        ))
        logger.info("Stage entered: session=%s stage=%s progress=%d", run.session_id, stage.value, percent)

    async def _with_retries(self, run: _Run, call: Callable[[], Awaitable[T]]) -> T:
        """Retry retryable ServiceErrors; classify the final failure as a StageError."""
        attempt = 1
        while True:
            try:
                return await call()
            except ServiceError as exc:
                code, message = _STAGE_FAILURES[run.stage]
                if not exc.retryable:
                    raise StageTerminal(run.stage, message, _DOCUMENT_HINT, code=code) from exc
                if attempt >= self._retry.max_attempts:
                    if exc.kind is ServiceErrorKind.RATE_LIMITED:
                        message, code = _RATE_LIMITED_MESSAGE, "rate_limit_exceeded"
                    logger.warning(
                        "Retries exhausted: session=%s stage=%s service=%s kind=%s",
                        run.session_id,
                        run.stage.value,
                        exc.service,
                        exc.kind.value,
                    )
                    raise StageTransient(run.stage, message, _RETRY_HINT, code=code) from exc

                delay = self._retry.delay(attempt)
                await self._events.emit(SystemEvent(
                    event_type=EventType.SESSION_STAGE_RETRY,
                    session_id=run.session_id,
                    data={
                        "stage": run.stage.value,
                        "attempt": attempt,
                        "kind": exc.kind.value,
                        "delay_seconds": delay,
                    },
                    source_module="pipeline.orchestrator",
                ))
                logger.warning(
                    "Stage retry: session=%s stage=%s attempt=%d kind=%s delay=%.1fs",
                    run.session_id,
                    run.stage.value,
                    attempt,
                    exc.kind.value,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1

    async def _fail(self, run: _Run, detail: ErrorDetail) -> None:
        self.handoff.discard(run.session_id)
        try:
            applied = await self._store.fail_with(run.session_id, detail)
        except Exception:
            logger.exception("Could not record failure: session=%s stage=%s", run.session_id, run.stage.value)
            return
        if not applied:
            await self._withdrawn(run)
            return
        await self._events.emit(SystemEvent(
            event_type=EventType.SESSION_FAILED,
            session_id=run.session_id,
            data={"stage": detail.stage.value if detail.stage else None, "code": detail.code},
            source_module="pipeline.orchestrator",
        ))

    async def _withdrawn(self, run: _Run) -> None:
        self.handoff.discard(run.session_id)
        await self._events.emit(SystemEvent(
            event_type=EventType.SESSION_WITHDRAWN,
            session_id=run.session_id,
            data={"stage": run.stage.value},
            source_module="pipeline.orchestrator",
        ))
        logger.info("Session gone mid-run, stopping: session=%s stage=%s", run.session_id, run.stage.value)
