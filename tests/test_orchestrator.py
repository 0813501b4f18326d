"""Tests for the processing orchestrator — the full stage sequence over memory backends."""

from __future__ import annotations

import asyncio

import pytest
from fakes import FakeAnalyzer, FakeExtractor, event_types

from src.api.dependencies import Services, assemble_services
from src.errors import ServiceError, VaultMiss
from src.models.enums import PIICategory, PipelineStage, RetentionWindow, ServiceErrorKind, SessionStatus
from src.pipeline.orchestrator import RetryPolicy
from src.schemas.events import EventType
from src.schemas.privacy import ConsentChoices
from src.schemas.submission import FileSubmission, SubmissionMetadata, TextSubmission
from src.security.consent import MemoryConsentLedger
from src.security.encryption import SessionCipher
from src.security.pii_detector import PIIDetector, PIIMatch
from src.security.vault import MemoryPIIVault
from src.sessions.store import MemorySessionStore

POLICY_TEXT = (
    "Policyholder: Jane Smith\n"
    "Email: jane@example.com\n"
    "Silver Plus Hospital Cover with private hospital and general dental.\n"
)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class BrokenDetector(PIIDetector):
    def detect(self, text: str) -> list[PIIMatch]:
        msg = "detector offline"
        raise RuntimeError(msg)


def _services(
    cipher: SessionCipher,
    extractor: FakeExtractor | None = None,
    analyzer: FakeAnalyzer | None = None,
    detector: PIIDetector | None = None,
    sleep: SleepRecorder | None = None,
) -> Services:
    return assemble_services(
        MemorySessionStore(),
        MemoryPIIVault(cipher),
        MemoryConsentLedger(ip_hash_secret="test"),
        extractor or FakeExtractor(),
        analyzer or FakeAnalyzer(),
        detector=detector,
        retry=RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0),
        sleep=sleep or SleepRecorder(),
    )


async def _submit(services: Services, submission=None, jurisdiction: str = "AU", consent=None) -> str:
    metadata = SubmissionMetadata(jurisdiction=jurisdiction, consent=consent, source_ip="203.0.113.5")
    record = await services.orchestrator.open_session(metadata)
    await services.orchestrator.run(record.session_id, submission or TextSubmission(content=POLICY_TEXT), metadata)
    return record.session_id


class TestOpenSession:
    @pytest.mark.asyncio()
    async def test_lifetime_follows_jurisdiction(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        au = await services.orchestrator.open_session(SubmissionMetadata(jurisdiction="au"))
        sg = await services.orchestrator.open_session(SubmissionMetadata(jurisdiction="SG"))
        assert au.jurisdiction == "AU"
        assert (au.expires_at - au.created_at).total_seconds() == pytest.approx(7 * 86400, abs=1)
        assert (sg.expires_at - sg.created_at).total_seconds() == pytest.approx(3 * 86400, abs=1)

    @pytest.mark.asyncio()
    async def test_consent_shortens_lifetime_and_is_recorded(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        consent = ConsentChoices(include_name=True, data_retention=RetentionWindow.ONE_HOUR)
        record = await services.orchestrator.open_session(SubmissionMetadata(jurisdiction="AU", consent=consent))
        assert (record.expires_at - record.created_at).total_seconds() == pytest.approx(3600, abs=1)
        current = await services.consent.get_consent(record.session_id)
        assert current.choices == consent

    @pytest.mark.asyncio()
    async def test_ids_are_unique(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        ids = {(await services.orchestrator.open_session(SubmissionMetadata(jurisdiction="AU"))).session_id
               for _ in range(5)}
        assert len(ids) == 5


class TestHappyPath:
    @pytest.mark.asyncio()
    async def test_completes_with_ranked_results(self, cipher: SessionCipher, emitted) -> None:
        analyzer = FakeAnalyzer()
        extractor = FakeExtractor()
        services = _services(cipher, extractor=extractor, analyzer=analyzer)
        session_id = await _submit(services)

        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None
        assert snapshot.status is SessionStatus.COMPLETED
        assert snapshot.progress_percent == 100

        results = await services.store.get_results(session_id)
        assert results is not None
        assert results.total_policies_compared == 3
        assert len(results.recommendations) == 3
        scores = [r.overall_score for r in results.recommendations]
        assert scores == sorted(scores, reverse=True)
        assert results.pii_detected is True
        assert 0.0 < results.confidence <= 1.0

        types = event_types(emitted)
        assert types[0] is EventType.SESSION_CREATED
        assert types.count(EventType.SESSION_STAGE_ENTERED) == 5
        assert types[-1] is EventType.SESSION_COMPLETED

    @pytest.mark.asyncio()
    async def test_raw_pii_never_leaves_the_anonymize_stage(self, cipher: SessionCipher) -> None:
        analyzer = FakeAnalyzer()
        extractor = FakeExtractor()
        services = _services(cipher, extractor=extractor, analyzer=analyzer)
        await _submit(services)

        for seen in analyzer.seen + extractor.structure_inputs:
            assert "Jane Smith" not in seen
            assert "jane@example.com" not in seen
            assert "[NAME_1]" in seen
            assert "[EMAIL_1]" in seen

    @pytest.mark.asyncio()
    async def test_key_handed_off_once(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        session_id = await _submit(services)

        key = services.handoff.claim(session_id)
        assert key is not None
        assert services.handoff.claim(session_id) is None
        token_map = await services.vault.reveal(session_id, key)
        assert token_map == {"[NAME_1]": "Jane Smith", "[EMAIL_1]": "jane@example.com"}

    @pytest.mark.asyncio()
    async def test_vault_ttl_follows_consent(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        consent = ConsentChoices(data_retention=RetentionWindow.TWENTY_FOUR_HOURS)
        session_id = await _submit(services, consent=consent)
        info = await services.vault.entry_info(session_id)
        assert info is not None
        assert round((info.expires_at - info.stored_at).total_seconds()) == 24 * 3600

    @pytest.mark.asyncio()
    async def test_file_submission_goes_through_extraction(self, cipher: SessionCipher) -> None:
        extractor = FakeExtractor(text=POLICY_TEXT)
        services = _services(cipher, extractor=extractor)
        upload = FileSubmission(filename="policy.pdf", content_type="application/pdf", data=b"%PDF-1.7")
        session_id = await _submit(services, submission=upload)
        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.status is SessionStatus.COMPLETED


class TestRetries:
    @pytest.mark.asyncio()
    async def test_transient_failures_are_retried(self, cipher: SessionCipher, emitted) -> None:
        sleep = SleepRecorder()
        analyzer = FakeAnalyzer(failures=[
            ServiceError("llm", ServiceErrorKind.UNAVAILABLE, "timeout"),
            ServiceError("llm", ServiceErrorKind.RATE_LIMITED, "http_429"),
        ])
        services = _services(cipher, analyzer=analyzer, sleep=sleep)
        session_id = await _submit(services)

        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.status is SessionStatus.COMPLETED
        assert sleep.delays == [1.0, 2.0]
        assert len(analyzer.seen) == 3
        assert event_types(emitted).count(EventType.SESSION_STAGE_RETRY) == 2

    @pytest.mark.asyncio()
    async def test_exhausted_rate_limit_fails(self, cipher: SessionCipher) -> None:
        sleep = SleepRecorder()
        analyzer = FakeAnalyzer(always=ServiceError("llm", ServiceErrorKind.RATE_LIMITED, "http_429"))
        services = _services(cipher, analyzer=analyzer, sleep=sleep)
        session_id = await _submit(services)

        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None
        assert snapshot.status is SessionStatus.FAILED
        assert snapshot.error is not None
        assert snapshot.error.stage is PipelineStage.ANALYZE
        assert snapshot.error.code == "rate_limit_exceeded"
        assert sleep.delays == [1.0, 2.0]
        assert len(analyzer.seen) == 3

    @pytest.mark.asyncio()
    async def test_exhausted_unavailable_fails_with_stage_message(self, cipher: SessionCipher) -> None:
        analyzer = FakeAnalyzer(always=ServiceError("llm", ServiceErrorKind.UNAVAILABLE, "timeout"))
        services = _services(cipher, analyzer=analyzer)
        session_id = await _submit(services)
        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.error is not None
        assert snapshot.error.code == "ai_service_error"
        assert snapshot.error.hint == "Wait a few minutes and try again"

    @pytest.mark.asyncio()
    async def test_invalid_input_is_terminal(self, cipher: SessionCipher) -> None:
        sleep = SleepRecorder()
        extractor = FakeExtractor(failures=[ServiceError("extraction", ServiceErrorKind.INVALID_INPUT, "http_415")])
        services = _services(cipher, extractor=extractor, sleep=sleep)
        upload = FileSubmission(filename="policy.pdf", content_type="application/pdf", data=b"%PDF-1.7")
        session_id = await _submit(services, submission=upload)

        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.error is not None
        assert snapshot.status is SessionStatus.FAILED
        assert snapshot.error.stage is PipelineStage.INGEST
        assert snapshot.error.code == "document_extraction_failed"
        assert sleep.delays == []

    def test_backoff_schedule(self) -> None:
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0)
        assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestFailures:
    @pytest.mark.asyncio()
    async def test_empty_document(self, cipher: SessionCipher) -> None:
        extractor = FakeExtractor(text="   ")
        services = _services(cipher, extractor=extractor)
        upload = FileSubmission(filename="blank.pdf", content_type="application/pdf", data=b"%PDF-1.7")
        session_id = await _submit(services, submission=upload)
        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.error is not None
        assert snapshot.error.code == "empty_document"
        assert snapshot.error.stage is PipelineStage.INGEST

    @pytest.mark.asyncio()
    async def test_unsupported_jurisdiction(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        session_id = await _submit(services, jurisdiction="SG")
        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.error is not None
        assert snapshot.error.stage is PipelineStage.SCORE
        assert snapshot.error.code == "unsupported_jurisdiction"
        assert "AU, NZ" in (snapshot.error.hint or "")

    @pytest.mark.asyncio()
    async def test_unexpected_error_is_opaque(self, cipher: SessionCipher, emitted) -> None:
        analyzer = FakeAnalyzer(always=KeyError("features"))
        services = _services(cipher, analyzer=analyzer)
        session_id = await _submit(services)
        snapshot = await services.store.get_progress(session_id)
        assert snapshot is not None and snapshot.error is not None
        assert snapshot.error.code == "internal_error"
        assert "features" not in snapshot.error.message
        assert EventType.SYSTEM_ERROR in event_types(emitted)

    @pytest.mark.asyncio()
    async def test_failure_drops_the_parked_key(self, cipher: SessionCipher) -> None:
        analyzer = FakeAnalyzer(always=ServiceError("llm", ServiceErrorKind.INVALID_INPUT, "http_400"))
        services = _services(cipher, analyzer=analyzer)
        session_id = await _submit(services)
        assert services.handoff.claim(session_id) is None

    @pytest.mark.asyncio()
    async def test_detector_outage_degrades_but_completes(self, cipher: SessionCipher) -> None:
        analyzer = FakeAnalyzer()
        services = _services(cipher, analyzer=analyzer, detector=BrokenDetector())
        session_id = await _submit(services)

        results = await services.store.get_results(session_id)
        assert results is not None
        assert results.pii_detected is True
        assert results.detection_confidence == 0.0
        assert analyzer.seen == ["[REDACTED_DOCUMENT_1]"]
        info = await services.vault.entry_info(session_id)
        assert info is not None and info.categories == (PIICategory.DOCUMENT,)


class TestDeletionMidRun:
    @pytest.mark.asyncio()
    async def test_stops_quietly(self, cipher: SessionCipher, emitted) -> None:
        services: Services | None = None

        async def delete_now(session_id: str) -> None:
            assert services is not None
            await services.privacy.delete_session_data(session_id)

        analyzer = FakeAnalyzer(on_call=delete_now)
        services = _services(cipher, analyzer=analyzer)
        session_id = await _submit(services)

        assert await services.store.get_progress(session_id) is None
        assert services.handoff.claim(session_id) is None
        record = await services.store.get_session(session_id)
        assert record is not None
        assert record.status is SessionStatus.PROCESSING
        assert record.results is None
        with pytest.raises(VaultMiss):
            await services.vault.reveal(session_id, "00" * 32)

        types = event_types(emitted)
        assert EventType.SESSION_WITHDRAWN in types
        assert EventType.SESSION_COMPLETED not in types
        assert EventType.SESSION_FAILED not in types


class TestTaskManagement:
    @pytest.mark.asyncio()
    async def test_start_and_wait(self, cipher: SessionCipher) -> None:
        services = _services(cipher)
        metadata = SubmissionMetadata(jurisdiction="AU")
        record = await services.orchestrator.open_session(metadata)
        services.orchestrator.start(record.session_id, TextSubmission(content=POLICY_TEXT), metadata)
        assert services.orchestrator.active_sessions == 1

        await services.orchestrator.wait(record.session_id)
        await asyncio.sleep(0)
        assert services.orchestrator.active_sessions == 0
        snapshot = await services.store.get_progress(record.session_id)
        assert snapshot is not None and snapshot.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio()
    async def test_shutdown_cancels_and_records_interruption(self, cipher: SessionCipher) -> None:
        started = asyncio.Event()

        async def hang(session_id: str) -> None:
            started.set()
            await asyncio.Event().wait()

        services = _services(cipher, analyzer=FakeAnalyzer(on_call=hang))
        metadata = SubmissionMetadata(jurisdiction="AU")
        record = await services.orchestrator.open_session(metadata)
        services.orchestrator.start(record.session_id, TextSubmission(content=POLICY_TEXT), metadata)
        await started.wait()

        await services.orchestrator.shutdown(timeout=0.01)

        snapshot = await services.store.get_progress(record.session_id)
        assert snapshot is not None and snapshot.error is not None
        assert snapshot.status is SessionStatus.FAILED
        assert snapshot.error.code == "processing_interrupted"
        assert snapshot.error.stage is PipelineStage.ANALYZE
        assert services.handoff.claim(record.session_id) is None
