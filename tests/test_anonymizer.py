"""Tests for the anonymization engine: replacement, vaulting, degraded fallback."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest
from fakes import FakeClock, event_types

from src.models.enums import PIICategory
from src.schemas.events import EventType
from src.security.anonymizer import AnonymizationEngine, replace_spans
from src.security.encryption import SessionCipher
from src.security.pii_detector import PIIDetector, PIIMatch
from src.security.vault import MemoryPIIVault

SESSION = "sess-anon-1"


class BrokenDetector(PIIDetector):
    def detect(self, text: str) -> list[PIIMatch]:
        msg = "pattern table corrupted"
        raise RuntimeError(msg)


class LeakyDetector(PIIDetector):
    """Finds nothing, then reports a surviving email on the verification pass."""

    def detect(self, text: str) -> list[PIIMatch]:
        return []

    def find_residual(self, anonymized_text: str) -> list[PIIMatch]:
        return [PIIMatch(PIICategory.EMAIL, "x@y.com", 0, 7, 0.95)]


@pytest.fixture
def vault(cipher: SessionCipher, clock: FakeClock) -> MemoryPIIVault:
    return MemoryPIIVault(cipher, clock=clock)


class TestReplaceSpans:
    def test_numbering_and_reuse(self) -> None:
        text = "Jane Smith called. Jane Smith paid. John Citizen too."
        matches = PIIDetector().detect(text)
        anonymized, token_map = replace_spans(text, matches)
        assert anonymized == "[NAME_1] called. [NAME_1] paid. [NAME_2] too."
        assert token_map == {"[NAME_1]": "Jane Smith", "[NAME_2]": "John Citizen"}

    def test_no_matches(self) -> None:
        assert replace_spans("plain text", []) == ("plain text", {})


class TestDetectAndIsolate:
    @pytest.mark.asyncio()
    async def test_replaces_and_vaults(self, vault: MemoryPIIVault, emitted) -> None:
        engine = AnonymizationEngine(PIIDetector(), vault)
        doc = await engine.detect_and_isolate(
            "Contact Jane Smith at jane@example.com", SESSION, timedelta(minutes=30)
        )
        assert doc.anonymized_content == "Contact [NAME_1] at [EMAIL_1]"
        assert doc.pii_detected is True
        assert doc.degraded is False
        assert doc.category_counts == {PIICategory.NAME: 1, PIICategory.EMAIL: 1}
        assert doc.detection_confidence == pytest.approx(0.775, abs=0.01)
        assert doc.encryption_key is not None
        assert await vault.reveal(SESSION, doc.encryption_key) == {
            "[NAME_1]": "Jane Smith",
            "[EMAIL_1]": "jane@example.com",
        }
        assert EventType.PII_DETECTED in event_types(emitted)

    @pytest.mark.asyncio()
    async def test_no_pii(self, vault: MemoryPIIVault) -> None:
        engine = AnonymizationEngine(PIIDetector(), vault)
        text = "This policy covers hospital treatment and general dental."
        doc = await engine.detect_and_isolate(text, SESSION)
        assert doc.anonymized_content == text
        assert doc.pii_detected is False
        assert doc.detection_confidence == 1.0
        assert doc.encryption_key is None
        assert await vault.entry_info(SESSION) is None

    @pytest.mark.asyncio()
    async def test_key_not_in_repr(self, vault: MemoryPIIVault) -> None:
        engine = AnonymizationEngine(PIIDetector(), vault)
        doc = await engine.detect_and_isolate("Email jane@example.com", SESSION)
        assert doc.encryption_key is not None
        assert doc.encryption_key not in repr(doc)


class TestDegraded:
    @pytest.mark.asyncio()
    async def test_detector_failure_redacts_everything(self, vault: MemoryPIIVault, emitted) -> None:
        engine = AnonymizationEngine(BrokenDetector(), vault)
        raw = "Contact Jane Smith at jane@example.com"
        doc = await engine.detect_and_isolate(raw, SESSION)

        assert doc.anonymized_content == "[REDACTED_DOCUMENT_1]"
        assert doc.degraded is True
        assert doc.pii_detected is True
        assert doc.detection_confidence == 0.0
        assert await vault.reveal(SESSION, doc.encryption_key) == {"[REDACTED_DOCUMENT_1]": raw}
        assert EventType.DETECTION_DEGRADED in event_types(emitted)

    @pytest.mark.asyncio()
    async def test_residual_identifier_redacts_everything(self, vault: MemoryPIIVault) -> None:
        engine = AnonymizationEngine(LeakyDetector(), vault)
        doc = await engine.detect_and_isolate("write to x@y.com", SESSION)
        assert doc.anonymized_content == "[REDACTED_DOCUMENT_1]"
        assert doc.degraded is True

    @pytest.mark.asyncio()
    async def test_cause_is_never_logged(self, vault: MemoryPIIVault, caplog) -> None:
        engine = AnonymizationEngine(BrokenDetector(), vault)
        with caplog.at_level("WARNING"):
            await engine.detect_and_isolate("Jane Smith", SESSION)
        assert "pattern table corrupted" not in caplog.text
        assert "Jane Smith" not in caplog.text
        assert "RuntimeError" in caplog.text


class ThreadRecordingDetector(PIIDetector):
    def __init__(self) -> None:
        super().__init__()
        self.threads: set[int] = set()

    def detect(self, text: str) -> list[PIIMatch]:
        self.threads.add(threading.get_ident())
        return super().detect(text)

    def find_residual(self, anonymized_text: str) -> list[PIIMatch]:
        self.threads.add(threading.get_ident())
        return super().find_residual(anonymized_text)


class TestScanningOffLoop:
    @pytest.mark.asyncio()
    async def test_scan_runs_in_worker_thread(self, vault: MemoryPIIVault) -> None:
        detector = ThreadRecordingDetector()
        engine = AnonymizationEngine(detector, vault)
        await engine.detect_and_isolate("Email jane@example.com", SESSION)
        assert detector.threads
        assert threading.get_ident() not in detector.threads

    @pytest.mark.asyncio()
    async def test_loop_stays_responsive_during_large_scan(self, vault: MemoryPIIVault) -> None:
        text = " ".join(f"user{i}@example.com" for i in range(20_000))
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0)

        task = asyncio.create_task(ticker())
        try:
            doc = await AnonymizationEngine(PIIDetector(), vault).detect_and_isolate(text, SESSION)
        finally:
            task.cancel()

        assert doc.category_counts[PIICategory.EMAIL] == 20_000
        assert ticks > 1
