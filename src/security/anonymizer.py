"""Anonymization engine — replaces PII spans with tokens and vaults the originals.

detect_and_isolate() never lets raw text through. If detection raises, or
the anonymized output still contains a high-confidence identifier, the
whole document is replaced by a single [REDACTED_DOCUMENT_1] token
(confidence 0.0) and the original goes into the vault.

Usage:
    engine = AnonymizationEngine(PIIDetector(), vault)
    doc = await engine.detect_and_isolate(text, session_id, ttl=timedelta(minutes=30))
    doc.anonymized_content   # "Contact [NAME_1] at [EMAIL_1]"
    doc.encryption_key       # returned once, never stored
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.errors import DetectionDegraded
from src.events.bus import EventBus
from src.models.enums import PIICategory
from src.schemas.events import EventType, SystemEvent
from src.security.pii_detector import PIIDetector, PIIMatch, make_token
from src.security.vault import PIIVault

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=30)


@dataclass(frozen=True)
class AnonymizedDocument:
    session_id: str
    anonymized_content: str
    pii_detected: bool
    detection_confidence: float
    category_counts: dict[PIICategory, int] = field(default_factory=dict)
    degraded: bool = False
    encryption_key: str | None = field(default=None, repr=False)


def replace_spans(text: str, matches: list[PIIMatch]) -> tuple[str, dict[str, str]]:
    """Substitute tokens for non-overlapping, position-ordered matches.

    Tokens are numbered per category in order of appearance; a repeated
    value in the same category reuses its token.
    """
    counters: Counter[PIICategory] = Counter()
    assigned: dict[tuple[PIICategory, str], str] = {}
    token_map: dict[str, str] = {}
    pieces: list[str] = []
    cursor = 0

    for match in matches:
        key = (match.category, match.value)
        token = assigned.get(key)
        if token is None:
            counters[match.category] += 1
            token = make_token(match.category, counters[match.category])
            assigned[key] = token
            token_map[token] = match.value
        pieces.append(text[cursor:match.start])
        pieces.append(token)
        cursor = match.end

    pieces.append(text[cursor:])
    return "".join(pieces), token_map


class AnonymizationEngine:
    """Detect → replace → verify → vault."""

    def __init__(self, detector: PIIDetector, vault: PIIVault, events: EventBus | None = None) -> None:
        self._detector = detector
        self._vault = vault
        self._events = events or EventBus()

    async def detect_and_isolate(
        self,
        raw_text: str,
        session_id: str,
        ttl: timedelta = DEFAULT_TTL,
        not_after: datetime | None = None,
    ) -> AnonymizedDocument:
        """Anonymize `raw_text`, storing the token map in the vault if any PII was found.

        Scanning is CPU-bound and runs in a worker thread so other sessions
        and streams keep making progress.
        """
        try:
            matches, anonymized, token_map = await asyncio.to_thread(self._scan, raw_text)
        except Exception as exc:
            return await self._redact_everything(raw_text, session_id, ttl, not_after, exc)

        if not matches:
            logger.info("No PII detected: session=%s", session_id)
            return AnonymizedDocument(
                session_id=session_id,
                anonymized_content=raw_text,
                pii_detected=False,
                detection_confidence=1.0,
            )

        key = await self._vault.store(session_id, token_map, ttl, not_after)
        counts = dict(Counter(m.category for m in matches))
        confidence = round(sum(m.confidence for m in matches) / len(matches), 2)

        await self._events.emit(SystemEvent(
            event_type=EventType.PII_DETECTED,
            session_id=session_id,
            data={
                "categories": {c.value: n for c, n in counts.items()},
                "confidence": confidence,
            },
            source_module="security.anonymizer",
        ))
        logger.info(
            "Anonymized: session=%s spans=%d tokens=%d confidence=%.2f",
            session_id,
            len(matches),
            len(token_map),
            confidence,
        )
        return AnonymizedDocument(
            session_id=session_id,
            anonymized_content=anonymized,
            pii_detected=True,
            detection_confidence=confidence,
            category_counts=counts,
            encryption_key=key,
        )

    def _scan(self, raw_text: str) -> tuple[list[PIIMatch], str, dict[str, str]]:
        matches = self._detector.detect(raw_text)
        anonymized, token_map = replace_spans(raw_text, matches)
        residual = self._detector.find_residual(anonymized)
        if residual:
            msg = f"{len(residual)} identifier(s) survived anonymization"
            raise DetectionDegraded(msg)
        return matches, anonymized, token_map

    async def _redact_everything(
        self,
        raw_text: str,
        session_id: str,
        ttl: timedelta,
        not_after: datetime | None,
        cause: Exception,
    ) -> AnonymizedDocument:
        """Conservative fallback: one opaque token for the whole document."""
        token = make_token(PIICategory.DOCUMENT, 1)
        key = None
        if raw_text:
            key = await self._vault.store(session_id, {token: raw_text}, ttl, not_after)

        await self._events.emit(SystemEvent(
            event_type=EventType.DETECTION_DEGRADED,
            session_id=session_id,
            data={"error_type": type(cause).__name__},
            source_module="security.anonymizer",
        ))
        # Never log the exception message
        logger.warning(
            "PII detection degraded to full redaction: session=%s error=%s",
            session_id,
            type(cause).__name__,
        )
        return AnonymizedDocument(
            session_id=session_id,
            anonymized_content=token,
            pii_detected=True,
            detection_confidence=0.0,
            category_counts={PIICategory.DOCUMENT: 1},
            degraded=True,
            encryption_key=key,
        )
