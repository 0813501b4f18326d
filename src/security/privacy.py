"""Privacy controls — transparency report, re-personalization, export, deletion.

Combines the consent ledger (what the user agreed to) with the vault
(what was actually captured). Values are only ever revealed to the holder
of the session key, and only for categories the current consent allows.

Deletion cascades vault → key hand-off → consent reset → session
tombstone. It is idempotent and works whether or not the session record
still exists. Consent versions are kept (the deletion itself is one).

Usage:
    privacy = PrivacyService(vault, ledger, store, handoff)
    report = await privacy.transparency_report(session_id, key)
    receipt = await privacy.delete_session_data(session_id, source_ip, user_agent)
"""

from __future__ import annotations

import logging
import re
import secrets
from collections import Counter
from datetime import datetime

from src.clock import Clock, utcnow
from src.config import settings
from src.errors import VaultMiss
from src.events.bus import EventBus
from src.models.enums import PIICategory, RetentionWindow
from src.pipeline.handoff import KeyHandoff
from src.schemas.events import EventType, SystemEvent
from src.schemas.privacy import (
    ConsentChoices,
    ConsentSnapshot,
    DataExport,
    DeletionReport,
    PersonalizedResult,
    PIIInventoryItem,
    RetentionSummary,
    TransparencyReport,
)
from src.security.consent import ConsentLedger
from src.security.pii_detector import token_category
from src.security.vault import PIIVault, VaultEntryInfo
from src.sessions.lifecycle import STAGE_ORDER, is_readable
from src.sessions.store import SessionStore

logger = logging.getLogger(__name__)

_DESCRIPTIONS: dict[PIICategory, str] = {
    PIICategory.NAME: "We detected a name in your document",
    PIICategory.ADDRESS: "We detected an address in your document",
    PIICategory.PHONE: "We detected a phone number in your document",
    PIICategory.EMAIL: "We detected an email address in your document",
    PIICategory.DATE_OF_BIRTH: "We detected a date of birth in your document",
    PIICategory.PREMIUM: "We detected premium amounts in your document",
    PIICategory.POLICY_NUMBER: "We detected policy numbers in your document",
    PIICategory.MEDICAL_CONDITION: "We detected medical information in your document",
    PIICategory.BANK_ACCOUNT: "We detected bank account details in your document",
    PIICategory.MEDICARE_NUMBER: "We detected a Medicare number in your document",
    PIICategory.TAX_FILE_NUMBER: "We detected a Tax File Number in your document",
    PIICategory.DOCUMENT: "Your document could not be scanned reliably, so all of it was withheld",
}

_RETENTION_TEXT: dict[RetentionWindow, str] = {
    RetentionWindow.SESSION_ONLY: "Automatically deleted after 30 minutes",
    RetentionWindow.ONE_HOUR: "Automatically deleted after 1 hour",
    RetentionWindow.TWENTY_FOUR_HOURS: "Automatically deleted after 24 hours (maximum retention)",
}

_CONSENTED_USAGE = "Used for personalized recommendations (with your consent)"
_ANONYMIZED_USAGE = "Anonymized for AI analysis only - not used for personalization"

_TOKEN = re.compile(r"\[[A-Z_]+_\d+\]")


def consent_allows(category: PIICategory, choices: ConsentChoices) -> bool:
    """Only names, premiums and addresses can ever be re-personalized."""
    if category is PIICategory.NAME:
        return choices.include_name
    if category is PIICategory.PREMIUM:
        return choices.include_premium
    if category is PIICategory.ADDRESS:
        return choices.include_address
    return False


def retention_text(window: RetentionWindow) -> str:
    return _RETENTION_TEXT[window]


def generate_confirmation_code() -> str:
    return secrets.token_hex(8).upper()


class PrivacyService:
    def __init__(
        self,
        vault: PIIVault,
        consent: ConsentLedger,
        store: SessionStore,
        handoff: KeyHandoff | None = None,
        clock: Clock = utcnow,
        events: EventBus | None = None,
    ) -> None:
        self._events = events or EventBus()
        self._vault = vault
        self._consent = consent
        self._store = store
        self._handoff = handoff
        self._clock = clock

    # ── Transparency ─────────────────────────────────────────────────

    async def transparency_report(self, session_id: str, key: str, include_values: bool = False) -> TransparencyReport:
        """Current consent combined with the vault's actual inventory.

        A VaultMiss (expired, purged, wrong key) is reported as
        vault_status="unavailable" with categories only.
        """
        consent = await self._consent.get_consent(session_id)
        info = await self._vault.entry_info(session_id)
        record = await self._store.get_session(session_id)
        now = self._clock()
        readable = is_readable(record, now)

        items: list[PIIInventoryItem] = []
        anonymized_fields: list[str] = []
        if info is None:
            vault_status = "none"
        else:
            try:
                token_map = await self._vault.reveal(session_id, key)
            except VaultMiss:
                vault_status = "unavailable"
                items = [self._item(c, None, consent, None) for c in info.categories]
            else:
                vault_status = "available"
                anonymized_fields = sorted(token_map)
                items = self._inventory(token_map, consent, include_values)

        pii_detected = bool(record.pii_detected) if readable and record is not None else info is not None
        return TransparencyReport(
            session_id=session_id,
            consent=consent,
            vault_status=vault_status,
            pii_detected=pii_detected,
            items=items,
            anonymized_fields=anonymized_fields,
            retention=self._retention(consent, info, record.expires_at if readable and record else None),
            policy_version=settings.privacy.privacy_policy_version,
            generated_at=now,
        )

    # ── Re-personalization ───────────────────────────────────────────

    async def personalize(self, session_id: str, key: str, text: str) -> PersonalizedResult:
        """Substitute original values back into `text` for consented categories only.

        Raises:
            VaultMiss: entry absent, purged, expired or wrong key.
        """
        consent = await self._consent.get_consent(session_id)
        token_map = await self._vault.reveal(session_id, key)

        used: Counter[PIICategory] = Counter()

        def substitute(match: re.Match[str]) -> str:
            token = match.group(0)
            category = token_category(token)
            if token not in token_map or category is None or not consent_allows(category, consent.choices):
                return token
            used[category] += 1
            return token_map[token]

        personalized = _TOKEN.sub(substitute, text)
        data_usage = [f"{c.value}: used for personalization with consent" for c in sorted(used, key=lambda c: c.value)]
        logger.info("Personalized text: session=%s categories=%s", session_id, ",".join(c.value for c in used))

        if data_usage:
            usage_note = f"Personal data used: {', '.join(data_usage)}"
        else:
            usage_note = "No personal data used in these results."
        note = (
            "Your data is processed according to your consent preferences. "
            f"Data retention: {retention_text(consent.choices.data_retention)}. {usage_note}"
        )
        return PersonalizedResult(
            session_id=session_id,
            personalized_text=personalized,
            privacy_note=note,
            data_usage=data_usage,
        )

    # ── Export ───────────────────────────────────────────────────────

    async def export_data(self, session_id: str, key: str) -> DataExport:
        """Consent history, inventory and processing history for one session."""
        report = await self.transparency_report(session_id, key)
        history = await self._consent.history(session_id)
        record = await self._store.get_session(session_id)

        processing: list[str] = []
        if is_readable(record, self._clock()) and record is not None and record.stage is not None:
            processing = [s.value for s in STAGE_ORDER[: STAGE_ORDER.index(record.stage) + 1]]

        return DataExport(
            session_id=session_id,
            exported_at=self._clock(),
            consent=report.consent,
            consent_history=history,
            report=report,
            processing_history=processing,
        )

    # ── Deletion ─────────────────────────────────────────────────────

    async def delete_session_data(
        self,
        session_id: str,
        source_ip: str | None = None,
        user_agent: str | None = None,
    ) -> DeletionReport:
        """Purge everything reversible about a session. Always reports success."""
        await self._events.emit(SystemEvent(
            event_type=EventType.DELETION_REQUESTED,
            session_id=session_id,
            actor="client",
            source_module="security.privacy",
        ))

        items: list[str] = []
        if await self._vault.purge(session_id, reason="data-deletion"):
            items.append("PII data")
        if self._handoff is not None and self._handoff.discard(session_id):
            items.append("encryption key")
        await self._consent.record_deletion(session_id, source_ip, user_agent)
        items.append("consent records")
        if await self._store.delete(session_id):
            items.append("processing history")

        report = DeletionReport(
            session_id=session_id,
            deleted_at=self._clock(),
            items_deleted=items,
            confirmation_code=generate_confirmation_code(),
        )
        await self._events.emit(SystemEvent(
            event_type=EventType.DELETION_COMPLETED,
            session_id=session_id,
            actor="client",
            data={"items_deleted": items},
            source_module="security.privacy",
        ))
        logger.info("Session data deleted: session=%s items=%s", session_id, ",".join(items))
        return report

    # ── Helpers ──────────────────────────────────────────────────────

    def _inventory(
        self,
        token_map: dict[str, str],
        consent: ConsentSnapshot,
        include_values: bool,
    ) -> list[PIIInventoryItem]:
        by_category: dict[PIICategory, list[str]] = {}
        for token in sorted(token_map):
            category = token_category(token)
            if category is not None:
                by_category.setdefault(category, []).append(token_map[token])

        items = []
        for category in sorted(by_category, key=lambda c: c.value):
            values = by_category[category]
            shown = values if include_values and consent_allows(category, consent.choices) else None
            items.append(self._item(category, len(values), consent, shown))
        return items

    @staticmethod
    def _item(
        category: PIICategory,
        count: int | None,
        consent: ConsentSnapshot,
        values: list[str] | None,
    ) -> PIIInventoryItem:
        return PIIInventoryItem(
            category=category,
            count=count,
            description=_DESCRIPTIONS[category],
            usage=_CONSENTED_USAGE if consent_allows(category, consent.choices) else _ANONYMIZED_USAGE,
            retention=retention_text(consent.choices.data_retention),
            values=values,
        )

    @staticmethod
    def _retention(
        consent: ConsentSnapshot,
        info: VaultEntryInfo | None,
        session_expires_at: datetime | None,
    ) -> RetentionSummary:
        vault_expires_at = info.expires_at if info is not None and not info.purged else None
        deadlines = [d for d in (vault_expires_at, session_expires_at) if d is not None]
        return RetentionSummary(
            window=consent.choices.data_retention,
            vault_expires_at=vault_expires_at,
            session_expires_at=session_expires_at,
            auto_delete_at=min(deadlines) if deadlines else None,
        )
