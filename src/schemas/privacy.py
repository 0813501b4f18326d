"""Consent, transparency-report and deletion schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import Field

from src.models.enums import PIICategory, RetentionWindow
from src.schemas.base import ApiModel


class ConsentChoices(ApiModel):
    """Named toggles a user can authorise. Defaults are the most conservative."""

    include_name: bool = False
    include_premium: bool = False
    include_address: bool = False
    data_retention: RetentionWindow = RetentionWindow.SESSION_ONLY


class ConsentSnapshot(ApiModel):
    """One version from the consent ledger (or the synthesized default)."""

    session_id: str
    choices: ConsentChoices
    recorded_at: datetime
    reason: str | None = None
    source_ip_hash: str | None = None
    user_agent: str | None = None
    is_default: bool = False


class PIIInventoryItem(ApiModel):
    category: PIICategory
    count: int | None = Field(default=None, description="None when the vault can no longer be opened")
    description: str
    usage: str
    retention: str
    values: list[str] | None = Field(default=None, description="Only when consent and request both allow")


class RetentionSummary(ApiModel):
    window: RetentionWindow
    vault_expires_at: datetime | None
    session_expires_at: datetime | None
    auto_delete_at: datetime | None


class TransparencyReport(ApiModel):
    """Current consent combined with what the vault actually holds."""

    session_id: str
    consent: ConsentSnapshot
    vault_status: Literal["available", "unavailable", "none"]
    pii_detected: bool
    items: list[PIIInventoryItem] = Field(default_factory=list)
    anonymized_fields: list[str] = Field(default_factory=list)
    retention: RetentionSummary
    policy_version: str
    generated_at: datetime


class DeletionReport(ApiModel):
    session_id: str
    deleted_at: datetime
    items_deleted: list[str]
    success: bool = True
    confirmation_code: str


class PersonalizedResult(ApiModel):
    session_id: str
    personalized_text: str
    privacy_note: str
    data_usage: list[str] = Field(default_factory=list)


class DataExport(ApiModel):
    """Everything held about a session, as the holder of its key may see it."""

    session_id: str
    exported_at: datetime
    consent: ConsentSnapshot
    consent_history: list[ConsentSnapshot]
    report: TransparencyReport
    processing_history: list[str] = Field(default_factory=list)
