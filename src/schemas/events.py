"""SystemEvent schema — the core event type that flows through the entire system.

Every action emits a SystemEvent. Subscribers (the audit logger) consume
these events asynchronously. Payloads carry ids, categories and counts,
never raw PII or key material.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_STAGE_ENTERED = "session.stage_entered"
    SESSION_STAGE_RETRY = "session.stage_retry"
    SESSION_COMPLETED = "session.completed"
    SESSION_FAILED = "session.failed"
    SESSION_WITHDRAWN = "session.withdrawn"

    # Anonymization & vault
    PII_DETECTED = "pii.detected"
    DETECTION_DEGRADED = "pii.detection_degraded"
    VAULT_STORED = "vault.stored"
    VAULT_REVEALED = "vault.revealed"
    VAULT_MISS = "vault.miss"
    VAULT_PURGED = "vault.purged"

    # Consent & deletion
    CONSENT_RECORDED = "consent.recorded"
    DELETION_REQUESTED = "privacy.deletion_requested"
    DELETION_COMPLETED = "privacy.deletion_completed"

    # External collaborators
    EXTRACTION_REQUEST = "extraction.request"
    EXTRACTION_RESPONSE = "extraction.response"
    EXTRACTION_ERROR = "extraction.error"
    LLM_REQUEST = "llm.request"
    LLM_RESPONSE = "llm.response"
    LLM_ERROR = "llm.error"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_ERROR = "system.error"
    SYSTEM_MAINTENANCE = "system.maintenance"


class SystemEvent(BaseModel):
    """Core event that flows through the service.

    Immutable once created. Consumed by:
    - audit_on_event → writes to audit_log table
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Context (optional — not every event has a session)
    session_id: str | None = None
    actor: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}
