"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization.
"""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    """Lifecycle state of an analysis session.

    EXPIRED is never written; it is derived from expires_at on read.
    """

    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class PipelineStage(str, Enum):
    """Fixed stage sequence of the analysis pipeline (in order)."""

    INGEST = "ingest"
    ANONYMIZE = "anonymize"
    EXTRACT_STRUCTURE = "extract-structure"
    ANALYZE = "analyze"
    SCORE = "score"
    FINALIZE = "finalize"


class PIICategory(str, Enum):
    """PII categories recognised by the detector. Upper-cased value is the token label."""

    NAME = "name"
    ADDRESS = "address"
    PHONE = "phone"
    EMAIL = "email"
    DATE_OF_BIRTH = "dob"
    PREMIUM = "premium"
    POLICY_NUMBER = "policy_number"
    MEDICAL_CONDITION = "medical"
    BANK_ACCOUNT = "bank_account"
    MEDICARE_NUMBER = "medicare"
    TAX_FILE_NUMBER = "tfn"
    DOCUMENT = "redacted_document"  # whole-document redaction after detector failure


class RetentionWindow(str, Enum):
    """Consent-selected lifetime for reversible PII."""

    SESSION_ONLY = "session-only"
    ONE_HOUR = "1-hour"
    TWENTY_FOUR_HOURS = "24-hours"


class ServiceErrorKind(str, Enum):
    """Typed failure reported by an external collaborator."""

    RATE_LIMITED = "rate-limited"
    INVALID_INPUT = "invalid-input"
    UNAVAILABLE = "unavailable"


class PolicyType(str, Enum):
    HOSPITAL = "hospital"
    EXTRAS = "extras"
    COMBINED = "combined"


class PolicyTier(str, Enum):
    """Australian private health tiers (ordered lowest to highest)."""

    BASIC = "basic"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


class PremiumCategory(str, Enum):
    """Monthly premium band (ordered cheapest first)."""

    UNDER_200 = "under-200"
    FROM_200_TO_400 = "200-400"
    FROM_400_TO_600 = "400-600"
    OVER_600 = "over-600"


class ExcessCategory(str, Enum):
    """Hospital excess band (ordered lowest first)."""

    NONE = "none"
    UNDER_500 = "under-500"
    FROM_500_TO_1000 = "500-1000"
    OVER_1000 = "over-1000"
