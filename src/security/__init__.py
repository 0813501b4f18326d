"""Privacy & security module — anonymization, vault, consent, deletion, audit."""

from src.security.anonymizer import AnonymizationEngine
from src.security.consent import ConsentLedger, DatabaseConsentLedger, MemoryConsentLedger
from src.security.privacy import PrivacyService
from src.security.vault import DatabasePIIVault, MemoryPIIVault, PIIVault

__all__ = [
    "AnonymizationEngine",
    "ConsentLedger",
    "DatabaseConsentLedger",
    "MemoryConsentLedger",
    "PIIVault",
    "DatabasePIIVault",
    "MemoryPIIVault",
    "PrivacyService",
]
