"""Per-session AES-256-GCM encryption for the PII vault.

Each session gets a random 32-byte secret (returned to the client once as
a hex string). The AES key is derived from that secret with PBKDF2-SHA256
and a fresh random salt per seal, so nothing stored server-side is enough
to decrypt. The session id is bound as associated data, so a payload
copied onto another session fails authentication.

Stored format: base64(nonce || ciphertext || tag), salt stored separately.

Usage:
    from src.security.encryption import SessionCipher, generate_session_secret

    secret = generate_session_secret()
    sealed = cipher.seal(secret, '{"[EMAIL_1]": "jane@example.com"}', session_id)
    plaintext = cipher.open(secret, sealed, session_id)
"""

from __future__ import annotations

import base64
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.config import settings

logger = logging.getLogger(__name__)

ALGORITHM_ID = "AES-256-GCM+PBKDF2-SHA256"

_NONCE_SIZE = 12  # 96-bit nonce for AES-GCM
_SALT_SIZE = 32
_SECRET_SIZE = 32
_TAG_SIZE = 16


class DecryptionError(Exception):
    """Wrong secret, wrong session or tampered payload."""


@dataclass(frozen=True)
class SealedPayload:
    ciphertext: str  # base64(nonce || ct || tag)
    salt: str  # base64
    algorithm_id: str = ALGORITHM_ID


def generate_session_secret() -> str:
    """Fresh random session secret, hex encoded (never derived from user input)."""
    return os.urandom(_SECRET_SIZE).hex()


class SessionCipher:
    """Stateless: holds only the KDF cost, never key material."""

    def __init__(self, iterations: int | None = None) -> None:
        self._iterations = iterations or settings.privacy.pbkdf2_iterations
        if self._iterations < 1000:
            msg = f"PBKDF2 iterations too low: {self._iterations}"
            raise ValueError(msg)

    def _derive_key(self, secret: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._iterations,
        )
        return kdf.derive(secret.encode("utf-8"))

    def seal(self, secret: str, plaintext: str, session_id: str) -> SealedPayload:
        """Encrypt `plaintext` under a key derived from `secret` and a new salt."""
        salt = os.urandom(_SALT_SIZE)
        key = self._derive_key(secret, salt)
        nonce = os.urandom(_NONCE_SIZE)
        ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), session_id.encode("utf-8"))
        return SealedPayload(
            ciphertext=base64.b64encode(nonce + ct).decode("ascii"),
            salt=base64.b64encode(salt).decode("ascii"),
        )

    def open(self, secret: str, sealed: SealedPayload, session_id: str) -> str:
        """Decrypt a sealed payload. Raises DecryptionError on any mismatch."""
        if sealed.algorithm_id != ALGORITHM_ID:
            msg = f"Unsupported algorithm: {sealed.algorithm_id}"
            raise DecryptionError(msg)
        try:
            raw = base64.b64decode(sealed.ciphertext, validate=True)
            salt = base64.b64decode(sealed.salt, validate=True)
        except ValueError as exc:
            msg = "Malformed sealed payload"
            raise DecryptionError(msg) from exc
        if len(raw) < _NONCE_SIZE + _TAG_SIZE:
            msg = "Invalid sealed payload: too short"
            raise DecryptionError(msg)

        key = self._derive_key(secret, salt)
        try:
            plaintext = AESGCM(key).decrypt(raw[:_NONCE_SIZE], raw[_NONCE_SIZE:], session_id.encode("utf-8"))
        except InvalidTag as exc:
            msg = "Authentication failed"
            raise DecryptionError(msg) from exc
        return plaintext.decode("utf-8")
