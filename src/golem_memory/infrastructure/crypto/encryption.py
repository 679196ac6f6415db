"""AES-256-GCM encryption of memory content.

Ciphertext is stored as an ``EncryptedEnvelope`` that carries everything
except the key: IV, authentication tag, derivation salt and scheme.
"""

from __future__ import annotations

import base64
import secrets

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from golem_memory.core.domain.errors import DecryptionFailedError, KeyNotFoundError
from golem_memory.core.domain.memory import EncryptedEnvelope
from golem_memory.infrastructure.crypto.key_management import (
    EncryptionKey,
    KeyManagementService,
)

logger = structlog.get_logger(__name__)

ALGORITHM = "AES-256-GCM"
IV_BYTES = 12
TAG_BYTES = 16


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class EncryptionService:
    """Encrypts and decrypts record content with cached per-memory keys."""

    def __init__(self, key_management: KeyManagementService) -> None:
        self.key_management = key_management

    def _require_key(self, key_id: str) -> EncryptionKey:
        key = self.key_management.get_key(key_id)
        if key is None:
            raise KeyNotFoundError(f"Encryption key not found: {key_id}", key_id=key_id)
        return key

    def encrypt(self, plaintext: str, key_id: str) -> EncryptedEnvelope:
        """Encrypt ``plaintext`` with the cached key ``key_id``.

        Raises:
            KeyNotFoundError: If the key is not cached.
        """
        key = self._require_key(key_id)
        return self.encrypt_with_key(plaintext, key)

    def encrypt_with_key(self, plaintext: str, key: EncryptionKey) -> EncryptedEnvelope:
        iv = secrets.token_bytes(IV_BYTES)
        sealed = AESGCM(key.private_key).encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedEnvelope(
            encrypted_content=_b64(ciphertext),
            iv=_b64(iv),
            salt=key.salt or "",
            tag=_b64(tag),
            algorithm=ALGORITHM,
            key_derivation=key.key_derivation,
            iterations=key.iterations,
        )

    def decrypt(self, envelope: EncryptedEnvelope, key_id: str) -> str:
        """Decrypt ``envelope`` with the cached key ``key_id``.

        Raises:
            KeyNotFoundError: If the key is not cached.
            DecryptionFailedError: If authentication fails or the envelope is malformed.
        """
        key = self._require_key(key_id)
        return self.decrypt_with_key(envelope, key)

    def decrypt_with_key(self, envelope: EncryptedEnvelope, key: EncryptionKey) -> str:
        if envelope.algorithm != ALGORITHM:
            raise DecryptionFailedError(
                f"Unsupported algorithm: {envelope.algorithm}",
                details={"key_id": key.key_id},
            )
        try:
            iv = base64.b64decode(envelope.iv, validate=True)
            ciphertext = base64.b64decode(envelope.encrypted_content, validate=True)
            tag = base64.b64decode(envelope.tag, validate=True)
            plaintext = AESGCM(key.private_key).decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            logger.debug("encryption.decrypt_failed", key_id=key.key_id, error_type=type(exc).__name__)
            raise DecryptionFailedError(
                "Failed to decrypt memory content", details={"key_id": key.key_id}
            ) from exc

    def envelope_overhead(self, key_id: str) -> int:
        """Serialized size of an envelope for ``key_id`` with no ciphertext.

        Raises:
            KeyNotFoundError: If the key is not cached.
        """
        key = self._require_key(key_id)
        empty = EncryptedEnvelope(
            encrypted_content="",
            iv=_b64(bytes(IV_BYTES)),
            salt=key.salt or "",
            tag=_b64(bytes(TAG_BYTES)),
            algorithm=ALGORITHM,
            key_derivation=key.key_derivation,
            iterations=key.iterations,
        )
        return len(empty.to_json().encode("utf-8"))
