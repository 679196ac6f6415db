"""Per-memory key derivation and the session key cache.

Keys are derived from a session master password, the memory id and a random
per-memory salt. Given the same password, memory id and salt the derived key
is always the same, which lets a later session regenerate a key from the
salt stored in the record's metadata.

Two derivation schemes are supported:

- ``pbkdf2-sha256``: PBKDF2-HMAC-SHA256, the default for new records.
- ``double-sha256``: two chained SHA-256 hex digests, used by records
  written before PBKDF2 was introduced. Kept so those records stay readable.
"""

from __future__ import annotations

import hashlib
import secrets
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from golem_memory.core.domain.errors import (
    KeyManagementNotInitializedError,
    ValidationFailureError,
)
from golem_memory.core.utils.time import utc_now

logger = structlog.get_logger(__name__)

PBKDF2_SHA256 = "pbkdf2-sha256"
DOUBLE_SHA256 = "double-sha256"
SUPPORTED_DERIVATIONS = (PBKDF2_SHA256, DOUBLE_SHA256)
DEFAULT_ITERATIONS = 100_000
SALT_BYTES = 32
KEY_ID_PREFIX = "memory_"


@dataclass
class EncryptionKey:
    """A derived symmetric key with its derivation parameters.

    Attributes:
        key_id: ``memory_<memory id>``
        private_key: 32 bytes of AES-256 key material
        salt: Hex salt the key was derived with
        key_derivation: Scheme name, one of ``SUPPORTED_DERIVATIONS``
        iterations: PBKDF2 iterations (2 for the double hash)
    """

    key_id: str
    private_key: bytes = field(repr=False)
    salt: Optional[str] = None
    algorithm: str = "AES-256-GCM"
    key_derivation: str = PBKDF2_SHA256
    iterations: int = DEFAULT_ITERATIONS
    created_at: datetime = field(default_factory=utc_now)

    def to_metadata(self) -> Dict[str, Any]:
        """Get key metadata (without the key bytes)."""
        return {
            "key_id": self.key_id,
            "algorithm": self.algorithm,
            "salt": self.salt,
            "key_derivation": self.key_derivation,
            "iterations": self.iterations,
            "created_at": self.created_at.isoformat(),
        }


def key_id_for(memory_id: str) -> str:
    return f"{KEY_ID_PREFIX}{memory_id}"


class KeyManagementService:
    """Derives per-memory keys and caches them for the session.

    The cache preserves insertion order so callers can walk keys oldest
    first. All cache mutations happen under one lock.
    """

    def __init__(
        self,
        *,
        default_derivation: str = PBKDF2_SHA256,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> None:
        if default_derivation not in SUPPORTED_DERIVATIONS:
            raise ValidationFailureError(
                f"Unsupported key derivation: {default_derivation}",
                details={"supported": list(SUPPORTED_DERIVATIONS)},
            )
        if iterations < 1:
            raise ValidationFailureError("Iterations must be positive")
        self._default_derivation = default_derivation
        self._iterations = iterations
        self._master_password: Optional[str] = None
        self._keys: "OrderedDict[str, EncryptionKey]" = OrderedDict()
        self._lock = threading.RLock()

    def initialize_with_password(self, password: str) -> None:
        """Set the session master secret.

        Raises:
            ValidationFailureError: If ``password`` is empty.
        """
        if not password:
            raise ValidationFailureError("Master password must not be empty")
        with self._lock:
            self._master_password = password
        logger.info("key_management.initialized")

    def is_initialized(self) -> bool:
        with self._lock:
            return self._master_password is not None

    def generate_memory_key(
        self,
        memory_id: str,
        salt: Optional[str] = None,
        key_derivation: Optional[str] = None,
        iterations: Optional[int] = None,
    ) -> EncryptionKey:
        """Derive the key for ``memory_id`` and cache it.

        Args:
            memory_id: Record id the key belongs to
            salt: Hex salt; a fresh 32-byte salt is generated when omitted
            key_derivation: Scheme override, defaults to the service default
            iterations: PBKDF2 iteration override

        Returns:
            The derived key, also stored under ``memory_<memory_id>``

        Raises:
            KeyManagementNotInitializedError: If no master password is set.
            ValidationFailureError: If the memory id or scheme is invalid.
        """
        if not memory_id:
            raise ValidationFailureError("Memory id must not be empty")
        derivation = key_derivation or self._default_derivation
        if derivation not in SUPPORTED_DERIVATIONS:
            raise ValidationFailureError(
                f"Unsupported key derivation: {derivation}",
                details={"supported": list(SUPPORTED_DERIVATIONS)},
            )

        with self._lock:
            master = self._master_password
        if master is None:
            raise KeyManagementNotInitializedError(
                "Key management not initialized. Call initialize_with_password() first."
            )

        memory_salt = salt or secrets.token_hex(SALT_BYTES)
        if derivation == DOUBLE_SHA256:
            key_bytes = _double_sha256(master, memory_id, memory_salt)
            rounds = 2
        else:
            rounds = iterations or self._iterations
            key_bytes = hashlib.pbkdf2_hmac(
                "sha256",
                f"{master}_{memory_id}".encode("utf-8"),
                memory_salt.encode("utf-8"),
                iterations=rounds,
                dklen=32,
            )

        key = EncryptionKey(
            key_id=key_id_for(memory_id),
            private_key=key_bytes,
            salt=memory_salt,
            key_derivation=derivation,
            iterations=rounds,
        )
        with self._lock:
            self._keys.pop(key.key_id, None)
            self._keys[key.key_id] = key
        logger.debug("key_management.key_generated", key_id=key.key_id, derivation=derivation)
        return key

    def get_key(self, key_id: str) -> Optional[EncryptionKey]:
        """Return a cached key; never derives."""
        with self._lock:
            return self._keys.get(key_id)

    def all_keys(self) -> list[EncryptionKey]:
        """Return cached keys, oldest first."""
        with self._lock:
            return list(self._keys.values())

    def clear_session(self) -> None:
        """Forget every cached key and the master password."""
        with self._lock:
            count = len(self._keys)
            self._keys.clear()
            self._master_password = None
        logger.info("key_management.session_cleared", keys_cleared=count)


def _double_sha256(master: str, memory_id: str, salt: str) -> bytes:
    material = f"{master}_{memory_id}_{salt}"
    first = hashlib.sha256((material + salt).encode("utf-8")).hexdigest()
    return hashlib.sha256((first + salt).encode("utf-8")).digest()
