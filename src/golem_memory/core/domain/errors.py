"""Domain-specific exception types for the memory layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class MemoryLayerError(Exception):
    """Base exception for memory layer errors."""

    message: str
    code: str = "memory_layer_error"
    details: Dict[str, Any] | None = None
    retryable: bool = False

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.details is None:
            self.details = {}


class ValidationFailureError(MemoryLayerError):
    """Error raised when caller input is malformed."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="validation_failure", details=details)


class EncryptionUnavailableError(MemoryLayerError):
    """Error raised when encryption is requested but cannot be performed."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "encryption_unavailable",
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code=code, details=details)


class KeyManagementNotInitializedError(EncryptionUnavailableError):
    """Error raised when key derivation is attempted without a master secret."""

    def __init__(
        self,
        message: str = "Key management not initialized",
        *,
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code="key_management_not_initialized", details=details)


class KeyNotFoundError(MemoryLayerError):
    """Error raised when a key id is not present in the session cache."""

    def __init__(
        self,
        message: str,
        *,
        key_id: str | None = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if key_id:
            details.setdefault("key_id", key_id)
        self.key_id = key_id
        super().__init__(message=message, code="key_not_found", details=details)


class DecryptionFailedError(MemoryLayerError):
    """Error raised when an envelope cannot be authenticated or decoded."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message=message, code="decryption_failed", details=details)


class StorageFailureError(MemoryLayerError):
    """Error raised when the ledger cannot complete a request."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        code: str = "storage_failure",
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message=message, code=code, details=details, retryable=retryable)


class LedgerRpcError(StorageFailureError):
    """Error returned by the ledger's JSON-RPC endpoint."""

    def __init__(
        self,
        message: str,
        *,
        rpc_code: int | None = None,
        retryable: bool = True,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if rpc_code is not None:
            details.setdefault("rpc_code", rpc_code)
        self.rpc_code = rpc_code
        super().__init__(message, retryable=retryable, code="ledger_rpc_error", details=details)


class LedgerConfigurationError(StorageFailureError):
    """Error raised when the ledger connection is missing or misconfigured."""

    def __init__(self, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(
            message, retryable=False, code="ledger_not_configured", details=details
        )


class PayloadTooLargeError(MemoryLayerError):
    """Error raised when a serialized record cannot fit the transaction ceiling."""

    def __init__(
        self,
        message: str,
        *,
        size: int | None = None,
        limit: int | None = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if size is not None:
            details.setdefault("size", size)
        if limit is not None:
            details.setdefault("limit", limit)
        super().__init__(message=message, code="payload_too_large", details=details)


class UnauthorizedError(MemoryLayerError):
    """Error raised when an actor lacks permission for an operation."""

    def __init__(
        self,
        message: str,
        *,
        actor: str | None = None,
        action: str | None = None,
        details: Dict[str, Any] | None = None,
    ) -> None:
        details = dict(details or {})
        if actor:
            details.setdefault("actor", actor)
        if action:
            details.setdefault("action", action)
        super().__init__(message=message, code="unauthorized", details=details)


def describe_failure(exc: BaseException) -> str:
    """Return the user-facing message for a failed operation."""
    if isinstance(exc, LedgerConfigurationError):
        return "Memory storage is not connected or not configured."
    if isinstance(exc, PayloadTooLargeError):
        return "The memory is too large to store on the ledger."
    if isinstance(exc, StorageFailureError):
        if exc.retryable:
            return "Temporary network issue while talking to the ledger. Please retry."
        return f"Memory storage failed: {exc.message}"
    if isinstance(exc, EncryptionUnavailableError):
        return "Encryption is not available. Unlock the memory vault first."
    if isinstance(exc, UnauthorizedError):
        return "You are not allowed to perform this operation on the memory."
    if isinstance(exc, MemoryLayerError):
        return exc.message
    return f"Unexpected error: {exc}"
