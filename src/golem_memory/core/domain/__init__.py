"""
Domain Models

Memory records, encrypted envelopes, search types, errors and settings.
"""

from golem_memory.core.domain.errors import MemoryLayerError
from golem_memory.core.domain.memory import (
    AccessPolicy,
    EncryptedEnvelope,
    MemoryRecord,
    MemorySearchQuery,
    MemoryType,
    Permission,
    PermissionAction,
)

__all__ = [
    "AccessPolicy",
    "EncryptedEnvelope",
    "MemoryLayerError",
    "MemoryRecord",
    "MemorySearchQuery",
    "MemoryType",
    "Permission",
    "PermissionAction",
]
