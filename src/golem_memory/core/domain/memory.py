"""Memory domain models and enums.

Records are serialized to ledger entities as camelCase JSON so that entities
written by earlier clients stay readable. ``storage_handle`` and
``transaction_hash`` describe where a record lives and are never part of the
serialized entity.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from golem_memory.core.domain.errors import DecryptionFailedError
from golem_memory.core.utils.time import parse_iso, to_iso, utc_now


class MemoryType(str, Enum):
    """Kinds of memory records."""

    CONVERSATION = "conversation"
    LEARNED_FACT = "learned_fact"
    USER_PREFERENCE = "user_preference"
    TASK_OUTCOME = "task_outcome"
    MULTIMEDIA = "multimedia"
    WORKFLOW = "workflow"
    AGENT_SHARE = "agent_share"
    PROFILE_DATA = "profile_data"


class PermissionAction(str, Enum):
    """Actions an agent can be granted on a memory."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class ConditionType(str, Enum):
    """Kinds of conditions attached to a permission."""

    TIME_BASED = "time_based"
    LOCATION_BASED = "location_based"
    CONTEXT_BASED = "context_based"


@dataclass
class PermissionCondition:
    """Opaque condition stored alongside a permission."""

    type: ConditionType
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionCondition:
        return cls(type=ConditionType(data["type"]), value=data.get("value"))


@dataclass
class Permission:
    """Actions granted to one agent."""

    agent_id: str
    actions: list[PermissionAction] = field(default_factory=list)
    conditions: list[PermissionCondition] = field(default_factory=list)

    def allows(self, action: PermissionAction) -> bool:
        return action in self.actions

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "agentId": self.agent_id,
            "actions": [action.value for action in self.actions],
        }
        if self.conditions:
            data["conditions"] = [condition.to_dict() for condition in self.conditions]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Permission:
        return cls(
            agent_id=data["agentId"],
            actions=[PermissionAction(action) for action in data.get("actions", [])],
            conditions=[
                PermissionCondition.from_dict(item) for item in data.get("conditions") or []
            ],
        )


@dataclass
class AccessPolicy:
    """Owner plus the agents allowed to act on a memory."""

    owner: str
    permissions: list[Permission] = field(default_factory=list)

    def permission_for(self, agent_id: str) -> Permission | None:
        for permission in self.permissions:
            if permission.agent_id == agent_id:
                return permission
        return None

    def allows(self, agent_id: str, action: PermissionAction) -> bool:
        """Return True if ``agent_id`` is the owner or holds ``action``."""
        if agent_id == self.owner:
            return True
        permission = self.permission_for(agent_id)
        return permission is not None and permission.allows(action)

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "permissions": [permission.to_dict() for permission in self.permissions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccessPolicy:
        return cls(
            owner=data["owner"],
            permissions=[Permission.from_dict(item) for item in data.get("permissions", [])],
        )


@dataclass
class MemoryMetadata:
    """Size, checksum and encryption bookkeeping for a record."""

    size: int
    checksum: str
    version: int = 1
    mime_type: str = "text/plain"
    encoding: str = "utf-8"
    related_memories: list[str] = field(default_factory=list)
    parent_id: str | None = None
    encryption_key_id: str | None = None
    encryption_salt: str | None = None
    content_hash: str | None = None
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "size": self.size,
            "mimeType": self.mime_type,
            "encoding": self.encoding,
            "checksum": self.checksum,
            "version": self.version,
            "relatedMemories": list(self.related_memories),
        }
        optional = {
            "parentId": self.parent_id,
            "encryptionKeyId": self.encryption_key_id,
            "encryptionSalt": self.encryption_salt,
            "contentHash": self.content_hash,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        if self.truncated:
            data["truncated"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryMetadata:
        return cls(
            size=int(data.get("size", 0)),
            checksum=str(data.get("checksum", "")),
            version=int(data.get("version", 1)),
            mime_type=data.get("mimeType") or "text/plain",
            encoding=data.get("encoding") or "utf-8",
            related_memories=list(data.get("relatedMemories") or []),
            parent_id=data.get("parentId"),
            encryption_key_id=data.get("encryptionKeyId"),
            encryption_salt=data.get("encryptionSalt"),
            content_hash=data.get("contentHash"),
            truncated=bool(data.get("truncated", False)),
        )


@dataclass
class MemoryRecord:
    """A single memory record."""

    content: str
    type: MemoryType
    category: str
    access_policy: AccessPolicy
    metadata: MemoryMetadata
    id: str = field(default_factory=lambda: str(uuid4()))
    tags: list[str] = field(default_factory=list)
    encrypted: bool = False
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    storage_handle: str | None = None
    transaction_hash: str | None = None

    def touch(self) -> None:
        """Advance ``updated_at`` to now, never moving it backwards."""
        now = utc_now()
        if now <= self.updated_at:
            return
        self.updated_at = now

    def copy(self) -> MemoryRecord:
        return copy.deepcopy(self)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the camelCase entity payload."""
        return {
            "id": self.id,
            "content": self.content,
            "type": self.type.value,
            "category": self.category,
            "tags": list(self.tags),
            "createdAt": to_iso(self.created_at),
            "updatedAt": to_iso(self.updated_at),
            "encrypted": self.encrypted,
            "accessPolicy": self.access_policy.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> MemoryRecord:
        """Build a record from an entity payload.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has an unexpected value.
        """
        if not isinstance(data, dict):
            raise ValueError("entity payload is not an object")
        for required in ("id", "content", "accessPolicy"):
            if not data.get(required):
                raise KeyError(required)
        created_at = parse_iso(data["createdAt"]) if data.get("createdAt") else utc_now()
        updated_at = parse_iso(data["updatedAt"]) if data.get("updatedAt") else created_at
        content = data["content"]
        metadata = data.get("metadata") or {"size": len(content), "checksum": ""}
        return cls(
            id=str(data["id"]),
            content=str(content),
            type=MemoryType(data.get("type", MemoryType.CONVERSATION.value)),
            category=str(data.get("category", "")),
            tags=[str(tag) for tag in data.get("tags") or []],
            encrypted=bool(data.get("encrypted", False)),
            created_at=created_at,
            updated_at=updated_at,
            access_policy=AccessPolicy.from_dict(data["accessPolicy"]),
            metadata=MemoryMetadata.from_dict(metadata),
        )


@dataclass
class EncryptedEnvelope:
    """Self-describing AES-GCM ciphertext stored as a record's content."""

    encrypted_content: str
    iv: str
    salt: str
    tag: str
    algorithm: str = "AES-256-GCM"
    key_derivation: str = "pbkdf2-sha256"
    iterations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "encryptedContent": self.encrypted_content,
            "iv": self.iv,
            "salt": self.salt,
            "tag": self.tag,
            "algorithm": self.algorithm,
            "keyDerivation": self.key_derivation,
            "iterations": self.iterations,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: str) -> EncryptedEnvelope:
        """Parse a serialized envelope.

        Raises:
            DecryptionFailedError: If ``raw`` is not a well-formed envelope.
        """
        try:
            data = json.loads(raw)
            envelope = cls(
                encrypted_content=data["encryptedContent"],
                iv=data["iv"],
                salt=data.get("salt", ""),
                tag=data["tag"],
                algorithm=data.get("algorithm", "AES-256-GCM"),
                key_derivation=data.get("keyDerivation", "pbkdf2-sha256"),
                iterations=int(data.get("iterations", 0)),
            )
            for value in (envelope.encrypted_content, envelope.iv, envelope.tag):
                base64.b64decode(value, validate=True)
        except (ValueError, KeyError, TypeError, binascii.Error) as exc:
            raise DecryptionFailedError(
                "Malformed encrypted envelope", details={"error": str(exc)}
            ) from exc
        return envelope

    @staticmethod
    def looks_like_envelope(raw: str) -> bool:
        try:
            EncryptedEnvelope.from_json(raw)
        except DecryptionFailedError:
            return False
        return True


@dataclass
class DateRange:
    """Inclusive creation-date window."""

    start: datetime
    end: datetime

    def contains(self, value: datetime) -> bool:
        return self.start <= value <= self.end


@dataclass
class MemorySearchQuery:
    """Search parameters; ``text`` matches content or tags by substring."""

    text: str = ""
    type: MemoryType | None = None
    category: str | None = None
    tags: list[str] | None = None
    date_range: DateRange | None = None
    owner: str | None = None
    limit: int | None = None
    offset: int = 0


@dataclass
class SearchFacets:
    types: dict[str, int] = field(
        default_factory=lambda: {memory_type.value: 0 for memory_type in MemoryType}
    )
    categories: dict[str, int] = field(default_factory=dict)
    tags: dict[str, int] = field(default_factory=dict)


@dataclass
class MemorySearchResult:
    records: list[MemoryRecord] = field(default_factory=list)
    total_count: int = 0
    facets: SearchFacets = field(default_factory=SearchFacets)


@dataclass
class StorageStats:
    """Approximate storage statistics derived from a sample of entities."""

    total_memories: int = 0
    total_size: int = 0
    pinned_memories: int = 0
    chain_id: int | None = None
    sampled: int = 0


@dataclass
class UploadResult:
    """Outcome of a successful ledger write."""

    storage_handle: str
    byte_size: int
    timestamp: datetime
    chain_id: int | None = None
    transaction_hash: str | None = None
    transaction_url: str | None = None

    @property
    def partial(self) -> bool:
        """True when the entity exists but no transaction hash was captured."""
        return self.transaction_hash is None


@dataclass(frozen=True)
class Written:
    """Update outcome: the new version lives at ``new_handle``."""

    new_handle: str
    result: UploadResult


@dataclass(frozen=True)
class Failed:
    """Update outcome: nothing was written."""

    reason: str
    error: Exception | None = None


StorageOutcome = Union[Written, Failed]


@dataclass
class IntegrityReport:
    """Result of recomputing a stored record's checksums."""

    memory_id: str
    is_valid: bool
    stored_checksum: str | None = None
    computed_checksum: str | None = None
    stored_content_hash: str | None = None
    computed_content_hash: str | None = None
    error: str | None = None
