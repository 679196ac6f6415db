"""
Memory Service

Orchestrates key management, encryption and ledger storage behind the
operations an application calls: create, get, update, delete and search
memories, and manage per-agent permissions.

Every ledger call goes through one ``RequestThrottle`` so that calls from
this service are dispatched in FIFO order with a minimum spacing.

Reads of encrypted records try, in order:

1. the cached key named in ``metadata.encryption_key_id``;
2. a key regenerated from the stored salt and the envelope's derivation;
3. other cached session keys, oldest first, up to ``max_fallback_keys``;
4. giving up and returning the record with its ciphertext.

Decryption failures are logged and never raised from ``get_memory``.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from golem_memory.application.throttle import RequestThrottle
from golem_memory.core.domain.checksum import content_checksum, content_hash
from golem_memory.core.domain.errors import (
    DecryptionFailedError,
    KeyManagementNotInitializedError,
    MemoryLayerError,
    StorageFailureError,
    UnauthorizedError,
    ValidationFailureError,
)
from golem_memory.core.domain.memory import (
    AccessPolicy,
    EncryptedEnvelope,
    Failed,
    IntegrityReport,
    MemoryMetadata,
    MemoryRecord,
    MemorySearchQuery,
    MemorySearchResult,
    MemoryType,
    Permission,
    PermissionAction,
    SearchFacets,
    StorageStats,
)
from golem_memory.infrastructure.crypto.encryption import EncryptionService
from golem_memory.infrastructure.crypto.key_management import (
    EncryptionKey,
    KeyManagementService,
)
from golem_memory.infrastructure.ledger.storage_adapter import (
    LedgerStorageAdapter,
    truncate_utf8,
)

logger = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"content", "category", "tags", "access_policy", "type", "related_memories"}
)


def _parse_type(value: Any) -> MemoryType:
    try:
        return MemoryType(value)
    except ValueError as exc:
        raise ValidationFailureError(
            f"Unknown memory type: {value}",
            details={"allowed": [memory_type.value for memory_type in MemoryType]},
        ) from exc


def _parse_actions(actions: Iterable[Any]) -> list[PermissionAction]:
    parsed: list[PermissionAction] = []
    for action in actions:
        try:
            parsed_action = PermissionAction(action)
        except ValueError as exc:
            raise ValidationFailureError(f"Unknown permission action: {action}") from exc
        if parsed_action not in parsed:
            parsed.append(parsed_action)
    if not parsed:
        raise ValidationFailureError("At least one permission action is required")
    return parsed


def _validate_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationFailureError("Memory content must be a non-empty string")
    return content


def _validate_tags(tags: Any) -> list[str]:
    if tags is None:
        return []
    if isinstance(tags, str) or not all(isinstance(tag, str) for tag in tags):
        raise ValidationFailureError("Tags must be a list of strings")
    return [tag.strip() for tag in tags if tag.strip()]


def _validate_category(category: Any) -> str:
    if not isinstance(category, str):
        raise ValidationFailureError("Category must be a string")
    return category.strip()


def _newest_per_id(records: Iterable[MemoryRecord]) -> list[MemoryRecord]:
    """Keep the highest version (then latest update) of each memory id."""
    newest: dict[str, MemoryRecord] = {}
    for record in records:
        current = newest.get(record.id)
        if current is None or (record.metadata.version, record.updated_at) > (
            current.metadata.version,
            current.updated_at,
        ):
            newest[record.id] = record
    return list(newest.values())


class MemoryService:
    """Create, read, update, delete and search memories on the ledger."""

    def __init__(
        self,
        key_management: KeyManagementService,
        encryption: EncryptionService,
        storage: LedgerStorageAdapter,
        throttle: RequestThrottle | None = None,
        *,
        owner_id: str = "ethereum-wallet",
        enforce_permissions: bool = True,
        prune_superseded: bool = True,
        max_fallback_keys: int = 25,
    ) -> None:
        self.key_management = key_management
        self.encryption = encryption
        self.storage = storage
        self.throttle = throttle or RequestThrottle()
        self.owner_id = owner_id
        self.enforce_permissions = enforce_permissions
        self.prune_superseded = prune_superseded
        self.max_fallback_keys = max_fallback_keys

    async def initialize(self) -> None:
        await self.throttle.run(self.storage.initialize, label="initialize")
        logger.info("memory_service.initialized", owner=self.owner_id)

    async def close(self) -> None:
        await self.storage.close()

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def _authorize(
        self, record: MemoryRecord, actor: str | None, action: PermissionAction
    ) -> None:
        if not self.enforce_permissions or actor is None:
            return
        if record.access_policy.allows(actor, action):
            return
        logger.warning(
            "memory.access_denied", memory_id=record.id, actor=actor, action=action.value
        )
        raise UnauthorizedError(
            f"{actor} may not {action.value} memory {record.id}",
            actor=actor,
            action=action.value,
        )

    def _require_owner(self, record: MemoryRecord, actor: str | None) -> None:
        if not self.enforce_permissions or actor is None:
            return
        if actor != record.access_policy.owner:
            raise UnauthorizedError(
                f"Only the owner may change permissions on memory {record.id}",
                actor=actor,
                action="manage_permissions",
            )

    # ------------------------------------------------------------------
    # Encryption helpers
    # ------------------------------------------------------------------

    def _seal(self, record: MemoryRecord, plaintext: str) -> None:
        """Encrypt ``plaintext`` into ``record.content`` with a fresh key."""
        if not self.key_management.is_initialized():
            raise KeyManagementNotInitializedError(
                "Key management must be initialized before storing encrypted memories"
            )
        key = self.key_management.generate_memory_key(record.id)
        budget = self._plaintext_budget(key)
        if len(plaintext.encode("utf-8")) > budget:
            original = len(plaintext.encode("utf-8"))
            plaintext = truncate_utf8(plaintext, budget)
            record.metadata.truncated = True
            logger.warning(
                "memory.plaintext_truncated",
                memory_id=record.id,
                original_size=original,
                budget=budget,
            )
        envelope = self.encryption.encrypt(plaintext, key.key_id)
        record.content = envelope.to_json()
        record.encrypted = True
        record.metadata.encryption_key_id = key.key_id
        record.metadata.encryption_salt = key.salt

    def _plaintext_budget(self, key: EncryptionKey) -> int:
        """Largest plaintext, in bytes, whose envelope fits the content ceiling."""
        limit = self.storage.settings.max_content_bytes
        overhead = self.encryption.envelope_overhead(key.key_id)
        # base64 turns every 3 bytes into 4 characters
        return max(((limit - overhead) // 4) * 3, 0)

    def _try_key(
        self, record: MemoryRecord, envelope: EncryptedEnvelope, key: EncryptionKey, step: str
    ) -> str | None:
        try:
            return self.encryption.decrypt_with_key(envelope, key)
        except DecryptionFailedError:
            logger.debug(
                "memory.decrypt_attempt_failed", memory_id=record.id, key_id=key.key_id, step=step
            )
            return None

    def _decrypt(self, record: MemoryRecord) -> str | None:
        """Run the fallback chain; return plaintext or None."""
        try:
            envelope = EncryptedEnvelope.from_json(record.content)
        except DecryptionFailedError:
            logger.warning("memory.envelope_malformed", memory_id=record.id)
            return None

        tried: set[str] = set()
        key_id = record.metadata.encryption_key_id
        if key_id:
            key = self.key_management.get_key(key_id)
            if key is not None:
                tried.add(key.key_id)
                plaintext = self._try_key(record, envelope, key, "cached")
                if plaintext is not None:
                    return plaintext

        salt = record.metadata.encryption_salt or envelope.salt
        if salt and self.key_management.is_initialized():
            try:
                key = self.key_management.generate_memory_key(
                    record.id,
                    salt=salt,
                    key_derivation=envelope.key_derivation,
                    iterations=envelope.iterations or None,
                )
            except ValidationFailureError as exc:
                logger.warning("memory.key_regeneration_failed", memory_id=record.id, error=exc.message)
            else:
                plaintext = self._try_key(record, envelope, key, "regenerated")
                if plaintext is not None:
                    logger.info("memory.decrypted_with_regenerated_key", memory_id=record.id)
                    return plaintext
                tried.add(key.key_id)

        candidates = [
            key for key in self.key_management.all_keys() if key.key_id not in tried
        ][: self.max_fallback_keys]
        for key in candidates:
            logger.info("memory.fallback_key_attempt", memory_id=record.id, key_id=key.key_id)
            plaintext = self._try_key(record, envelope, key, "fallback")
            if plaintext is not None:
                logger.warning(
                    "memory.decrypted_with_fallback_key", memory_id=record.id, key_id=key.key_id
                )
                return plaintext

        logger.error(
            "memory.decryption_failed",
            memory_id=record.id,
            keys_tried=len(tried) + len(candidates),
        )
        return None

    def _decrypted_copy(self, record: MemoryRecord) -> MemoryRecord:
        result = record.copy()
        if result.encrypted:
            plaintext = self._decrypt(result)
            if plaintext is not None:
                result.content = plaintext
        return result

    @staticmethod
    def _stamp_metadata(record: MemoryRecord) -> None:
        record.metadata.size = len(record.content.encode("utf-8"))
        record.metadata.checksum = content_checksum(record.content)
        record.metadata.content_hash = content_hash(record.content)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def _versions(self, memory_id: str) -> list[MemoryRecord]:
        """All stored entities carrying ``memory_id``, newest first."""
        records = await self.throttle.run(
            lambda: self.storage.search_memories("", predicate=lambda r: r.id == memory_id),
            label="locate",
        )
        return sorted(
            records, key=lambda r: (r.metadata.version, r.updated_at), reverse=True
        )

    async def _locate(self, memory_id: str) -> MemoryRecord | None:
        versions = await self._versions(memory_id)
        return versions[0] if versions else None

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_memory(
        self,
        content: str,
        type: MemoryType | str,
        category: str,
        tags: list[str] | None = None,
        access_policy: AccessPolicy | dict[str, Any] | None = None,
        encrypted: bool = True,
        *,
        mime_type: str = "text/plain",
        related_memories: list[str] | None = None,
        parent_id: str | None = None,
        actor: str | None = None,
    ) -> MemoryRecord:
        """Encrypt (by default) and store a new memory.

        Returns:
            The record as stored, with ``storage_handle`` and, when captured,
            ``transaction_hash`` set.

        Raises:
            ValidationFailureError: If an argument is malformed.
            KeyManagementNotInitializedError: If ``encrypted`` and no master password is set.
            StorageFailureError: If the ledger write fails.
            PayloadTooLargeError: If the serialized record cannot fit a transaction.
        """
        plaintext = _validate_content(content)
        policy = self._parse_policy(access_policy, default_owner=actor or self.owner_id)
        record = MemoryRecord(
            content=plaintext,
            type=_parse_type(type),
            category=_validate_category(category),
            tags=_validate_tags(tags),
            access_policy=policy,
            metadata=MemoryMetadata(
                size=0,
                checksum="",
                mime_type=mime_type,
                related_memories=list(related_memories or []),
                parent_id=parent_id,
            ),
        )
        if encrypted:
            self._seal(record, plaintext)
        self._stamp_metadata(record)

        log = logger.bind(memory_id=record.id, encrypted=encrypted)
        log.info("memory.create_started", type=record.type.value)
        try:
            result = await self.throttle.run(
                lambda: self.storage.upload_memory(record), label="create"
            )
        except MemoryLayerError as exc:
            log.error("memory.create_failed", error=exc.message, code=exc.code)
            raise
        record.storage_handle = result.storage_handle
        record.transaction_hash = result.transaction_hash
        log.info(
            "memory.created",
            handle=result.storage_handle,
            tx_hash=result.transaction_hash,
            partial=result.partial,
        )
        return record

    def _parse_policy(
        self, policy: AccessPolicy | dict[str, Any] | None, *, default_owner: str
    ) -> AccessPolicy:
        if policy is None:
            return AccessPolicy(owner=default_owner)
        if isinstance(policy, AccessPolicy):
            return policy
        try:
            return AccessPolicy.from_dict(policy)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise ValidationFailureError(
                "Invalid access policy", details={"error": str(exc)}
            ) from exc

    async def get_memory(self, memory_id: str, actor: str | None = None) -> MemoryRecord | None:
        """Return the newest version of a memory with its content decrypted if possible.

        Returns None if the memory does not exist or the ledger is unreachable.

        Raises:
            UnauthorizedError: If ``actor`` lacks read permission.
        """
        try:
            record = await self._locate(memory_id)
        except StorageFailureError as exc:
            logger.warning("memory.get_failed", memory_id=memory_id, error=exc.message)
            return None
        if record is None:
            logger.info("memory.not_found", memory_id=memory_id)
            return None
        self._authorize(record, actor, PermissionAction.READ)
        return self._decrypted_copy(record)

    async def update_memory(
        self,
        memory_id: str,
        updates: dict[str, Any],
        actor: str | None = None,
    ) -> MemoryRecord | None:
        """Write a new version of a memory.

        Supported fields: ``content``, ``category``, ``tags``, ``access_policy``,
        ``type`` and ``related_memories``.

        Returns:
            The new version as stored, or None if the memory does not exist.

        Raises:
            ValidationFailureError: If ``updates`` names an unsupported field.
            UnauthorizedError: If ``actor`` lacks write permission.
            StorageFailureError: If the new version could not be written.
        """
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationFailureError(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}",
                details={"allowed": sorted(UPDATABLE_FIELDS)},
            )
        current = await self._locate(memory_id)
        if current is None:
            return None
        self._authorize(current, actor, PermissionAction.WRITE)
        if "access_policy" in updates:
            self._require_owner(current, actor)
        return await self._write_update(current, updates)

    async def _write_update(
        self, current: MemoryRecord, updates: dict[str, Any]
    ) -> MemoryRecord:
        updated = current.copy()
        if "content" in updates:
            plaintext = _validate_content(updates["content"])
            updated.metadata.truncated = False
            if updated.encrypted:
                self._seal(updated, plaintext)
            else:
                updated.content = plaintext
        if "category" in updates:
            updated.category = _validate_category(updates["category"])
        if "tags" in updates:
            updated.tags = _validate_tags(updates["tags"])
        if "type" in updates:
            updated.type = _parse_type(updates["type"])
        if "related_memories" in updates:
            updated.metadata.related_memories = list(updates["related_memories"] or [])
        if "access_policy" in updates:
            updated.access_policy = self._parse_policy(
                updates["access_policy"], default_owner=current.access_policy.owner
            )

        updated.metadata.version = current.metadata.version + 1
        updated.touch()
        self._stamp_metadata(updated)

        old_handle = current.storage_handle or ""
        outcome = await self.throttle.run(
            lambda: self.storage.update_memory(old_handle, updated), label="update"
        )
        if isinstance(outcome, Failed):
            retryable = getattr(outcome.error, "retryable", True)
            raise StorageFailureError(
                f"Failed to update memory {current.id}: {outcome.reason}",
                retryable=retryable,
                details={"memory_id": current.id},
            ) from outcome.error

        updated.storage_handle = outcome.new_handle
        updated.transaction_hash = outcome.result.transaction_hash
        logger.info(
            "memory.updated",
            memory_id=current.id,
            version=updated.metadata.version,
            handle=outcome.new_handle,
        )
        if self.prune_superseded and old_handle:
            deleted = await self.throttle.run(
                lambda: self.storage.delete_memory(old_handle), label="prune"
            )
            if not deleted:
                logger.warning("memory.prune_failed", memory_id=current.id, handle=old_handle)
        return updated

    async def delete_memory(self, memory_id: str, actor: str | None = None) -> bool:
        """Delete every stored version of a memory. Returns False if none exist."""
        versions = await self._versions(memory_id)
        if not versions:
            return False
        self._authorize(versions[0], actor, PermissionAction.DELETE)
        deleted = 0
        for version in versions:
            handle = version.storage_handle or ""
            if await self.throttle.run(lambda: self.storage.delete_memory(handle), label="delete"):
                deleted += 1
        logger.info("memory.deleted", memory_id=memory_id, entities=deleted, versions=len(versions))
        return deleted > 0

    # ------------------------------------------------------------------
    # Search and listings
    # ------------------------------------------------------------------

    async def search_memories(self, query: MemorySearchQuery) -> MemorySearchResult:
        """Filter, facet and paginate the owner's memories.

        Facets count the filtered set before pagination. Ledger failures
        yield an empty result.
        """
        if query.offset < 0 or (query.limit is not None and query.limit < 0):
            raise ValidationFailureError("limit and offset must not be negative")
        try:
            candidates = await self.throttle.run(
                lambda: self.storage.search_memories(query.text, owner=query.owner),
                label="search",
            )
        except StorageFailureError as exc:
            logger.warning("memory.search_failed", error=exc.message)
            return MemorySearchResult()

        wanted_tags = set(query.tags or [])
        filtered = []
        for record in _newest_per_id(candidates):
            if query.type is not None and record.type != query.type:
                continue
            if query.category and query.category.lower() not in record.category.lower():
                continue
            if wanted_tags and not wanted_tags.intersection(record.tags):
                continue
            if query.date_range is not None and not query.date_range.contains(record.created_at):
                continue
            filtered.append(record)
        filtered.sort(key=lambda r: r.updated_at, reverse=True)

        facets = SearchFacets()
        for record in filtered:
            facets.types[record.type.value] += 1
            facets.categories[record.category] = facets.categories.get(record.category, 0) + 1
            for tag in record.tags:
                facets.tags[tag] = facets.tags.get(tag, 0) + 1

        end = None if query.limit is None else query.offset + query.limit
        return MemorySearchResult(
            records=filtered[query.offset : end],
            total_count=len(filtered),
            facets=facets,
        )

    async def get_all_memories(self) -> list[MemoryRecord]:
        return (await self.search_memories(MemorySearchQuery())).records

    async def get_memories_by_type(self, memory_type: MemoryType | str) -> list[MemoryRecord]:
        query = MemorySearchQuery(type=_parse_type(memory_type))
        return (await self.search_memories(query)).records

    async def get_memories_by_category(self, category: str) -> list[MemoryRecord]:
        return (await self.search_memories(MemorySearchQuery(category=category))).records

    async def decrypt_all_memories(self) -> list[MemoryRecord]:
        """All memories with content decrypted where a key is available."""
        return [self._decrypted_copy(record) for record in await self.get_all_memories()]

    async def delete_unencrypted_memories(self) -> int:
        """Delete every plaintext memory; returns how many were deleted."""
        deleted = 0
        for record in await self.get_all_memories():
            if record.encrypted:
                continue
            if await self.delete_memory(record.id):
                deleted += 1
        logger.info("memory.unencrypted_deleted", count=deleted)
        return deleted

    async def verify_memory_integrity(self, memory_id: str) -> IntegrityReport:
        """Recompute checksums over the stored content and compare with metadata."""
        try:
            record = await self._locate(memory_id)
        except StorageFailureError as exc:
            return IntegrityReport(memory_id=memory_id, is_valid=False, error=exc.message)
        if record is None:
            return IntegrityReport(memory_id=memory_id, is_valid=False, error="Memory not found")

        computed_checksum = content_checksum(record.content)
        computed_hash = content_hash(record.content)
        is_valid = computed_checksum == record.metadata.checksum
        if record.metadata.content_hash is not None:
            is_valid = is_valid and computed_hash == record.metadata.content_hash
        if not is_valid:
            logger.warning("memory.integrity_mismatch", memory_id=memory_id)
        return IntegrityReport(
            memory_id=memory_id,
            is_valid=is_valid,
            stored_checksum=record.metadata.checksum,
            computed_checksum=computed_checksum,
            stored_content_hash=record.metadata.content_hash,
            computed_content_hash=computed_hash,
        )

    async def get_storage_stats(self) -> StorageStats:
        """Approximate totals; zeros when the ledger is unreachable."""
        try:
            return await self.throttle.run(self.storage.get_storage_stats, label="stats")
        except StorageFailureError as exc:
            logger.warning("memory.stats_failed", error=exc.message)
            return StorageStats()

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def grant_permission(
        self,
        memory_id: str,
        agent_id: str,
        actions: Iterable[PermissionAction | str],
        actor: str | None = None,
    ) -> bool:
        """Merge ``actions`` into ``agent_id``'s permission. False if the memory is missing."""
        if not agent_id:
            raise ValidationFailureError("Agent id must not be empty")
        parsed = _parse_actions(actions)
        current = await self._locate(memory_id)
        if current is None:
            return False
        self._require_owner(current, actor)

        policy = AccessPolicy.from_dict(current.access_policy.to_dict())
        permission = policy.permission_for(agent_id)
        if permission is None:
            policy.permissions.append(Permission(agent_id=agent_id, actions=parsed))
        else:
            permission.actions.extend(a for a in parsed if a not in permission.actions)
        await self._write_update(current, {"access_policy": policy})
        logger.info(
            "memory.permission_granted",
            memory_id=memory_id,
            agent_id=agent_id,
            actions=[action.value for action in parsed],
        )
        return True

    async def revoke_permission(
        self, memory_id: str, agent_id: str, actor: str | None = None
    ) -> bool:
        """Remove ``agent_id``'s permission. False if the memory or entry is missing."""
        current = await self._locate(memory_id)
        if current is None:
            return False
        self._require_owner(current, actor)
        if current.access_policy.permission_for(agent_id) is None:
            return False

        policy = AccessPolicy.from_dict(current.access_policy.to_dict())
        policy.permissions = [p for p in policy.permissions if p.agent_id != agent_id]
        await self._write_update(current, {"access_policy": policy})
        logger.info("memory.permission_revoked", memory_id=memory_id, agent_id=agent_id)
        return True

    async def get_memory_permissions(self, memory_id: str) -> list[Permission]:
        record = await self._locate(memory_id)
        return list(record.access_policy.permissions) if record else []

    async def check_permission(
        self, memory_id: str, agent_id: str, action: PermissionAction | str
    ) -> bool:
        record = await self._locate(memory_id)
        if record is None:
            return False
        return record.access_policy.allows(agent_id, _parse_actions([action])[0])
