"""Tests for MemoryService against an in-memory ledger."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from golem_memory.application.memory_service import MemoryService
from golem_memory.application.throttle import RequestThrottle
from golem_memory.core.domain.checksum import content_checksum
from golem_memory.core.domain.errors import (
    KeyManagementNotInitializedError,
    LedgerRpcError,
    StorageFailureError,
    UnauthorizedError,
    ValidationFailureError,
)
from golem_memory.core.domain.memory import (
    AccessPolicy,
    DateRange,
    EncryptedEnvelope,
    MemoryMetadata,
    MemoryRecord,
    MemorySearchQuery,
    MemoryType,
    PermissionAction,
)
from golem_memory.infrastructure.crypto.encryption import EncryptionService
from golem_memory.infrastructure.crypto.key_management import KeyManagementService
from golem_memory.infrastructure.ledger.storage_adapter import TRUNCATION_MARKER


def _entities_for(ledger, memory_id: str) -> list[dict]:
    return [
        json.loads(data)
        for data, annotations in ledger.entities.values()
        if annotations.get("memoryId") == memory_id
    ]


# ---------------------------------------------------------------------------
# Create and get
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_and_retrieve_encrypted(service, ledger):
    record = await service.create_memory("hello world", "conversation", "test", [], None, True)

    assert record.encrypted
    assert record.metadata.encryption_key_id == f"memory_{record.id}"
    assert record.metadata.encryption_salt
    assert record.storage_handle in ledger.entities
    assert record.transaction_hash is not None
    assert EncryptedEnvelope.looks_like_envelope(record.content)

    stored = _entities_for(ledger, record.id)[0]
    assert "hello world" not in stored["content"]
    assert stored["metadata"]["checksum"] == content_checksum(stored["content"])

    fetched = await service.get_memory(record.id)
    assert fetched.content == "hello world"
    assert fetched.metadata.version == 1


@pytest.mark.asyncio
async def test_create_plain_memory(service):
    record = await service.create_memory("plain fact", MemoryType.LEARNED_FACT, "facts", encrypted=False)
    assert not record.encrypted
    assert record.metadata.encryption_key_id is None
    assert record.access_policy.owner == "owner-1"
    assert (await service.get_memory(record.id)).content == "plain fact"


@pytest.mark.asyncio
async def test_create_records_parent(service):
    parent = await service.create_memory("parent", "workflow", "c", encrypted=False)
    child = await service.create_memory("child", "workflow", "c", encrypted=False, parent_id=parent.id)

    fetched = await service.get_memory(child.id)
    assert fetched.metadata.parent_id == parent.id


@pytest.mark.asyncio
async def test_create_encrypted_requires_initialized_keys(adapter):
    locked = KeyManagementService(iterations=1_000)
    service = MemoryService(locked, EncryptionService(locked), adapter, RequestThrottle(0))
    with pytest.raises(KeyManagementNotInitializedError):
        await service.create_memory("secret", "conversation", "test")
    assert (await service.create_memory("open", "conversation", "test", encrypted=False)).id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": "", "type": "conversation", "category": "c"},
        {"content": "x", "type": "gossip", "category": "c"},
        {"content": "x", "type": "conversation", "category": "c", "tags": "not-a-list"},
        {"content": "x", "type": "conversation", "category": "c", "access_policy": {"nope": 1}},
    ],
)
async def test_create_validates_input(service, ledger, kwargs):
    with pytest.raises(ValidationFailureError):
        await service.create_memory(**kwargs)
    assert ledger.entities == {}


@pytest.mark.asyncio
async def test_create_propagates_storage_failure_without_persisting(service, ledger):
    ledger.chain_id_failures = 5
    with pytest.raises(StorageFailureError):
        await service.create_memory("x", "conversation", "c", encrypted=False)
    assert ledger.entities == {}


@pytest.mark.asyncio
async def test_large_plain_content_is_truncated(service, ledger):
    record = await service.create_memory("z" * 50_000, "conversation", "c", encrypted=False)
    assert record.content.endswith(TRUNCATION_MARKER)
    assert record.metadata.truncated
    stored = _entities_for(ledger, record.id)[0]
    assert len(stored["content"].encode("utf-8")) <= 10_000
    assert stored["metadata"]["size"] == len(stored["content"].encode("utf-8"))


@pytest.mark.asyncio
async def test_large_encrypted_content_is_truncated_before_encryption(service, ledger):
    record = await service.create_memory("z" * 50_000, "conversation", "c")
    assert record.metadata.truncated
    stored = _entities_for(ledger, record.id)[0]
    assert len(stored["content"].encode("utf-8")) <= 10_000

    fetched = await service.get_memory(record.id)
    assert fetched.content.endswith(TRUNCATION_MARKER)
    assert fetched.content.startswith("z" * 100)


# ---------------------------------------------------------------------------
# Decryption fallback chain
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_regenerates_key_from_salt_in_new_session(service, unlocked_keys):
    record = await service.create_memory("survives restarts", "learned_fact", "c")
    unlocked_keys.clear_session()
    unlocked_keys.initialize_with_password("correct horse battery staple")

    fetched = await service.get_memory(record.id)
    assert fetched.content == "survives restarts"
    assert unlocked_keys.get_key(f"memory_{record.id}") is not None


async def _store_with_foreign_key(service, unlocked_keys, encryption) -> MemoryRecord:
    donor = unlocked_keys.generate_memory_key("donor")
    envelope = encryption.encrypt("recovered by fallback", donor.key_id)
    envelope.salt = ""
    record = MemoryRecord(
        content=envelope.to_json(),
        type=MemoryType.CONVERSATION,
        category="c",
        encrypted=True,
        access_policy=AccessPolicy(owner="owner-1"),
        metadata=MemoryMetadata(size=0, checksum="", encryption_key_id="memory_lost"),
    )
    await service.storage.upload_memory(record)
    return record


@pytest.mark.asyncio
async def test_falls_back_to_other_session_keys(service, unlocked_keys, encryption):
    record = await _store_with_foreign_key(service, unlocked_keys, encryption)
    fetched = await service.get_memory(record.id)
    assert fetched.content == "recovered by fallback"


@pytest.mark.asyncio
async def test_fallback_is_bounded(service, unlocked_keys, encryption):
    record = await _store_with_foreign_key(service, unlocked_keys, encryption)
    service.max_fallback_keys = 0
    fetched = await service.get_memory(record.id)
    assert fetched.content == record.content


@pytest.mark.asyncio
async def test_undecryptable_memory_returns_ciphertext(service, unlocked_keys):
    record = await service.create_memory("lost forever", "conversation", "c")
    unlocked_keys.clear_session()
    unlocked_keys.initialize_with_password("wrong password")

    fetched = await service.get_memory(record.id)
    assert fetched is not None
    assert fetched.content == record.content
    assert "lost forever" not in fetched.content


@pytest.mark.asyncio
async def test_malformed_envelope_returns_stored_content(service, adapter):
    record = MemoryRecord(
        content="not an envelope",
        type=MemoryType.CONVERSATION,
        category="c",
        encrypted=True,
        access_policy=AccessPolicy(owner="owner-1"),
        metadata=MemoryMetadata(size=0, checksum=""),
    )
    await adapter.upload_memory(record)
    assert (await service.get_memory(record.id)).content == "not an envelope"


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_missing_memory_is_not_an_error(service):
    assert await service.get_memory("nonexistent-id") is None
    assert await service.delete_memory("nonexistent-id") is False
    assert await service.update_memory("nonexistent-id", {"category": "x"}) is None
    assert await service.grant_permission("nonexistent-id", "agentX", ["read"]) is False
    assert await service.revoke_permission("nonexistent-id", "agentX") is False
    assert await service.get_memory_permissions("nonexistent-id") == []
    assert await service.check_permission("nonexistent-id", "agentX", "read") is False


# ---------------------------------------------------------------------------
# Update and delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_bumps_version_by_one(service):
    record = await service.create_memory("v1", "learned_fact", "c", ["a"])

    updated = await service.update_memory(record.id, {"category": "new", "tags": ["b"]})
    assert updated.metadata.version == 2
    assert updated.category == "new"
    assert updated.storage_handle != record.storage_handle
    assert updated.updated_at >= record.updated_at

    updated = await service.update_memory(record.id, {"content": "v3"})
    assert updated.metadata.version == 3
    assert updated.metadata.encryption_salt != record.metadata.encryption_salt

    fetched = await service.get_memory(record.id)
    assert fetched.content == "v3"
    assert fetched.metadata.version == 3
    assert fetched.tags == ["b"]


@pytest.mark.asyncio
async def test_update_prunes_superseded_entity(service, ledger):
    record = await service.create_memory("v1", "learned_fact", "c", encrypted=False)
    await service.update_memory(record.id, {"content": "v2"})
    versions = _entities_for(ledger, record.id)
    assert [v["metadata"]["version"] for v in versions] == [2]


@pytest.mark.asyncio
async def test_update_keeps_superseded_entity_when_not_pruning(service, ledger):
    service.prune_superseded = False
    record = await service.create_memory("v1", "learned_fact", "c", encrypted=False)
    await service.update_memory(record.id, {"content": "v2"})
    assert len(_entities_for(ledger, record.id)) == 2
    assert (await service.get_memory(record.id)).content == "v2"


@pytest.mark.asyncio
async def test_failed_update_leaves_version_unchanged(service, ledger):
    record = await service.create_memory("v1", "learned_fact", "c", encrypted=False)
    ledger.write_error = LedgerRpcError("rejected", retryable=False)
    with pytest.raises(StorageFailureError) as exc_info:
        await service.update_memory(record.id, {"content": "v2"})
    assert not exc_info.value.retryable

    ledger.write_error = None
    fetched = await service.get_memory(record.id)
    assert fetched.metadata.version == 1
    assert fetched.content == "v1"


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(service):
    record = await service.create_memory("v1", "learned_fact", "c", encrypted=False)
    with pytest.raises(ValidationFailureError):
        await service.update_memory(record.id, {"id": "other"})


@pytest.mark.asyncio
async def test_delete_removes_all_versions(service, ledger):
    service.prune_superseded = False
    record = await service.create_memory("v1", "learned_fact", "c", encrypted=False)
    await service.update_memory(record.id, {"content": "v2"})

    assert await service.delete_memory(record.id)
    assert _entities_for(ledger, record.id) == []
    assert await service.get_memory(record.id) is None


@pytest.mark.asyncio
async def test_concurrent_creates_are_serialized(service, ledger):
    ledger.write_delay = 0.01
    records = await asyncio.gather(
        *(service.create_memory(f"m{i}", "conversation", "c", encrypted=False) for i in range(5))
    )
    assert ledger.max_in_flight == 1
    assert sorted(ledger.used_nonces) == list(range(5))
    assert len({r.storage_handle for r in records}) == 5


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_search_filters_and_facets(service):
    await service.create_memory("talk", "conversation", "chat", ["x"], encrypted=False)
    await service.create_memory("fact one", "learned_fact", "science", ["x", "y"], encrypted=False)
    await service.create_memory("fact two", "learned_fact", "history", ["y"], encrypted=False)

    result = await service.search_memories(MemorySearchQuery(text="", type=MemoryType.LEARNED_FACT))
    assert len(result.records) == 2
    assert result.total_count == 2
    assert result.facets.types["learned_fact"] == 2
    assert result.facets.types["conversation"] == 0
    assert result.facets.categories == {"science": 1, "history": 1}
    assert result.facets.tags == {"x": 1, "y": 2}


@pytest.mark.asyncio
async def test_search_tags_match_any(service):
    await service.create_memory("a", "conversation", "c", ["red"], encrypted=False)
    await service.create_memory("b", "conversation", "c", ["blue"], encrypted=False)
    await service.create_memory("c", "conversation", "c", ["green"], encrypted=False)

    result = await service.search_memories(MemorySearchQuery(tags=["red", "blue"]))
    assert {r.content for r in result.records} == {"a", "b"}


@pytest.mark.asyncio
async def test_search_category_is_case_insensitive_substring(service):
    await service.create_memory("standup", "conversation", "Work Notes", encrypted=False)
    await service.create_memory("groceries", "conversation", "personal", encrypted=False)

    result = await service.search_memories(MemorySearchQuery(category="work"))
    assert result.total_count == 1
    assert result.records[0].category == "Work Notes"
    assert [r.content for r in await service.get_memories_by_category("NOTES")] == ["standup"]


@pytest.mark.asyncio
async def test_search_paginates_after_counting(service):
    for i in range(5):
        await service.create_memory(f"note {i}", "conversation", "c", encrypted=False)

    result = await service.search_memories(MemorySearchQuery(text="note", limit=2, offset=2))
    assert len(result.records) == 2
    assert result.total_count == 5
    assert result.facets.types["conversation"] == 5


@pytest.mark.asyncio
async def test_search_date_range(service):
    await service.create_memory("recent", "conversation", "c", encrypted=False)
    now = datetime.now(UTC)

    inside = DateRange(now - timedelta(hours=1), now + timedelta(hours=1))
    outside = DateRange(now - timedelta(days=2), now - timedelta(days=1))
    assert len((await service.search_memories(MemorySearchQuery(date_range=inside))).records) == 1
    assert (await service.search_memories(MemorySearchQuery(date_range=outside))).records == []


@pytest.mark.asyncio
async def test_search_returns_newest_version_only(service):
    service.prune_superseded = False
    record = await service.create_memory("v1", "conversation", "c", encrypted=False)
    await service.update_memory(record.id, {"content": "v2"})

    result = await service.search_memories(MemorySearchQuery())
    assert [r.content for r in result.records] == ["v2"]


@pytest.mark.asyncio
async def test_search_failure_degrades_to_empty(service):
    service.storage.search_memories = AsyncMock(side_effect=StorageFailureError("down"))
    result = await service.search_memories(MemorySearchQuery(text="x"))
    assert result.records == []
    assert result.total_count == 0


@pytest.mark.asyncio
async def test_search_rejects_negative_pagination(service):
    with pytest.raises(ValidationFailureError):
        await service.search_memories(MemorySearchQuery(offset=-1))


@pytest.mark.asyncio
async def test_listing_helpers(service):
    await service.create_memory("a", "conversation", "chat", encrypted=False)
    await service.create_memory("b", "workflow", "ops", encrypted=False)
    await service.create_memory("c", "workflow", "chat")

    assert len(await service.get_all_memories()) == 3
    assert {r.content for r in await service.get_memories_by_type("workflow")} >= {"b"}
    assert len(await service.get_memories_by_category("chat")) == 2

    decrypted = await service.decrypt_all_memories()
    assert {r.content for r in decrypted} == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_delete_unencrypted_memories(service):
    await service.create_memory("a", "conversation", "c", encrypted=False)
    await service.create_memory("b", "conversation", "c", encrypted=False)
    kept = await service.create_memory("c", "conversation", "c")

    assert await service.delete_unencrypted_memories() == 2
    remaining = await service.get_all_memories()
    assert [r.id for r in remaining] == [kept.id]


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_grant_and_revoke(service):
    record = await service.create_memory("shared", "agent_share", "c")

    assert await service.grant_permission(record.id, "agentX", ["read", "write"])
    permissions = await service.get_memory_permissions(record.id)
    entry = next(p for p in permissions if p.agent_id == "agentX")
    assert set(entry.actions) == {PermissionAction.READ, PermissionAction.WRITE}
    assert await service.check_permission(record.id, "agentX", "write")
    assert not await service.check_permission(record.id, "agentX", "delete")

    assert await service.revoke_permission(record.id, "agentX")
    assert all(p.agent_id != "agentX" for p in await service.get_memory_permissions(record.id))
    assert not await service.revoke_permission(record.id, "agentX")


@pytest.mark.asyncio
async def test_grant_merges_actions(service):
    record = await service.create_memory("shared", "agent_share", "c", encrypted=False)
    await service.grant_permission(record.id, "agentX", ["read"])
    await service.grant_permission(record.id, "agentX", ["delete", "read"])

    permissions = await service.get_memory_permissions(record.id)
    assert len(permissions) == 1
    assert permissions[0].actions == [PermissionAction.READ, PermissionAction.DELETE]
    assert (await service.get_memory(record.id)).metadata.version == 3


@pytest.mark.asyncio
async def test_grant_rejects_unknown_action(service):
    record = await service.create_memory("shared", "agent_share", "c", encrypted=False)
    with pytest.raises(ValidationFailureError):
        await service.grant_permission(record.id, "agentX", ["admin"])


@pytest.mark.asyncio
async def test_permissions_enforced_for_other_actors(service):
    record = await service.create_memory("private", "user_preference", "c")

    with pytest.raises(UnauthorizedError):
        await service.get_memory(record.id, actor="agentX")

    await service.grant_permission(record.id, "agentX", ["read"], actor="owner-1")
    assert (await service.get_memory(record.id, actor="agentX")).content == "private"

    with pytest.raises(UnauthorizedError):
        await service.update_memory(record.id, {"category": "x"}, actor="agentX")
    with pytest.raises(UnauthorizedError):
        await service.delete_memory(record.id, actor="agentX")
    with pytest.raises(UnauthorizedError):
        await service.grant_permission(record.id, "agentY", ["read"], actor="agentX")


@pytest.mark.asyncio
async def test_permissions_not_enforced_when_disabled(service):
    service.enforce_permissions = False
    record = await service.create_memory("open", "conversation", "c", encrypted=False)
    assert (await service.get_memory(record.id, actor="anyone")).content == "open"


# ---------------------------------------------------------------------------
# Integrity and stats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_verify_integrity(service, ledger):
    record = await service.create_memory("trust me", "learned_fact", "c", encrypted=False)
    report = await service.verify_memory_integrity(record.id)
    assert report.is_valid
    assert report.stored_content_hash == report.computed_content_hash

    data, annotations = ledger.entities[record.storage_handle]
    payload = json.loads(data)
    payload["content"] = "tampered"
    ledger.entities[record.storage_handle] = (json.dumps(payload).encode(), annotations)

    report = await service.verify_memory_integrity(record.id)
    assert not report.is_valid

    missing = await service.verify_memory_integrity("nonexistent-id")
    assert not missing.is_valid
    assert missing.error == "Memory not found"


@pytest.mark.asyncio
async def test_storage_stats(service):
    await service.create_memory("a", "conversation", "c", encrypted=False)
    stats = await service.get_storage_stats()
    assert stats.total_memories == 1
    assert stats.pinned_memories == 1


@pytest.mark.asyncio
async def test_storage_stats_failure_returns_zeros(service):
    service.storage.get_storage_stats = AsyncMock(side_effect=StorageFailureError("down"))
    stats = await service.get_storage_stats()
    assert stats.total_memories == 0


@pytest.mark.asyncio
async def test_initialize_and_close(service, ledger):
    await service.initialize()
    await service.close()
    assert ledger.closed
