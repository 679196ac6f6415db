"""
Ledger Storage Adapter

Maps memory records to Golem Base entities. Each write runs through

    acquire write lock -> test connectivity -> acquire nonce -> submit
    -> capture tx hash -> release lock

with the lock released in ``finally`` whatever the outcome. Reads do not
take the write lock and run concurrently, bounded by a semaphore.

Entities are append-style: an update writes a new entity and leaves the old
one in place. Callers that want the old entity gone delete it separately.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import aiohttp
import structlog

from golem_memory.core.domain.checksum import content_checksum, content_hash
from golem_memory.core.domain.config import StorageSettings
from golem_memory.core.domain.errors import (
    MemoryLayerError,
    PayloadTooLargeError,
    StorageFailureError,
)
from golem_memory.core.domain.memory import (
    Failed,
    MemoryRecord,
    StorageOutcome,
    StorageStats,
    UploadResult,
    Written,
)
from golem_memory.core.interfaces.handle_store import HandleStoreProtocol
from golem_memory.core.interfaces.ledger import LedgerClientProtocol
from golem_memory.core.utils.time import to_iso, utc_now

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n...[truncated]"

T = TypeVar("T")


def truncate_utf8(text: str, max_bytes: int, marker: str = TRUNCATION_MARKER) -> str:
    """Cut ``text`` so that it plus ``marker`` fits in ``max_bytes`` UTF-8 bytes."""
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    budget = max(max_bytes - len(marker.encode("utf-8")), 0)
    return encoded[:budget].decode("utf-8", errors="ignore") + marker


class LedgerStorageAdapter:
    """Persists memory records as ledger entities owned by one account."""

    def __init__(
        self,
        client: LedgerClientProtocol,
        handle_store: HandleStoreProtocol,
        settings: StorageSettings | None = None,
        *,
        chain_id: int | None = None,
        explorer_url: str | None = None,
        request_timeout: float = 30.0,
        write_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.handle_store = handle_store
        self.settings = settings or StorageSettings()
        self.chain_id = chain_id
        self.explorer_url = explorer_url.rstrip("/") if explorer_url else None
        self.request_timeout = request_timeout
        self.write_timeout = write_timeout or request_timeout * 3
        self._sleep = sleep
        self._write_lock = asyncio.Lock()
        self._read_semaphore = asyncio.Semaphore(self.settings.read_concurrency)
        self._last_nonce: int | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load the local handle cache and reconcile it with the ledger."""
        local = await self.handle_store.load()
        try:
            remote = await self._remote(
                lambda: self.client.get_entities_of_owner(self.client.owner_address),
                "get_entities_of_owner",
            )
        except StorageFailureError as exc:
            logger.warning(
                "ledger.reconcile_failed", error=exc.message, cached_handles=len(local)
            )
            return
        await self.handle_store.replace_all(remote)
        logger.info(
            "ledger.reconciled",
            remote_handles=len(remote),
            dropped=len(local - set(remote)),
        )

    async def close(self) -> None:
        await self.client.close()

    def entity_url(self, handle: str) -> str | None:
        return f"{self.explorer_url}/entity/{handle}" if self.explorer_url else None

    def transaction_url(self, tx_hash: str) -> str | None:
        return f"{self.explorer_url}/tx/{tx_hash}" if self.explorer_url else None

    # ------------------------------------------------------------------
    # Remote call plumbing
    # ------------------------------------------------------------------

    async def _remote(
        self,
        factory: Callable[[], Awaitable[T]],
        operation: str,
        timeout: float | None = None,
    ) -> T:
        """Run one remote call with a timeout, mapping failures to StorageFailureError."""
        try:
            return await asyncio.wait_for(factory(), timeout or self.request_timeout)
        except StorageFailureError:
            raise
        except asyncio.TimeoutError as exc:
            raise StorageFailureError(
                f"Ledger call timed out: {operation}", details={"operation": operation}
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise StorageFailureError(
                f"Ledger call failed: {operation}: {exc}", details={"operation": operation}
            ) from exc

    async def _ensure_connected(self) -> None:
        attempts = self.settings.connect_attempts
        for attempt in range(1, attempts + 1):
            try:
                chain_id = await self._remote(self.client.chain_id, "chain_id")
            except StorageFailureError as exc:
                logger.warning(
                    "ledger.connectivity_failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=exc.message,
                )
                if attempt >= attempts:
                    raise StorageFailureError(
                        f"Ledger unreachable after {attempts} attempts",
                        details={"last_error": exc.message},
                    ) from exc
                await self._sleep(self.settings.connect_base_delay * 2 ** (attempt - 1))
                continue
            if self.chain_id is not None and chain_id != self.chain_id:
                logger.warning("ledger.chain_id_mismatch", expected=self.chain_id, actual=chain_id)
            return

    async def _next_nonce(self) -> int:
        """Return the nonce for the next write. Caller must hold the write lock."""
        try:
            pending = await self._remote(
                lambda: self.client.get_transaction_count(self.client.owner_address, "pending"),
                "get_transaction_count",
            )
        except StorageFailureError as exc:
            if self._last_nonce is None:
                raise
            logger.warning("ledger.nonce_fallback", error=exc.message, nonce=self._last_nonce + 1)
            return self._last_nonce + 1
        if self._last_nonce is not None and self._last_nonce + 1 > pending:
            return self._last_nonce + 1
        return pending

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _prepare(self, record: MemoryRecord) -> tuple[MemoryRecord, bytes]:
        """Apply the size policy and serialize. Returns the stored copy and its bytes."""
        stored = record.copy()
        stored.storage_handle = None
        stored.transaction_hash = None
        limit = self.settings.max_content_bytes
        content_size = len(stored.content.encode("utf-8"))

        if content_size > limit:
            if stored.encrypted:
                raise PayloadTooLargeError(
                    "Encrypted content exceeds the content ceiling",
                    size=content_size,
                    limit=limit,
                )
            stored.content = truncate_utf8(stored.content, limit)
            self._restamp(stored)
            logger.warning(
                "ledger.content_truncated",
                memory_id=stored.id,
                original_size=content_size,
                stored_size=stored.metadata.size,
            )

        data = json.dumps(stored.to_wire(), ensure_ascii=False).encode("utf-8")
        ceiling = self.settings.max_transaction_bytes
        if len(data) > ceiling:
            raise PayloadTooLargeError(
                "Serialized memory exceeds the transaction ceiling",
                size=len(data),
                limit=ceiling,
            )
        return stored, data

    @staticmethod
    def _restamp(record: MemoryRecord) -> None:
        record.metadata.size = len(record.content.encode("utf-8"))
        record.metadata.checksum = content_checksum(record.content)
        record.metadata.content_hash = content_hash(record.content)
        record.metadata.truncated = True

    def _annotations(self, record: MemoryRecord) -> dict[str, str]:
        return {
            "memoryId": record.id,
            "type": record.type.value,
            "category": record.category,
            "owner": record.access_policy.owner,
            "createdAt": to_iso(record.created_at),
            "updatedAt": to_iso(record.updated_at),
            "version": str(record.metadata.version),
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upload_memory(
        self,
        record: MemoryRecord,
        extra_annotations: dict[str, str] | None = None,
    ) -> UploadResult:
        """Write ``record`` as a new entity.

        Oversized plain content is truncated with ``TRUNCATION_MARKER`` and the
        metadata restamped; ``record`` itself is updated to match what was
        stored.

        Raises:
            PayloadTooLargeError: If encrypted content exceeds the ceiling.
            StorageFailureError: If the ledger is unreachable or rejects the write.
        """
        stored, data = self._prepare(record)
        annotations = self._annotations(stored)
        if extra_annotations:
            annotations.update(extra_annotations)

        captured: dict[str, str] = {}
        log = logger.bind(memory_id=record.id, byte_size=len(data))

        async with self._write_lock:
            log.debug("ledger.write_lock_acquired")
            await self._ensure_connected()
            nonce = await self._next_nonce()

            def on_tx_hash(tx_hash: str) -> None:
                captured["hash"] = tx_hash
                self._last_nonce = nonce

            log.info("ledger.upload_started", nonce=nonce)
            handle = await self._remote(
                lambda: self.client.create_entity(
                    data, self.settings.entity_btl, annotations, nonce, on_tx_hash
                ),
                "create_entity",
                timeout=self.write_timeout,
            )
            self._last_nonce = nonce
            tx_hash = captured.get("hash")
            if tx_hash and self.settings.stamp_transaction_hash:
                await self._stamp(handle, data, annotations, tx_hash)

        await self.handle_store.add(handle)
        record.content = stored.content
        record.metadata = stored.metadata
        result = UploadResult(
            storage_handle=handle,
            byte_size=len(data),
            timestamp=utc_now(),
            chain_id=self.chain_id,
            transaction_hash=tx_hash,
            transaction_url=self.transaction_url(tx_hash) if tx_hash else None,
        )
        if result.partial:
            log.warning("ledger.upload_partial", handle=handle)
        else:
            log.info("ledger.upload_completed", handle=handle, tx_hash=tx_hash)
        return result

    async def _stamp(
        self, handle: str, data: bytes, annotations: dict[str, str], tx_hash: str
    ) -> None:
        """Best-effort: annotate the entity with its creating transaction."""
        stamped = dict(annotations)
        stamped["transactionHash"] = tx_hash
        url = self.transaction_url(tx_hash)
        if url:
            stamped["explorerUrl"] = url
        try:
            nonce = await self._next_nonce()
            await self._remote(
                lambda: self.client.update_entity(
                    handle, data, self.settings.entity_btl, stamped, nonce
                ),
                "update_entity",
                timeout=self.write_timeout,
            )
            self._last_nonce = nonce
        except StorageFailureError as exc:
            logger.warning("ledger.stamp_failed", handle=handle, error=exc.message)

    async def update_memory(self, old_handle: str, record: MemoryRecord) -> StorageOutcome:
        """Write ``record`` as a new entity superseding ``old_handle``."""
        try:
            result = await self.upload_memory(record, {"previousHandle": old_handle})
        except MemoryLayerError as exc:
            logger.warning(
                "ledger.update_failed", memory_id=record.id, old_handle=old_handle, error=exc.message
            )
            return Failed(reason=exc.message, error=exc)
        return Written(new_handle=result.storage_handle, result=result)

    async def delete_memory(self, handle: str) -> bool:
        """Best-effort delete. Local tracking of ``handle`` is dropped either way."""
        if not handle:
            return False
        try:
            async with self._write_lock:
                nonce = await self._next_nonce()
                await self._remote(
                    lambda: self.client.delete_entity(handle, nonce),
                    "delete_entity",
                    timeout=self.write_timeout,
                )
                self._last_nonce = nonce
        except StorageFailureError as exc:
            logger.warning("ledger.delete_failed", handle=handle, error=exc.message)
            return False
        finally:
            await self.handle_store.discard(handle)
        logger.info("ledger.deleted", handle=handle)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def retrieve_memory(self, handle: str) -> MemoryRecord | None:
        """Fetch and decode the entity at ``handle``.

        Returns None for empty values and for data that is not a memory record.

        Raises:
            StorageFailureError: If the ledger cannot be reached.
        """
        if not handle or not isinstance(handle, str):
            return None
        async with self._read_semaphore:
            raw = await self._remote(
                lambda: self.client.get_storage_value(handle), "get_storage_value"
            )
        if not raw:
            return None
        try:
            record = MemoryRecord.from_wire(json.loads(raw.decode("utf-8")))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.debug("ledger.not_a_memory", handle=handle, error=str(exc))
            return None
        record.storage_handle = handle
        return record

    async def owned_handles(self) -> list[str]:
        """List this account's entity handles, falling back to the local cache."""
        try:
            return await self._remote(
                lambda: self.client.get_entities_of_owner(self.client.owner_address),
                "get_entities_of_owner",
            )
        except StorageFailureError as exc:
            cached = sorted(self.handle_store.snapshot())
            logger.warning("ledger.listing_fallback", error=exc.message, cached_handles=len(cached))
            return cached

    async def _retrieve_quietly(self, handle: str) -> MemoryRecord | None:
        try:
            return await self.retrieve_memory(handle)
        except StorageFailureError as exc:
            logger.warning("ledger.retrieve_failed", handle=handle, error=exc.message)
            return None

    async def search_memories(
        self,
        query_text: str = "",
        owner: str | None = None,
        limit: int | None = None,
        predicate: Callable[[MemoryRecord], bool] | None = None,
    ) -> list[MemoryRecord]:
        """Return owned records whose content or tags contain ``query_text``."""
        handles = await self.owned_handles()
        fetched = await asyncio.gather(*(self._retrieve_quietly(h) for h in handles))
        needle = query_text.lower().strip()
        matches: list[MemoryRecord] = []
        for record in fetched:
            if record is None:
                continue
            if owner is not None and record.access_policy.owner != owner:
                continue
            if needle and needle not in record.content.lower() and not any(
                needle in tag.lower() for tag in record.tags
            ):
                continue
            if predicate is not None and not predicate(record):
                continue
            matches.append(record)
            if limit is not None and len(matches) >= limit:
                break
        logger.debug("ledger.search_completed", handles=len(handles), matches=len(matches))
        return matches

    async def get_storage_stats(self, sample_size: int | None = None) -> StorageStats:
        """Estimate totals from a sample of owned entities."""
        handles = await self.owned_handles()
        if not handles:
            return StorageStats(chain_id=self.chain_id)
        sample = handles[: sample_size or self.settings.stats_sample_size]

        async def size_of(handle: str) -> int | None:
            record = await self._retrieve_quietly(handle)
            if record is None:
                return None
            return len(json.dumps(record.to_wire(), ensure_ascii=False).encode("utf-8"))

        sizes = [size for size in await asyncio.gather(*(size_of(h) for h in sample)) if size]
        if not sizes:
            return StorageStats(chain_id=self.chain_id, sampled=len(sample))
        ratio = len(sizes) / len(sample)
        total = round(len(handles) * ratio)
        average = sum(sizes) / len(sizes)
        return StorageStats(
            total_memories=total,
            total_size=round(total * average),
            pinned_memories=total,
            chain_id=self.chain_id,
            sampled=len(sample),
        )
