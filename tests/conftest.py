"""Test configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable

import pytest

from golem_memory.application.memory_service import MemoryService
from golem_memory.application.throttle import RequestThrottle
from golem_memory.core.domain.config import StorageSettings
from golem_memory.core.domain.errors import LedgerRpcError
from golem_memory.infrastructure.crypto.encryption import EncryptionService
from golem_memory.infrastructure.crypto.key_management import KeyManagementService
from golem_memory.infrastructure.ledger.storage_adapter import LedgerStorageAdapter
from golem_memory.infrastructure.persistence.file_handle_store import InMemoryHandleStore

OWNER_ADDRESS = "0x00000000000000000000000000000000000000aa"
TEST_ITERATIONS = 1_000


class FakeLedgerClient:
    """In-memory ledger that mimics nonce ordering and tx-hash callbacks."""

    def __init__(self, owner: str = OWNER_ADDRESS, chain: int = 60138453025) -> None:
        self._owner = owner
        self._chain = chain
        self._keys = itertools.count(1)
        self.entities: dict[str, tuple[bytes, dict[str, str]]] = {}
        self.used_nonces: list[int] = []
        self.pending_nonce = 0
        self.chain_id_failures = 0
        self.chain_id_calls = 0
        self.emit_tx_hash = True
        self.write_delay = 0.0
        self.write_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.listing_error: Exception | None = None
        self.nonce_error: Exception | None = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    @property
    def owner_address(self) -> str:
        return self._owner

    async def _write(
        self,
        nonce: int,
        on_tx_hash: Callable[[str], None] | None,
    ) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.write_delay:
                await asyncio.sleep(self.write_delay)
            if self.write_error is not None:
                raise self.write_error
            if nonce in self.used_nonces or nonce < self.pending_nonce:
                raise LedgerRpcError(f"nonce too low: {nonce}", retryable=False)
            self.used_nonces.append(nonce)
            self.pending_nonce = nonce + 1
            if self.emit_tx_hash and on_tx_hash is not None:
                on_tx_hash(f"0x{nonce:064x}")
        finally:
            self.in_flight -= 1

    async def create_entity(self, data, btl, annotations, nonce, on_tx_hash=None) -> str:
        await self._write(nonce, on_tx_hash)
        key = f"0x{next(self._keys):064x}"
        self.entities[key] = (data, dict(annotations))
        return key

    async def update_entity(self, entity_key, data, btl, annotations, nonce, on_tx_hash=None):
        await self._write(nonce, on_tx_hash)
        self.entities[entity_key] = (data, dict(annotations))
        return entity_key

    async def delete_entity(self, entity_key, nonce) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        await self._write(nonce, None)
        self.entities.pop(entity_key, None)

    async def get_storage_value(self, entity_key: str) -> bytes:
        entry = self.entities.get(entity_key)
        return entry[0] if entry else b""

    async def get_entities_of_owner(self, owner: str) -> list[str]:
        if self.listing_error is not None:
            raise self.listing_error
        return list(self.entities) if owner == self._owner else []

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        if self.nonce_error is not None:
            raise self.nonce_error
        return self.pending_nonce

    async def chain_id(self) -> int:
        self.chain_id_calls += 1
        if self.chain_id_failures > 0:
            self.chain_id_failures -= 1
            raise LedgerRpcError("connection refused")
        return self._chain

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def storage_settings() -> StorageSettings:
    return StorageSettings()


@pytest.fixture
def adapter(
    ledger: FakeLedgerClient,
    storage_settings: StorageSettings,
    recorded_sleep: RecordingSleep,
) -> LedgerStorageAdapter:
    return LedgerStorageAdapter(
        ledger,
        InMemoryHandleStore(),
        storage_settings,
        chain_id=60138453025,
        explorer_url="https://explorer.example",
        request_timeout=1.0,
        sleep=recorded_sleep,
    )


@pytest.fixture
def key_management() -> KeyManagementService:
    return KeyManagementService(iterations=TEST_ITERATIONS)


@pytest.fixture
def unlocked_keys(key_management: KeyManagementService) -> KeyManagementService:
    key_management.initialize_with_password("correct horse battery staple")
    return key_management


@pytest.fixture
def encryption(key_management: KeyManagementService) -> EncryptionService:
    return EncryptionService(key_management)


@pytest.fixture
def service(
    unlocked_keys: KeyManagementService,
    encryption: EncryptionService,
    adapter: LedgerStorageAdapter,
) -> MemoryService:
    return MemoryService(
        unlocked_keys,
        encryption,
        adapter,
        RequestThrottle(0),
        owner_id="owner-1",
    )
