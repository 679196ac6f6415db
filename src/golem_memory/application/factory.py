"""Application Layer - Service Factory.

Wires key management, encryption, the ledger client, the handle cache and
the throttle into a ``MemoryService`` from ``MemoryLayerSettings``.
"""

from __future__ import annotations

import structlog

from golem_memory.application.memory_service import MemoryService
from golem_memory.application.throttle import RequestThrottle
from golem_memory.core.domain.config import MemoryLayerSettings
from golem_memory.core.interfaces.handle_store import HandleStoreProtocol
from golem_memory.core.interfaces.ledger import LedgerClientProtocol
from golem_memory.infrastructure.crypto.encryption import EncryptionService
from golem_memory.infrastructure.crypto.key_management import KeyManagementService
from golem_memory.infrastructure.ledger.rpc_client import GolemBaseRpcClient
from golem_memory.infrastructure.ledger.storage_adapter import LedgerStorageAdapter
from golem_memory.infrastructure.persistence.file_handle_store import FileHandleStore

logger = structlog.get_logger(__name__)


def build_memory_service(
    settings: MemoryLayerSettings,
    *,
    client: LedgerClientProtocol | None = None,
    handle_store: HandleStoreProtocol | None = None,
    key_management: KeyManagementService | None = None,
    throttle: RequestThrottle | None = None,
) -> MemoryService:
    """Create a ``MemoryService``; any collaborator can be injected instead.

    Raises:
        LedgerConfigurationError: If no client is given and the ledger settings
            lack both a private key and an owner address.
    """
    ledger = client or GolemBaseRpcClient(settings.ledger)
    store = handle_store or FileHandleStore(
        settings.storage.handle_cache_path, owner=ledger.owner_address
    )
    keys = key_management or KeyManagementService(
        default_derivation=settings.crypto.key_derivation,
        iterations=settings.crypto.kdf_iterations,
    )
    storage = LedgerStorageAdapter(
        ledger,
        store,
        settings.storage,
        chain_id=settings.ledger.chain_id,
        explorer_url=settings.ledger.explorer_url,
        request_timeout=settings.ledger.request_timeout,
        write_timeout=settings.ledger.request_timeout + settings.ledger.receipt_timeout,
    )
    service = MemoryService(
        keys,
        EncryptionService(keys),
        storage,
        throttle or RequestThrottle(settings.service.request_delay),
        owner_id=settings.service.owner_id,
        enforce_permissions=settings.service.enforce_permissions,
        prune_superseded=settings.service.prune_superseded,
        max_fallback_keys=settings.crypto.max_fallback_keys,
    )
    logger.debug(
        "factory.memory_service_built",
        rpc_url=settings.ledger.rpc_url,
        owner=ledger.owner_address,
    )
    return service
