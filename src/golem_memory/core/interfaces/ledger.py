"""Interface for the remote key-value ledger."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

TxHashCallback = Callable[[str], None]


class LedgerClientProtocol(Protocol):
    """Opaque entity store addressed by entity keys.

    Writes take an explicit nonce so that callers can sequence transactions
    from a shared account. ``on_tx_hash`` is invoked once the transaction
    hash is known, which may be before the entity key is.
    """

    @property
    def owner_address(self) -> str:
        """Account that signs writes and owns created entities."""
        ...

    async def create_entity(
        self,
        data: bytes,
        btl: int,
        annotations: dict[str, str],
        nonce: int,
        on_tx_hash: TxHashCallback | None = None,
    ) -> str:
        """Create an entity and return its key."""
        ...

    async def update_entity(
        self,
        entity_key: str,
        data: bytes,
        btl: int,
        annotations: dict[str, str],
        nonce: int,
        on_tx_hash: TxHashCallback | None = None,
    ) -> str:
        """Replace an entity's payload and annotations in place."""
        ...

    async def delete_entity(self, entity_key: str, nonce: int) -> None:
        """Delete an entity."""
        ...

    async def get_storage_value(self, entity_key: str) -> bytes:
        """Return an entity's payload, or empty bytes if it has none."""
        ...

    async def get_entities_of_owner(self, owner: str) -> list[str]:
        """Return keys of all entities owned by ``owner``."""
        ...

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        """Return the account nonce at ``block``."""
        ...

    async def chain_id(self) -> int:
        """Return the chain id; doubles as a connectivity probe."""
        ...

    async def close(self) -> None:
        ...
