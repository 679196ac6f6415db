"""Interface for the local cache of ledger entity handles."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol


class HandleStoreProtocol(Protocol):
    """Durable set of entity handles written by this client."""

    async def load(self) -> set[str]:
        """Load persisted handles, returning an empty set if none exist."""
        ...

    async def add(self, handle: str) -> None:
        ...

    async def discard(self, handle: str) -> None:
        ...

    async def replace_all(self, handles: Iterable[str]) -> None:
        """Replace the whole set, e.g. after reconciling with the ledger."""
        ...

    def snapshot(self) -> set[str]:
        """Return a copy of the handles currently held in memory."""
        ...
