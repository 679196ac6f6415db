"""
File-Based Handle Store

Keeps the set of ledger entity handles created by this client in a JSON
file so that listings survive restarts and can fall back to local data when
the ledger's owner index is unreachable.

File layout::

    {"owner": "...", "updated_at": "...", "handles": ["0x...", ...]}

Writes are atomic (temp file, then rename) and serialized by an asyncio
lock.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from pathlib import Path

import aiofiles
import structlog

from golem_memory.core.utils.time import utc_now


class FileHandleStore:
    """Handle cache persisted as a JSON file."""

    def __init__(self, path: str | Path, owner: str | None = None) -> None:
        self.path = Path(path)
        self.owner = owner
        self._handles: set[str] = set()
        self._lock = asyncio.Lock()
        self.logger = structlog.get_logger(__name__)

    def snapshot(self) -> set[str]:
        return set(self._handles)

    async def load(self) -> set[str]:
        """Load handles from disk. Missing or corrupt files yield an empty set."""
        async with self._lock:
            if not self.path.exists():
                self._handles = set()
                return set()
            try:
                async with aiofiles.open(self.path, encoding="utf-8") as f:
                    content = await f.read()
                data = json.loads(content)
                handles = {str(handle) for handle in data.get("handles", [])}
            except (OSError, json.JSONDecodeError, AttributeError, TypeError) as exc:
                self.logger.warning(
                    "handle_store.load_failed", path=str(self.path), error=str(exc)
                )
                handles = set()
            self._handles = handles
            self.logger.debug("handle_store.loaded", count=len(handles))
            return set(handles)

    async def add(self, handle: str) -> None:
        async with self._lock:
            if handle in self._handles:
                return
            self._handles.add(handle)
            await self._persist()

    async def discard(self, handle: str) -> None:
        async with self._lock:
            if handle not in self._handles:
                return
            self._handles.discard(handle)
            await self._persist()

    async def replace_all(self, handles: Iterable[str]) -> None:
        async with self._lock:
            self._handles = set(handles)
            await self._persist()

    async def _persist(self) -> None:
        payload = {
            "owner": self.owner,
            "updated_at": utc_now().isoformat(),
            "handles": sorted(self._handles),
        }
        temp_file = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                await f.write(json.dumps(payload, indent=2))
            temp_file.replace(self.path)
        except OSError as exc:
            # The in-memory set stays authoritative for this session.
            self.logger.error("handle_store.save_failed", path=str(self.path), error=str(exc))
            return
        self.logger.debug("handle_store.saved", count=len(self._handles))


class InMemoryHandleStore:
    """Handle cache that lives only for the process."""

    def __init__(self) -> None:
        self._handles: set[str] = set()

    def snapshot(self) -> set[str]:
        return set(self._handles)

    async def load(self) -> set[str]:
        return set(self._handles)

    async def add(self, handle: str) -> None:
        self._handles.add(handle)

    async def discard(self, handle: str) -> None:
        self._handles.discard(handle)

    async def replace_all(self, handles: Iterable[str]) -> None:
        self._handles = set(handles)
