"""FIFO request throttle.

Calls routed through one ``RequestThrottle`` are dispatched one at a time,
in arrival order, with at least ``min_interval`` seconds between the start
of consecutive calls.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RequestThrottle:
    """Single-lane queue with a minimum spacing between dispatches."""

    def __init__(
        self,
        min_interval: float = 3.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must not be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        # asyncio.Lock wakes waiters in FIFO order.
        self._lock = asyncio.Lock()
        self._last_dispatch: float | None = None

    async def run(self, factory: Callable[[], Awaitable[T]], *, label: str = "request") -> T:
        """Wait for a slot, then await ``factory()``.

        Exceptions from the call propagate; the slot is released regardless.
        """
        async with self._lock:
            if self._last_dispatch is not None:
                wait = self._last_dispatch + self.min_interval - self._clock()
                if wait > 0:
                    logger.debug("throttle.waiting", label=label, seconds=round(wait, 3))
                    await self._sleep(wait)
            self._last_dispatch = self._clock()
            return await factory()
