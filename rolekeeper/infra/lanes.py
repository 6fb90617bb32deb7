"""Per-subject serialization of lifecycle operations."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Hashable, TypeVar

T = TypeVar("T")

log = logging.getLogger(__name__)


class SubjectLanes:
    """Two-layer coordination for lifecycle work.

    - Subject lane: operations for the same key run one after another.
    - Global lane: at most ``max_concurrency`` operations run at once.

    Lane locks are dropped once nobody is waiting on them, so the map only
    holds subjects with work in flight.
    """

    def __init__(self, max_concurrency: int = 8) -> None:
        self._global = asyncio.Semaphore(max_concurrency)
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiting: dict[Hashable, int] = {}

    async def run(self, key: Hashable, task: Callable[[], Awaitable[T]]) -> T:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                async with self._global:
                    return await task()
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
                self._locks.pop(key, None)

    def busy(self) -> dict[Hashable, int]:
        """Return how many operations are queued or running per key."""
        return dict(self._waiting)
