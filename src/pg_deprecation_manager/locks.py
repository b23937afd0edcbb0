"""Per-element mutual exclusion for DDL operations."""

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

logger = logging.getLogger(__name__)


class ElementLockRegistry:
    """Hands out one ``asyncio.Lock`` per qualified element name.

    A migration and a rollback touching the same element are serialized.
    Several elements are always locked in sorted order so two operations
    over overlapping element sets cannot deadlock.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, qualified_name: str) -> asyncio.Lock:
        lock = self._locks.get(qualified_name)
        if lock is None:
            lock = self._locks[qualified_name] = asyncio.Lock()
        return lock

    def is_locked(self, qualified_name: str) -> bool:
        lock = self._locks.get(qualified_name)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, qualified_names: Iterable[str]) -> AsyncIterator[list[str]]:
        """Acquire the locks for every name, releasing all of them on exit."""
        names = sorted(set(qualified_names))
        async with AsyncExitStack() as stack:
            for name in names:
                if self.is_locked(name):
                    logger.info("Waiting for in-flight operation on %s", name)
                await stack.enter_async_context(self.lock_for(name))
            yield names
