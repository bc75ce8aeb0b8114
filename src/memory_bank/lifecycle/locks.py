# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Per-key asyncio locks.

Operations on the same memory id are serialized; operations on distinct
ids proceed independently. Locks are dropped once no task holds or waits
on them.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class KeyedLock:
    """A family of asyncio.Lock objects keyed by string.

    Example:
        >>> locks = KeyedLock()
        >>> async with locks.hold(memory_id):
        ...     await store.update(memory_id, {...})
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
