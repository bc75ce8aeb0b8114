# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Storage protocols for the memory bank engine.

Defines the two seams the engine is written against:

- MemoryRepository: a key/value adapter (get/put/delete/scan) that holds
  raw rows. The store and the archive tier partitions are both built on it.
- MemoryStore: the memory-level interface the lifecycle managers and the
  retrieval engine consume.

Any object that structurally matches these protocols can be injected.
"""

from typing import Any, Optional, Protocol, TypeVar, runtime_checkable

from memory_bank.schemas import (
    ArchiveTier,
    Memory,
    MemoryQuery,
    MemoryQueryResult,
)

# Protocol version for compatibility tracking
MEMORY_STORE_VERSION = "1.0.0"

T = TypeVar("T")


@runtime_checkable
class MemoryRepository(Protocol[T]):
    """Key/value storage adapter.

    Implementations own their rows. Values handed in and out are copies
    as far as the caller is concerned; mutating a returned value must not
    change the stored row.
    """

    async def get(self, key: str) -> Optional[T]:
        """Return the value for ``key``, or None."""
        ...

    async def put(self, key: str, value: T) -> None:
        """Insert or replace the value for ``key``."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if it existed."""
        ...

    async def scan(self) -> list[tuple[str, T]]:
        """Snapshot of all (key, value) pairs."""
        ...

    async def count(self) -> int:
        """Number of stored keys."""
        ...


@runtime_checkable
class MemoryStore(Protocol):
    """Protocol for memory stores.

    Methods:
        store: Insert or upsert a memory.
        get: Get a memory by id.
        update: Apply a partial update.
        delete: Physically remove a memory.
        query: Filter, sort and paginate memories.
        record_access: Bump the access counter and last-access time.
        get_deleted: Soft-deleted memories.
        get_archived: Archived memories.
        get_archived_by_tier: Archived memories in one tier.
        count: Number of stored rows.
    """

    async def store(self, memory: Memory) -> Memory:
        """Store a memory.

        Args:
            memory: The memory to store. An existing id is upserted and its
                original creation time is kept.

        Returns:
            A copy of the stored memory.
        """
        ...

    async def get(self, memory_id: str) -> Optional[Memory]:
        ...

    async def update(self, memory_id: str, updates: dict[str, Any]) -> Memory:
        """Apply a partial update.

        Raises:
            NotFoundError: No memory with this id.
        """
        ...

    async def delete(self, memory_id: str) -> bool:
        ...

    async def query(self, query: MemoryQuery) -> MemoryQueryResult:
        ...

    async def record_access(self, memory_id: str) -> None:
        ...

    async def get_deleted(self) -> list[Memory]:
        ...

    async def get_archived(self) -> list[Memory]:
        ...

    async def get_archived_by_tier(self, tier: ArchiveTier) -> list[Memory]:
        ...

    async def count(self) -> int:
        ...
