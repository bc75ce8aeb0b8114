# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Dictionary-backed MemoryRepository adapter.

Suitable for development, tests and ephemeral deployments; data is lost
on restart. Values that are pydantic models are deep-copied on the way in
and on the way out so callers never share rows with the repository.
"""

import copy
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


def _copy(value: T) -> T:
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    return copy.deepcopy(value)


class InMemoryRepository(Generic[T]):
    """In-process implementation of the MemoryRepository protocol.

    Example:
        >>> repo: InMemoryRepository[Memory] = InMemoryRepository()
        >>> await repo.put(memory.id, memory)
        >>> await repo.get(memory.id)
    """

    def __init__(self) -> None:
        self._rows: dict[str, T] = {}

    async def get(self, key: str) -> Optional[T]:
        value = self._rows.get(key)
        if value is None:
            return None
        return _copy(value)

    async def put(self, key: str, value: T) -> None:
        self._rows[key] = _copy(value)

    async def delete(self, key: str) -> bool:
        return self._rows.pop(key, None) is not None

    async def scan(self) -> list[tuple[str, T]]:
        return [(key, _copy(value)) for key, value in list(self._rows.items())]

    async def count(self) -> int:
        return len(self._rows)

    def __len__(self) -> int:
        return len(self._rows)
