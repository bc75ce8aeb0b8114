# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Local implementation of the MemoryStore protocol.

Rows live in an injected MemoryRepository (an InMemoryRepository by
default). The basic query path is a linear filter/sort/paginate pass;
contextual queries are delegated to a ContextRetrievalEngine, which calls
back into ``query`` with contextual search disabled.
"""

import asyncio
import fnmatch
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from memory_bank.exceptions import NotFoundError, OperationCancelledError
from memory_bank.protocols import MemoryRepository
from memory_bank.providers.repository import InMemoryRepository
from memory_bank.schemas import (
    ArchiveTier,
    LifecycleState,
    Memory,
    MemoryQuery,
    MemoryQueryResult,
    MemoryResult,
    SortDirection,
    SortField,
    utc_now,
)

if TYPE_CHECKING:
    from datetime import datetime

    from memory_bank.retrieval.context import ContextRetrievalEngine

logger = logging.getLogger(__name__)

# Fields the store owns; partial updates cannot change them.
IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def _sort_key(field: SortField) -> Callable[[Memory], Any]:
    if field == SortField.PRIORITY:
        return lambda m: m.priority_score if m.priority_score is not None else 0.0
    if field == SortField.CREATED_AT:
        return lambda m: m.created_at
    if field == SortField.LAST_ACCESSED_AT:
        return lambda m: m.last_accessed_at
    if field == SortField.ACCESS_COUNT:
        return lambda m: m.access_count
    # Relevance is only meaningful on the contextual path
    return lambda m: 0


class LocalMemoryStore:
    """In-process MemoryStore.

    Example:
        >>> store = LocalMemoryStore()
        >>> saved = await store.store(Memory(content="use tabs", tags=["style"]))
        >>> page = await store.query(MemoryQuery(tags=["style"], limit=10))

    Attributes:
        retrieval_engine: Engine used when a query asks for contextual
            search. When unset, contextual queries fall back to the basic
            path.
    """

    def __init__(
        self,
        repository: Optional[MemoryRepository[Memory]] = None,
        clock: Callable[[], "datetime"] = utc_now,
    ):
        """Initialize the store.

        Args:
            repository: Row storage. Defaults to an InMemoryRepository.
            clock: Source of the current time.
        """
        self._repository: MemoryRepository[Memory] = (
            repository if repository is not None else InMemoryRepository()
        )
        self._clock = clock
        self.retrieval_engine: Optional["ContextRetrievalEngine"] = None

    def set_retrieval_engine(self, engine: "ContextRetrievalEngine") -> None:
        self.retrieval_engine = engine

    async def store(self, memory: Memory) -> Memory:
        """Insert a memory, or upsert it when the id already exists.

        An upsert keeps the stored creation time.
        """
        existing = await self._repository.get(memory.id)
        if existing is not None:
            memory = memory.model_copy(update={"created_at": existing.created_at})
        await self._repository.put(memory.id, memory)
        return memory.model_copy(deep=True)

    async def get(self, memory_id: str) -> Optional[Memory]:
        return await self._repository.get(memory_id)

    async def update(self, memory_id: str, updates: dict[str, Any]) -> Memory:
        """Apply a partial update and bump ``updated_at``.

        ``id`` and ``created_at`` are ignored if present. An explicit
        ``updated_at`` in ``updates`` wins over the bump.

        Raises:
            NotFoundError: No memory with this id.
        """
        existing = await self._repository.get(memory_id)
        if existing is None:
            raise NotFoundError("Memory", memory_id)

        ignored = IMMUTABLE_FIELDS & updates.keys()
        if ignored:
            logger.debug(f"Ignoring immutable fields {sorted(ignored)} for {memory_id}")

        data = existing.model_dump()
        data.update({k: v for k, v in updates.items() if k not in IMMUTABLE_FIELDS})
        if "updated_at" not in updates:
            data["updated_at"] = self._clock()
        updated = Memory.model_validate(data)
        await self._repository.put(memory_id, updated)
        return updated

    async def delete(self, memory_id: str) -> bool:
        return await self._repository.delete(memory_id)

    async def record_access(self, memory_id: str) -> None:
        """Bump access count and last-access time.

        Does not touch ``updated_at``: reads are not modifications.

        Raises:
            NotFoundError: No memory with this id.
        """
        memory = await self._repository.get(memory_id)
        if memory is None:
            raise NotFoundError("Memory", memory_id)
        memory.access_count += 1
        memory.last_accessed_at = self._clock()
        await self._repository.put(memory_id, memory)

    async def all(self) -> list[Memory]:
        """Every stored row regardless of state."""
        return [memory for _, memory in await self._repository.scan()]

    async def get_deleted(self) -> list[Memory]:
        return [m for m in await self.all() if m.state == LifecycleState.SOFT_DELETED]

    async def get_archived(self) -> list[Memory]:
        return [m for m in await self.all() if m.state == LifecycleState.ARCHIVED]

    async def get_archived_by_tier(self, tier: ArchiveTier) -> list[Memory]:
        tier_value = ArchiveTier(tier).value
        return [
            m
            for m in await self.get_archived()
            if m.metadata.get("archive_tier") == tier_value
        ]

    async def count(self) -> int:
        return await self._repository.count()

    async def query(
        self,
        query: Optional[MemoryQuery] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> MemoryQueryResult:
        """Filter, sort and paginate memories.

        Args:
            query: Query parameters. A dict or None is accepted and
                coerced; invalid fields fall back to their defaults.
            cancel_event: When set during the scan, the query stops and
                raises OperationCancelledError.

        Returns:
            The requested page plus the pre-pagination count.
        """
        started = time.perf_counter()
        query = MemoryQuery.coerce(query)

        if query.use_contextual_search and self.retrieval_engine is not None:
            return await self._contextual_query(query, started)

        matched: list[Memory] = []
        for memory in await self.all():
            if cancel_event is not None:
                if cancel_event.is_set():
                    raise OperationCancelledError("query", matched)
                await asyncio.sleep(0)
            if self._matches(memory, query):
                matched.append(memory)

        if query.sort_by is not None:
            matched.sort(
                key=_sort_key(query.sort_by),
                reverse=query.sort_direction == SortDirection.DESC,
            )

        total = len(matched)
        page = _paginate(matched, query.offset, query.limit)
        return MemoryQueryResult(
            items=page,
            total_count=total,
            results=[MemoryResult(memory=m) for m in page],
            search_metadata={
                "search_time_ms": (time.perf_counter() - started) * 1000,
                "algorithm": "basic",
                "context_factors": [],
            },
        )

    async def _contextual_query(
        self, query: MemoryQuery, started: float
    ) -> MemoryQueryResult:
        assert self.retrieval_engine is not None
        ranked = await self.retrieval_engine.retrieve(
            query.model_copy(update={"limit": None, "offset": None})
        )
        page = _paginate(ranked, query.offset, query.limit)
        return MemoryQueryResult(
            items=[r.memory for r in page],
            total_count=len(ranked),
            results=page,
            search_metadata={
                "search_time_ms": (time.perf_counter() - started) * 1000,
                "algorithm": "contextual",
                "context_factors": self.retrieval_engine.factor_names(),
            },
        )

    def _matches(self, memory: Memory, query: MemoryQuery) -> bool:
        if memory.state not in query.states:
            return False

        if query.search_term:
            term = query.search_term.lower()
            in_content = term in memory.content.lower()
            in_tags = any(term in tag.lower() for tag in memory.tags)
            if not (in_content or in_tags):
                return False

        if query.memory_type is not None and memory.memory_type != query.memory_type:
            return False

        if query.tags and not all(tag in memory.tags for tag in query.tags):
            return False

        if query.project_context and memory.project_context != query.project_context:
            return False

        if query.file_path:
            if not memory.file_path or not fnmatch.fnmatch(
                memory.file_path, query.file_path
            ):
                return False

        if query.created_between and not query.created_between.contains(memory.created_at):
            return False

        if query.accessed_between and not query.accessed_between.contains(
            memory.last_accessed_at
        ):
            return False

        if query.min_priority is not None:
            if memory.priority_score is None or memory.priority_score < query.min_priority:
                return False

        return True


def _paginate(items: list, offset: Optional[int], limit: Optional[int]) -> list:
    start = offset or 0
    if limit is None:
        return items[start:]
    return items[start : start + limit]
