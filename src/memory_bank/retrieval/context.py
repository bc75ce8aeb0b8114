# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Context retrieval engine.

Fetches an unranked candidate set from the store, scores every candidate
with RelevanceScorer, then sorts, thresholds, expands related memories and
paginates, in that order.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from memory_bank.config import RetrievalConfig
from memory_bank.exceptions import OperationCancelledError
from memory_bank.protocols import MemoryStore
from memory_bank.retrieval.scoring import RelevanceScorer
from memory_bank.schemas import (
    Memory,
    MemoryQuery,
    MemoryResult,
    SortDirection,
    SortField,
    utc_now,
)

logger = logging.getLogger(__name__)

EXPLICIT_RELATION_SCORE = 0.8
EXPLICIT_RELATION_REASON = "Explicitly related"
TAG_RELATION_SCORE = 0.6
TAG_RELATION_REASON = "Similar tags"

FACTOR_NAMES = ("semantic", "recency", "frequency", "tag", "project", "path")


class ContextRetrievalEngine:
    """Ranks memories against a query and its session context.

    Example:
        >>> engine = ContextRetrievalEngine(store)
        >>> results = await engine.retrieve(
        ...     MemoryQuery(search_term="auth token", use_contextual_search=True)
        ... )
        >>> results[0].relevance_reason
        'Content similarity: 100.0%, Recently accessed'

    Attributes:
        config: Weights and traversal bounds.
        scorer: Factor scorer built from ``config``.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[RetrievalConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self.config = config or RetrievalConfig()
        self.scorer = RelevanceScorer(self.config)
        self._clock = clock

    def factor_names(self) -> list[str]:
        return list(FACTOR_NAMES)

    async def retrieve(
        self,
        query: Union[MemoryQuery, dict[str, Any], None],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[MemoryResult]:
        """Rank memories for a query.

        Non-contextual queries return the store's basic results unscored.

        Args:
            query: Query model or mapping. Invalid fields are treated as absent.
            cancel_event: Checked between candidates; when set the scan stops
                with OperationCancelledError.

        Returns:
            Scored results, highest relevance first, paginated last.
        """
        query = MemoryQuery.coerce(query)

        if not query.use_contextual_search:
            basic = await self._store.query(query)
            return list(basic.results) or [MemoryResult(memory=m) for m in basic.items]

        candidates = await self._store.query(self._candidate_query(query))
        now = self._clock()

        scored: list[MemoryResult] = []
        for memory in candidates.items:
            if cancel_event is not None:
                if cancel_event.is_set():
                    raise OperationCancelledError("retrieve", scored)
                await asyncio.sleep(0)
            score, reason = self.scorer.score(memory, query, now)
            scored.append(
                MemoryResult(memory=memory, relevance_score=score, relevance_reason=reason)
            )

        scored.sort(key=lambda r: r.relevance_score, reverse=True)
        logger.debug(f"Scored {len(scored)} candidate(s) for contextual query")

        if query.similarity_threshold is not None:
            scored = [r for r in scored if r.relevance_score >= query.similarity_threshold]

        if query.include_related:
            for result in scored:
                result.related = await self._find_related(
                    result.memory, query.max_related_depth, set()
                )

        start = query.offset or 0
        end = None if query.limit is None else start + query.limit
        return scored[start:end]

    async def find_related(self, memory_id: str, limit: int = 5) -> list[Memory]:
        """Memories related to ``memory_id``.

        Explicit ``related_memories`` are returned when present (dangling ids
        are skipped). Otherwise memories of the same type sharing all of its
        tags are returned, highest priority first.
        """
        memory = await self._store.get(memory_id)
        if memory is None:
            return []

        if memory.related_memories:
            related = []
            for related_id in memory.related_memories:
                found = await self._store.get(related_id)
                if found is not None and found.is_active:
                    related.append(found)
            return related

        page = await self._store.query(
            MemoryQuery(
                tags=memory.tags,
                memory_type=memory.memory_type,
                limit=limit + 1,
                sort_by=SortField.PRIORITY,
                sort_direction=SortDirection.DESC,
            )
        )
        return [m for m in page.items if m.id != memory.id][:limit]

    def _candidate_query(self, query: MemoryQuery) -> MemoryQuery:
        # Search term and tags are scored, not filtered
        return query.model_copy(
            update={
                "use_contextual_search": False,
                "search_term": None,
                "tags": [],
                "sort_by": None,
                "limit": None,
                "offset": None,
            }
        )

    async def _find_related(
        self, memory: Memory, depth: int, visited: set[str]
    ) -> list[MemoryResult]:
        """Depth-first related expansion with a visited set and fan-out cap."""
        if depth <= 0 or memory.id in visited:
            return []
        visited.add(memory.id)
        related: list[MemoryResult] = []

        for related_id in memory.related_memories:
            found = await self._store.get(related_id)
            if found is None or not found.is_active or found.id in visited:
                continue
            result = MemoryResult(
                memory=found,
                relevance_score=EXPLICIT_RELATION_SCORE,
                relevance_reason=EXPLICIT_RELATION_REASON,
            )
            result.related = await self._find_related(found, depth - 1, visited)
            related.append(result)

        if memory.tags:
            similar = await self._store.query(
                MemoryQuery(tags=memory.tags, limit=self.config.related_tag_limit)
            )
            for candidate in similar.items:
                if candidate.id == memory.id or candidate.id in visited:
                    continue
                related.append(
                    MemoryResult(
                        memory=candidate,
                        relevance_score=TAG_RELATION_SCORE,
                        relevance_reason=TAG_RELATION_REASON,
                    )
                )

        return related[: self.config.related_fan_out]
