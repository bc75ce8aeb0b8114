# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Query and result schemas.

MemoryQuery is deliberately lenient: a field that fails validation is
replaced by its default rather than raising, so a malformed query from an
external caller degrades to "field absent".
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    ValidationInfo,
    ValidatorFunctionWrapHandler,
    field_validator,
)

from memory_bank.schemas.memory_types import (
    LifecycleState,
    Memory,
    MemoryType,
    ensure_utc,
)


class SortField(str, Enum):
    """Fields the basic query path can sort by."""

    PRIORITY = "priority"
    CREATED_AT = "created_at"
    LAST_ACCESSED_AT = "last_accessed_at"
    ACCESS_COUNT = "access_count"
    RELEVANCE = "relevance"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class _LenientModel(BaseModel):
    """Base model whose invalid fields fall back to their defaults."""

    @field_validator("*", mode="wrap")
    @classmethod
    def _default_on_error(
        cls, value: Any, handler: ValidatorFunctionWrapHandler, info: ValidationInfo
    ) -> Any:
        try:
            return handler(value)
        except (ValidationError, ValueError, TypeError):
            field = cls.model_fields[info.field_name]
            return field.get_default(call_default_factory=True)


class DateRange(BaseModel):
    """Inclusive datetime range."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def timezone_aware(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_utc(moment) <= self.end


class QueryContext(_LenientModel):
    """Session context used by contextual scoring."""

    current_file: Optional[str] = None
    current_project: Optional[str] = None
    recent_memories: list[str] = Field(default_factory=list)
    user_preferences: dict[str, Any] = Field(default_factory=dict)


class MemoryQuery(_LenientModel):
    """Query parameters for the store and the context retrieval engine.

    Attributes:
        search_term: Free text; substring filter on the basic path,
            lexical scoring on the contextual path.
        memory_type: Filter by memory type.
        tags: Tags (AND filter on the basic path, scored when contextual).
        project_context: Filter by project.
        file_path: Glob pattern on the memory file path.
        created_between: Creation-time range filter.
        accessed_between: Last-access range filter.
        min_priority: Minimum priority score.
        sort_by: Sort field for the basic path.
        sort_direction: Sort direction.
        limit: Page size, applied last.
        offset: Page offset, applied last.
        use_contextual_search: Rank with the context retrieval engine.
        include_related: Expand related memories for each result.
        max_related_depth: Depth bound of related expansion.
        similarity_threshold: Minimum relevance score kept.
        context: Session context (current file and project).
        states: Lifecycle states visible to the query.
    """

    search_term: Optional[str] = None
    memory_type: Optional[MemoryType] = None
    tags: list[str] = Field(default_factory=list)
    project_context: Optional[str] = None
    file_path: Optional[str] = None
    created_between: Optional[DateRange] = None
    accessed_between: Optional[DateRange] = None
    min_priority: Optional[float] = None
    sort_by: Optional[SortField] = None
    sort_direction: SortDirection = SortDirection.ASC
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)
    use_contextual_search: bool = False
    include_related: bool = False
    max_related_depth: int = Field(default=2, ge=0)
    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    context: QueryContext = Field(default_factory=QueryContext)
    states: set[LifecycleState] = Field(
        default_factory=lambda: {LifecycleState.ACTIVE}
    )

    @classmethod
    def coerce(cls, query: Union["MemoryQuery", dict[str, Any], None]) -> "MemoryQuery":
        """Build a query from a model, a mapping, or nothing at all."""
        if isinstance(query, MemoryQuery):
            return query
        if isinstance(query, dict):
            return cls.model_validate(query)
        return cls()


class MemoryResult(BaseModel):
    """A memory annotated with its relevance for a query."""

    memory: Memory
    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    relevance_reason: str = "Basic match"
    related: list["MemoryResult"] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.memory.id


class MemoryQueryResult(BaseModel):
    """Result of a store query.

    Attributes:
        items: Memories on the requested page.
        total_count: Matches before pagination.
        results: Scored results when contextual search was used.
        search_metadata: Timing, algorithm and factors used.
    """

    items: list[Memory] = Field(default_factory=list)
    total_count: int = 0
    results: list[MemoryResult] = Field(default_factory=list)
    search_metadata: dict[str, Any] = Field(default_factory=dict)
