# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Memory entity schemas.

Defines the Pydantic model for a stored memory, its type enumeration and
its explicit lifecycle state. Lifecycle bookkeeping (operation ids, tier,
timestamps) is written to the open metadata mapping under the keys listed
in ``LIFECYCLE_METADATA_KEYS``; the state itself lives in ``Memory.state``
so that "deleted and archived at once" cannot be expressed.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

# Metadata keys written by the lifecycle managers
LIFECYCLE_METADATA_KEYS = (
    "deletion_operation_id",
    "deleted_at",
    "archive_operation_id",
    "archive_tier",
    "archived_at",
    "restored_at",
    "restored_from",
    "recovered_at",
)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MemoryType(str, Enum):
    """Kinds of knowledge a memory can hold."""

    CODE = "code"
    DOCUMENTATION = "documentation"
    CONVERSATION = "conversation"
    DECISION = "decision"
    PATTERN = "pattern"
    PREFERENCE = "preference"
    CUSTOM = "custom"


class LifecycleState(str, Enum):
    """Lifecycle state of a memory row in the store.

    - ACTIVE: visible to queries and retrieval
    - SOFT_DELETED: retained for recovery until its deadline
    - ARCHIVED: a copy lives in an archive tier; the row is a tombstone
    """

    ACTIVE = "active"
    SOFT_DELETED = "soft_deleted"
    ARCHIVED = "archived"


class Memory(BaseModel):
    """A unit of stored knowledge.

    Attributes:
        id: Unique identifier, immutable once assigned.
        content: The memory text.
        memory_type: Kind of memory.
        tags: Ordered, de-duplicated tags.
        created_at: Creation time, immutable.
        last_accessed_at: Last read time (drives recency scoring).
        updated_at: Last modification time (drives incremental backups).
        access_count: Number of recorded reads.
        created_by: Creating user identifier.
        project_context: Optional project this memory belongs to.
        file_path: Optional associated file path.
        priority_score: Optional numeric priority.
        related_memories: Ids of related memories. Entries may dangle.
        metadata: Open mapping; ``importance`` is read from here.
        state: Explicit lifecycle state.
    """

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        frozen=True,
        description="Unique memory identifier",
    )
    content: str = Field(..., description="The memory content")
    memory_type: MemoryType = Field(
        default=MemoryType.CUSTOM, description="Type of memory"
    )
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now, frozen=True)
    last_accessed_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    access_count: int = Field(default=0, ge=0)
    created_by: str = Field(default="system")
    project_context: Optional[str] = None
    file_path: Optional[str] = None
    priority_score: Optional[float] = None
    related_memories: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    state: LifecycleState = Field(default=LifecycleState.ACTIVE)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: list[str]) -> list[str]:
        """Keep first occurrence of each tag, preserving order."""
        return list(dict.fromkeys(t for t in v if t))

    @field_validator("created_at", "last_accessed_at", "updated_at")
    @classmethod
    def timezone_aware(cls, v: datetime) -> datetime:
        """Normalize naive timestamps to UTC."""
        return ensure_utc(v)

    @property
    def importance(self) -> float:
        """Importance from metadata, 0.0 when unset or not numeric."""
        value = self.metadata.get("importance", 0.0)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return float(value)

    @property
    def is_active(self) -> bool:
        return self.state == LifecycleState.ACTIVE

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "content": "function calculateSum(a, b) { return a + b; }",
                    "memory_type": "code",
                    "tags": ["javascript", "math"],
                    "project_context": "calculator-app",
                    "file_path": "src/utils/math.js",
                    "metadata": {"importance": 0.8},
                }
            ]
        }
    }
