# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Lifecycle record schemas.

One record per deletion, archival, backup and recovery operation. Records
are owned by the manager that created them; callers receive copies.
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from memory_bank.exceptions import NotFoundError, PolicyViolationError
from memory_bank.schemas.memory_types import Memory, MemoryType, utc_now
from memory_bank.schemas.query import DateRange


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------


class DeletionStrategy(str, Enum):
    """How a deletion is carried out."""

    SOFT = "soft"
    HARD = "hard"
    CASCADE = "cascade"
    ARCHIVE_THEN_DELETE = "archive_then_delete"


class DeletionStatus(str, Enum):
    """Deletion state machine.

    REQUESTED -> VALIDATED -> EXECUTING -> COMPLETED | PARTIALLY_COMPLETED,
    REQUESTED -> REJECTED when validation blocks, or FAILED when the store
    raised during execution.
    """

    REQUESTED = "requested"
    VALIDATED = "validated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    REJECTED = "rejected"
    FAILED = "failed"


class DeletionValidation(BaseModel):
    """Outcome of validating a deletion request.

    Only ``allowed`` gates execution; warnings and suggestions are advisory.
    """

    allowed: bool
    reason: Optional[str] = None
    memory_found: bool = True
    warnings: list[str] = Field(default_factory=list)
    affected_memories: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class DeletionRecord(BaseModel):
    """Audit record of one deletion operation."""

    operation_id: str
    memory_id: str
    strategy: DeletionStrategy
    status: DeletionStatus = DeletionStatus.REQUESTED
    deleted_at: datetime = Field(default_factory=utc_now)
    deleted_by: str = "system"
    reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    memory_snapshot: Optional[Memory] = None
    affected_memories: list[str] = Field(default_factory=list)
    failed_memories: list[str] = Field(default_factory=list)
    recovery_deadline: Optional[datetime] = None
    recoverable: bool = False
    error: Optional[str] = None

    def raise_for_status(self) -> None:
        """Raise if this deletion was rejected.

        Raises:
            NotFoundError: The target memory did not exist.
            PolicyViolationError: The deletion was blocked by policy.
        """
        if self.status != DeletionStatus.REJECTED:
            return
        if self.memory_snapshot is None and self.rejection_reason == "Memory not found":
            raise NotFoundError("Memory", self.memory_id)
        raise PolicyViolationError(self.memory_id, self.rejection_reason or "rejected")


# ---------------------------------------------------------------------------
# Archival
# ---------------------------------------------------------------------------


class ArchiveTier(str, Enum):
    """Archive partitions, ordered from most to least recently relevant."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    FROZEN = "frozen"


class ArchivalTrigger(str, Enum):
    """What caused an archival."""

    MANUAL = "manual"
    AGE_BASED = "age_based"
    USAGE_BASED = "usage_based"
    STORAGE_PRESSURE = "storage_pressure"
    POLICY_BASED = "policy_based"


class OriginalMetadata(BaseModel):
    """Snapshot of a memory's usage profile at archival time."""

    importance: float = 0.0
    access_count: int = 0
    last_accessed_at: datetime
    created_at: datetime
    tags: list[str] = Field(default_factory=list)
    project_context: Optional[str] = None


class ArchiveStorageMetadata(BaseModel):
    """Where and how the archived copy is stored."""

    storage_key: str
    original_size: int = 0
    compressed_size: int = 0
    compression_ratio: float = 1.0
    checksum: Optional[str] = None


class ArchiveRecord(BaseModel):
    """Audit record of one archival operation."""

    operation_id: str
    memory_id: str
    tier: ArchiveTier
    trigger: ArchivalTrigger = ArchivalTrigger.MANUAL
    policy_name: Optional[str] = None
    archived_at: datetime = Field(default_factory=utc_now)
    archived_by: str = "system"
    reason: Optional[str] = None
    original_metadata: OriginalMetadata
    storage: ArchiveStorageMetadata
    recoverable: bool = True
    expires_at: Optional[datetime] = None


class ArchiveSearchQuery(BaseModel):
    """Filters for searching archived memories."""

    search_term: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    project_context: Optional[str] = None
    tiers: Optional[list[ArchiveTier]] = None
    archived_between: Optional[DateRange] = None
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)


class ArchiveSearchResult(BaseModel):
    """Archive records matching a search plus scan metadata."""

    archives: list[ArchiveRecord] = Field(default_factory=list)
    total_count: int = 0
    search_time_ms: float = 0.0
    tiers_searched: list[ArchiveTier] = Field(default_factory=list)
    policies_matched: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Backup and recovery
# ---------------------------------------------------------------------------


class BackupKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DIFFERENTIAL = "differential"
    SNAPSHOT = "snapshot"


class BackupStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CORRUPTED = "corrupted"
    VERIFIED = "verified"


RESTORABLE_BACKUP_STATUSES = frozenset({BackupStatus.COMPLETED, BackupStatus.VERIFIED})


class RecoveryStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class RecoveryMode(str, Enum):
    FULL = "full"
    SELECTIVE = "selective"
    POINT_IN_TIME = "point_in_time"


class BackupMetadata(BaseModel):
    """Descriptive metadata written into the backup envelope."""

    format_version: str = "1.0.0"
    created_by: str = "system"
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    encryption_enabled: bool = False


class BackupValidation(BaseModel):
    """Result of the most recent integrity check."""

    is_valid: bool
    validated_at: datetime = Field(default_factory=utc_now)
    checksum_valid: bool = False
    structure_valid: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class BackupRecord(BaseModel):
    """Audit record of one backup file."""

    id: str
    kind: BackupKind
    status: BackupStatus = BackupStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    file_path: str
    file_size: int = 0
    memory_count: int = 0
    checksum: str = ""
    compression_ratio: Optional[float] = None
    base_backup_id: Optional[str] = None
    metadata: BackupMetadata = Field(default_factory=BackupMetadata)
    validation: Optional[BackupValidation] = None
    error: Optional[str] = None


class MemoryFilter(BaseModel):
    """Selection applied by selective restores.

    Each configured criterion must hold; unset criteria are ignored.
    Tags match when the memory carries any of the listed tags.
    """

    tags: list[str] = Field(default_factory=list)
    types: list[MemoryType] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)
    date_range: Optional[DateRange] = None

    def matches(self, memory: Memory) -> bool:
        if self.types and memory.memory_type not in self.types:
            return False
        if self.tags and not set(self.tags) & set(memory.tags):
            return False
        if self.projects and memory.project_context not in self.projects:
            return False
        if self.date_range is not None and not self.date_range.contains(memory.created_at):
            return False
        return True


class RecoveryOptions(BaseModel):
    """How a restore should be carried out."""

    overwrite_existing: bool = False
    validate_after_recovery: bool = True
    create_recovery_point: bool = False
    mode: RecoveryMode = RecoveryMode.FULL
    memory_filter: Optional[MemoryFilter] = None
    target_timestamp: Optional[datetime] = None


class RecoveryResults(BaseModel):
    recovered_memories: list[str] = Field(default_factory=list)
    failed_memories: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class RecoveryRecord(BaseModel):
    """Audit record of one restore operation."""

    id: str
    backup_id: str
    status: RecoveryStatus = RecoveryStatus.PENDING
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    memories_recovered: int = 0
    memories_failed: int = 0
    target_timestamp: Optional[datetime] = None
    recovery_point_id: Optional[str] = None
    options: RecoveryOptions = Field(default_factory=RecoveryOptions)
    results: RecoveryResults = Field(default_factory=RecoveryResults)
    error: Optional[str] = None


def new_operation_id(prefix: str) -> str:
    """Time-ordered, collision-resistant id such as ``del_1718000000000_3f9a1c2b7``."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def dump_record(record: BaseModel) -> dict[str, Any]:
    """JSON-compatible dict of a record, for events and logs."""
    return record.model_dump(mode="json")
