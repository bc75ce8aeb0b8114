# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Pydantic schemas for memories, queries and lifecycle records.
"""

from memory_bank.schemas.memory_types import (
    LIFECYCLE_METADATA_KEYS,
    LifecycleState,
    Memory,
    MemoryType,
    ensure_utc,
    utc_now,
)
from memory_bank.schemas.query import (
    DateRange,
    MemoryQuery,
    MemoryQueryResult,
    MemoryResult,
    QueryContext,
    SortDirection,
    SortField,
)
from memory_bank.schemas.records import (
    RESTORABLE_BACKUP_STATUSES,
    ArchivalTrigger,
    ArchiveRecord,
    ArchiveSearchQuery,
    ArchiveSearchResult,
    ArchiveStorageMetadata,
    ArchiveTier,
    BackupKind,
    BackupMetadata,
    BackupRecord,
    BackupStatus,
    BackupValidation,
    DeletionRecord,
    DeletionStatus,
    DeletionStrategy,
    DeletionValidation,
    MemoryFilter,
    OriginalMetadata,
    RecoveryMode,
    RecoveryOptions,
    RecoveryRecord,
    RecoveryResults,
    RecoveryStatus,
    dump_record,
    new_operation_id,
)

__all__ = [
    "LIFECYCLE_METADATA_KEYS",
    "RESTORABLE_BACKUP_STATUSES",
    "ArchivalTrigger",
    "ArchiveRecord",
    "ArchiveSearchQuery",
    "ArchiveSearchResult",
    "ArchiveStorageMetadata",
    "ArchiveTier",
    "BackupKind",
    "BackupMetadata",
    "BackupRecord",
    "BackupStatus",
    "BackupValidation",
    "DateRange",
    "DeletionRecord",
    "DeletionStatus",
    "DeletionStrategy",
    "DeletionValidation",
    "LifecycleState",
    "Memory",
    "MemoryFilter",
    "MemoryQuery",
    "MemoryQueryResult",
    "MemoryResult",
    "MemoryType",
    "OriginalMetadata",
    "QueryContext",
    "RecoveryMode",
    "RecoveryOptions",
    "RecoveryRecord",
    "RecoveryResults",
    "RecoveryStatus",
    "SortDirection",
    "SortField",
    "dump_record",
    "new_operation_id",
    "ensure_utc",
    "utc_now",
]
