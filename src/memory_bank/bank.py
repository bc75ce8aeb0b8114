# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Memory bank facade.

MemoryBank is the single entry point of the engine. It wires one store,
the context retrieval engine and the deletion, archival and backup
managers to a shared event channel, and exposes their operations.

Example:
    >>> async with MemoryBank.from_config(load_config("memory-bank.yaml")) as bank:
    ...     memory = await bank.create_memory({"content": "Prefer pathlib", "tags": ["style"]})
    ...     page = await bank.query_memories({"search_term": "pathlib", "use_contextual_search": True})
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from memory_bank.backup.manager import BackupManager
from memory_bank.backup.scheduler import BackupScheduler
from memory_bank.config import EngineConfig
from memory_bank.events import EventChannel, Listener, MemoryBankEvent, Subscription
from memory_bank.exceptions import NotFoundError
from memory_bank.janitor.runner import LifecycleJanitor
from memory_bank.lifecycle.archival import ArchivalManager
from memory_bank.lifecycle.deletion import DeletionManager
from memory_bank.protocols import MemoryStore
from memory_bank.providers.local import LocalMemoryStore
from memory_bank.retrieval.context import ContextRetrievalEngine
from memory_bank.schemas import (
    ArchivalTrigger,
    ArchiveRecord,
    ArchiveSearchQuery,
    ArchiveSearchResult,
    ArchiveTier,
    BackupRecord,
    BackupValidation,
    DeletionRecord,
    DeletionStrategy,
    DeletionValidation,
    Memory,
    MemoryQuery,
    MemoryQueryResult,
    MemoryResult,
    RecoveryOptions,
    RecoveryRecord,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields a caller may not set through update_memory
_IMMUTABLE_FIELDS = ("id", "created_at")


class MemoryBank:
    """Memory lifecycle and retrieval engine.

    Attributes:
        config: Engine settings.
        store: Live memory store.
        events: Channel every lifecycle event is emitted on.
        retrieval: Context retrieval engine.
        deletion: Deletion manager.
        archival: Archival manager.
        backups: Backup manager.
        janitor: Background maintenance runner.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[MemoryStore] = None,
        events: Optional[EventChannel] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the bank.

        Args:
            config: Engine settings. Defaults to EngineConfig().
            store: Memory store. Defaults to a LocalMemoryStore.
            events: Event channel. A fresh channel is created when omitted.
            clock: Source of the current time, shared by every component.
        """
        self.config = config or EngineConfig()
        self._clock = clock
        self.events = events or EventChannel()
        self.store: MemoryStore = store if store is not None else LocalMemoryStore(clock=clock)

        self.retrieval = ContextRetrievalEngine(self.store, self.config.retrieval, clock)
        if hasattr(self.store, "set_retrieval_engine"):
            self.store.set_retrieval_engine(self.retrieval)

        self.deletion = DeletionManager(self.store, self.config.deletion, self.events, clock)
        self.archival = ArchivalManager(
            self.store, self.config.archival, self.events, clock=clock
        )
        self.backups = BackupManager(self.store, self.config.backup, self.events, clock)
        self.janitor = LifecycleJanitor(
            deletion=self.deletion,
            archival=self.archival,
            backups=self.backups,
            backup_scheduler=BackupScheduler(self.backups, clock),
        )
        self._initialized = False

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs: Any) -> "MemoryBank":
        return cls(config=config, **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, start_maintenance: bool = False) -> None:
        """Prepare the backup directory and optionally start background maintenance.

        Args:
            start_maintenance: Start the periodic archive sweep and janitor.
        """
        if self._initialized:
            return
        await self.backups.initialize()
        if start_maintenance:
            self.archival.start_cleanup()
            self.janitor.start(self.config.archival.cleanup_interval_hours)
        self._initialized = True
        logger.info("Memory bank initialized")

    async def shutdown(self) -> None:
        """Stop background tasks and drop all listeners."""
        self.archival.stop_cleanup()
        self.janitor.stop()
        self.events.clear()
        self._initialized = False
        logger.info("Memory bank shut down")

    async def __aenter__(self) -> "MemoryBank":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _bounded(self, operation: Awaitable[T], timeout: Optional[float]) -> T:
        if timeout is None:
            return await operation
        return await asyncio.wait_for(operation, timeout)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: Union[MemoryBankEvent, str], listener: Listener) -> Subscription:
        return self.events.subscribe(event, listener)

    def unsubscribe(self, event: Union[MemoryBankEvent, str], listener: Listener) -> bool:
        return self.events.unsubscribe(event, listener)

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    async def create_memory(self, memory: Union[Memory, dict[str, Any]]) -> Memory:
        """Store a new memory and emit ``memory-created``.

        A mapping without timestamps is stamped with the bank clock.
        """
        if not isinstance(memory, Memory):
            data = dict(memory)
            now = self._clock()
            for name in ("created_at", "last_accessed_at", "updated_at"):
                data.setdefault(name, now)
            memory = Memory.model_validate(data)
        saved = await self.store.store(memory)
        logger.info(f"Created memory {saved.id}")
        await self.events.emit(MemoryBankEvent.MEMORY_CREATED, saved.model_copy(deep=True))
        return saved

    async def get_memory(self, memory_id: str) -> Optional[Memory]:
        """Fetch a memory and record the access.

        Returns:
            The memory as stored after the access, or None.
        """
        memory = await self.store.get(memory_id)
        if memory is None:
            return None
        await self.store.record_access(memory_id)
        memory = await self.store.get(memory_id)
        await self.events.emit(MemoryBankEvent.MEMORY_ACCESSED, memory.model_copy(deep=True))
        return memory

    async def update_memory(self, memory_id: str, updates: dict[str, Any]) -> Memory:
        """Apply a partial update and emit ``memory-updated``.

        ``id`` and ``created_at`` are ignored.

        Raises:
            NotFoundError: No memory with this id.
        """
        changes = {k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS}
        updated = await self.store.update(memory_id, changes)
        await self.events.emit(MemoryBankEvent.MEMORY_UPDATED, updated.model_copy(deep=True))
        return updated

    async def query_memories(
        self,
        query: Union[MemoryQuery, dict[str, Any], None] = None,
        timeout: Optional[float] = None,
    ) -> MemoryQueryResult:
        """Basic or contextual query, depending on ``use_contextual_search``."""
        return await self._bounded(self.store.query(MemoryQuery.coerce(query)), timeout)

    async def retrieve(
        self,
        query: Union[MemoryQuery, dict[str, Any], None] = None,
        timeout: Optional[float] = None,
    ) -> list[MemoryResult]:
        """Ranked retrieval; never raises for a malformed query."""
        return await self._bounded(self.retrieval.retrieve(query), timeout)

    async def find_related(self, memory_id: str, limit: int = 5) -> list[Memory]:
        return await self.retrieval.find_related(memory_id, limit)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    async def validate_deletion(
        self,
        memory_id: str,
        strategy: DeletionStrategy = DeletionStrategy.SOFT,
        force: bool = False,
    ) -> DeletionValidation:
        return await self.deletion.validate(memory_id, strategy, force)

    async def delete_memory(
        self,
        memory_id: str,
        strategy: DeletionStrategy = DeletionStrategy.SOFT,
        force: bool = False,
        reason: Optional[str] = None,
        deleted_by: str = "system",
        recovery_period_days: Optional[int] = None,
    ) -> DeletionRecord:
        """Delete a memory. Rejections come back as a record, not an exception."""
        return await self.deletion.delete(
            memory_id,
            strategy=strategy,
            force=force,
            reason=reason,
            deleted_by=deleted_by,
            recovery_period_days=recovery_period_days,
        )

    async def recover_memory(self, operation_id: str) -> Memory:
        return await self.deletion.recover(operation_id)

    def deletion_history(self, memory_id: str) -> list[DeletionRecord]:
        return self.deletion.history(memory_id)

    # ------------------------------------------------------------------
    # Archival
    # ------------------------------------------------------------------

    async def archive_memory(
        self,
        memory_id: str,
        tier: Optional[ArchiveTier] = None,
        reason: Optional[str] = None,
        archived_by: str = "system",
        expires_at: Optional[datetime] = None,
    ) -> ArchiveRecord:
        return await self.archival.archive(
            memory_id,
            tier=tier,
            reason=reason,
            archived_by=archived_by,
            expires_at=expires_at,
            trigger=ArchivalTrigger.MANUAL,
        )

    async def restore_archive(self, operation_id: str) -> Memory:
        return await self.archival.restore(operation_id)

    async def search_archives(
        self,
        query: Optional[ArchiveSearchQuery] = None,
        timeout: Optional[float] = None,
    ) -> ArchiveSearchResult:
        return await self._bounded(self.archival.search_archives(query), timeout)

    async def run_archival_policies(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> list[ArchiveRecord]:
        return await self._bounded(self.archival.run_policies(cancel_event), timeout)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def create_full_backup(
        self,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        timeout: Optional[float] = None,
    ) -> BackupRecord:
        return await self._bounded(
            self.backups.create_full(description=description, tags=tags), timeout
        )

    async def create_incremental_backup(
        self,
        base_backup_id: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[list[str]] = None,
        timeout: Optional[float] = None,
    ) -> BackupRecord:
        """Incremental backup on top of ``base_backup_id`` or the newest backup.

        Raises:
            NotFoundError: No base backup exists.
        """
        if base_backup_id is None:
            latest = self.backups.latest()
            if latest is None:
                raise NotFoundError("Backup", "latest")
            base_backup_id = latest.id
        return await self._bounded(
            self.backups.create_incremental(base_backup_id, description=description, tags=tags),
            timeout,
        )

    async def validate_backup(self, backup_id: str) -> BackupValidation:
        return await self.backups.validate(backup_id)

    async def restore_backup(
        self,
        backup_id: str,
        options: Optional[RecoveryOptions] = None,
        timeout: Optional[float] = None,
    ) -> RecoveryRecord:
        return await self._bounded(self.backups.restore(backup_id, options), timeout)

    async def cleanup_backups(self) -> list[str]:
        return await self.backups.cleanup()

    async def run_maintenance(self, timeout: Optional[float] = None) -> dict[str, Any]:
        """Run every janitor step once."""
        return await self._bounded(self.janitor.run_all(), timeout)
