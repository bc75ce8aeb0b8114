# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Deletion manager.

Validates and executes deletions through one of four strategies, tracks
recovery windows, and strips dangling related-memory references.

State machine per deletion::

    REQUESTED -> VALIDATED -> EXECUTING -> COMPLETED | PARTIALLY_COMPLETED
    REQUESTED -> REJECTED
    EXECUTING -> FAILED

Rejections are returned as records, never raised. A store error during
execution is recorded as FAILED and re-raised. Callers that prefer
exceptions use ``DeletionRecord.raise_for_status()``.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from memory_bank.config import DeletionConfig
from memory_bank.events import EventChannel, MemoryBankEvent
from memory_bank.exceptions import InvalidStateError, NotFoundError
from memory_bank.lifecycle.locks import KeyedLock
from memory_bank.lifecycle.policies import is_expired
from memory_bank.protocols import MemoryStore
from memory_bank.schemas import (
    DeletionRecord,
    DeletionStatus,
    DeletionStrategy,
    DeletionValidation,
    LifecycleState,
    Memory,
    MemoryQuery,
    new_operation_id,
    utc_now,
)

logger = logging.getLogger(__name__)

FREQUENT_ACCESS_COUNT = 10
RECENT_ACCESS_DAYS = 7
MEMORY_NOT_FOUND = "Memory not found"

# Strategies that leave a recoverable tombstone in the store
RECOVERABLE_STRATEGIES = frozenset(
    {DeletionStrategy.SOFT, DeletionStrategy.ARCHIVE_THEN_DELETE}
)


class DeletionManager:
    """Executes and audits memory deletions.

    Example:
        >>> manager = DeletionManager(store)
        >>> record = await manager.delete(memory.id, DeletionStrategy.SOFT)
        >>> restored = await manager.recover(record.operation_id)

    Attributes:
        config: Deletion settings.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[DeletionConfig] = None,
        events: Optional[EventChannel] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self.config = config or DeletionConfig()
        self._events = events or EventChannel()
        self._clock = clock
        self._records: dict[str, DeletionRecord] = {}
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(
        self,
        memory_id: str,
        strategy: DeletionStrategy = DeletionStrategy.SOFT,
        force: bool = False,
    ) -> DeletionValidation:
        """Check whether a deletion may proceed.

        Only a missing memory, a memory that is not active (for strategies
        that leave a tombstone), or a critical memory without ``force``
        blocks. Everything else is reported as warnings and suggestions.

        Returns:
            DeletionValidation; never raises for a bad request.
        """
        memory = await self._store.get(memory_id)
        if memory is None:
            return DeletionValidation(
                allowed=False,
                reason=MEMORY_NOT_FOUND,
                memory_found=False,
                suggestions=["Verify the memory ID is correct"],
            )

        strategy = DeletionStrategy(strategy)
        allowed = True
        reason: Optional[str] = None
        warnings: list[str] = []
        affected: list[str] = []
        suggestions: list[str] = []

        if strategy != DeletionStrategy.HARD and not memory.is_active:
            allowed = False
            reason = f"Memory is {memory.state.value} and cannot be deleted with {strategy.value}"
            suggestions.append("Use hard deletion to remove it permanently")

        if memory.importance >= self.config.critical_importance_threshold:
            if self.config.require_confirmation_for_critical and not force:
                allowed = False
                reason = reason or "Memory is marked as critical and requires explicit confirmation"
                suggestions.append("Use force option to confirm deletion of critical memory")
            else:
                warnings.append("Deleting a critical memory with high importance")

        if memory.related_memories:
            affected.extend(memory.related_memories)
            warnings.append(
                f"{len(memory.related_memories)} related memories will lose their connection"
            )
            if strategy == DeletionStrategy.CASCADE:
                suggestions.append("Consider archiving instead of cascade deletion")

        referencing = await self._find_referencing(memory_id)
        if referencing:
            affected.extend(m.id for m in referencing)
            warnings.append(f"{len(referencing)} memories reference this memory")
            if self.config.auto_cleanup_orphans:
                suggestions.append("Orphaned references will be automatically cleaned up")
            else:
                suggestions.append("Consider cleaning up references manually after deletion")

        if memory.access_count > FREQUENT_ACCESS_COUNT:
            warnings.append("Memory has been accessed frequently and may be important")
            suggestions.append("Consider archiving instead of deletion")

        if self._clock() - memory.last_accessed_at < timedelta(days=RECENT_ACCESS_DAYS):
            warnings.append("Memory was accessed recently")

        return DeletionValidation(
            allowed=allowed,
            reason=reason,
            warnings=warnings,
            affected_memories=list(dict.fromkeys(affected)),
            suggestions=suggestions,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def delete(
        self,
        memory_id: str,
        strategy: DeletionStrategy = DeletionStrategy.SOFT,
        force: bool = False,
        reason: Optional[str] = None,
        deleted_by: str = "system",
        recovery_period_days: Optional[int] = None,
    ) -> DeletionRecord:
        """Validate and execute a deletion.

        A cascade holds the target's lock only while validating and while
        hard-deleting the target; related memories are soft-deleted in
        between, each under its own lock.

        Args:
            memory_id: Memory to delete.
            strategy: soft, hard, cascade or archive_then_delete.
            force: Confirm deletion of a critical memory.
            reason: Free-text reason recorded on the record.
            deleted_by: Actor identifier.
            recovery_period_days: Overrides the configured recovery window.

        Returns:
            The deletion record. Its status is REJECTED when validation
            blocked the request.

        Raises:
            Exception: Whatever the store raised during execution. The
                record is kept with status FAILED.
        """
        strategy = DeletionStrategy(strategy)
        record = DeletionRecord(
            operation_id=new_operation_id("del"),
            memory_id=memory_id,
            strategy=strategy,
            deleted_at=self._clock(),
            deleted_by=deleted_by,
            reason=reason,
        )
        period = (
            recovery_period_days
            if recovery_period_days is not None
            else self.config.default_recovery_period_days
        )

        try:
            async with self._locks.hold(memory_id):
                memory = await self._admit(record, force)
                if memory is not None and strategy != DeletionStrategy.CASCADE:
                    record.status = DeletionStatus.EXECUTING
                    if strategy == DeletionStrategy.SOFT:
                        await self._soft_delete(memory, record, period)
                    elif strategy == DeletionStrategy.HARD:
                        await self._hard_delete(memory, record)
                    else:
                        # Extended soft delete; archival is left to the caller
                        await self._soft_delete(memory, record, period * 2)
            if memory is not None and strategy == DeletionStrategy.CASCADE:
                record.status = DeletionStatus.EXECUTING
                await self._cascade_delete(memory, record)
        except Exception as e:
            record.status = DeletionStatus.FAILED
            record.error = str(e)
            record.recoverable = False
            logger.error(f"Deletion of {memory_id} failed ({strategy.value}): {e}")
            await self._release(self._remember(record))
            raise

        if record.status == DeletionStatus.EXECUTING:
            record.status = DeletionStatus.COMPLETED
        await self._release(self._remember(record))
        if record.status == DeletionStatus.REJECTED:
            return record.model_copy(deep=True)

        if self.config.auto_cleanup_orphans:
            await self.cleanup_orphans(memory_id)

        logger.info(
            f"Deleted {memory_id} ({strategy.value}, {record.status.value}, "
            f"op={record.operation_id})"
        )
        await self._events.emit(MemoryBankEvent.MEMORY_DELETED, record.model_copy(deep=True))
        return record.model_copy(deep=True)

    async def _admit(self, record: DeletionRecord, force: bool) -> Optional[Memory]:
        """Validate under the caller's lock; return the memory or None if rejected."""
        validation = await self.validate(record.memory_id, record.strategy, force=force)
        if not validation.allowed:
            record.status = DeletionStatus.REJECTED
            record.rejection_reason = validation.reason
            logger.info(f"Deletion of {record.memory_id} rejected: {validation.reason}")
            return None

        memory = await self._store.get(record.memory_id)
        if memory is None:
            record.status = DeletionStatus.REJECTED
            record.rejection_reason = MEMORY_NOT_FOUND
            return None

        record.status = DeletionStatus.VALIDATED
        record.affected_memories = validation.affected_memories
        return memory

    async def _soft_delete(self, memory: Memory, record: DeletionRecord, period_days: int) -> None:
        record.memory_snapshot = memory.model_copy(deep=True)
        record.recovery_deadline = record.deleted_at + timedelta(days=period_days)
        record.recoverable = True
        metadata = dict(memory.metadata)
        metadata["deleted_at"] = record.deleted_at.isoformat()
        metadata["deletion_operation_id"] = record.operation_id
        await self._store.update(
            memory.id, {"state": LifecycleState.SOFT_DELETED, "metadata": metadata}
        )

    async def _hard_delete(self, memory: Memory, record: DeletionRecord) -> None:
        if self.config.backup_before_hard_delete:
            record.memory_snapshot = memory.model_copy(deep=True)
        await self._store.delete(memory.id)
        record.recoverable = False

    async def _cascade_delete(self, memory: Memory, record: DeletionRecord) -> None:
        # No lock is held here; each related deletion takes its own.
        for related_id in memory.related_memories:
            if related_id == memory.id:
                continue
            try:
                cascaded = await self.delete(
                    related_id,
                    DeletionStrategy.SOFT,
                    reason=f"Cascade deletion from {memory.id}",
                    deleted_by=record.deleted_by,
                )
            except Exception as e:
                logger.warning(f"Failed to cascade delete {related_id}: {e}")
                record.failed_memories.append(related_id)
                continue
            if cascaded.status == DeletionStatus.REJECTED:
                logger.warning(
                    f"Cascade delete of {related_id} rejected: {cascaded.rejection_reason}"
                )
                record.failed_memories.append(related_id)

        async with self._locks.hold(memory.id):
            current = await self._store.get(memory.id)
            if current is not None:
                await self._hard_delete(current, record)
            else:
                record.recoverable = False
        if record.failed_memories:
            record.status = DeletionStatus.PARTIALLY_COMPLETED

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self, operation_id: str) -> Memory:
        """Restore a soft-deleted memory from its snapshot. One-shot.

        Raises:
            NotFoundError: No record with this operation id.
            InvalidStateError: Not recoverable, past its deadline, or no snapshot.
        """
        record = self._records.get(operation_id)
        if record is None:
            raise NotFoundError("Deletion record", operation_id)

        async with self._locks.hold(record.memory_id):
            if not record.recoverable:
                raise InvalidStateError(f"Deletion {operation_id} is not recoverable")
            now = self._clock()
            if is_expired(record.recovery_deadline, now):
                raise InvalidStateError(f"Recovery deadline for {operation_id} has passed")
            if record.memory_snapshot is None:
                raise InvalidStateError(f"No snapshot stored for {operation_id}")

            snapshot = record.memory_snapshot.model_copy(deep=True)
            snapshot.state = LifecycleState.ACTIVE
            snapshot.updated_at = now
            snapshot.metadata["recovered_at"] = now.isoformat()
            restored = await self._store.store(snapshot)
            record.recoverable = False

        logger.info(f"Recovered {record.memory_id} from {operation_id}")
        await self._events.emit(MemoryBankEvent.MEMORY_RECOVERED, restored)
        return restored

    async def purge_expired(self) -> int:
        """Permanently remove soft-deleted rows whose recovery window closed.

        Returns:
            Number of records that became unrecoverable.
        """
        now = self._clock()
        purged = 0
        for record in list(self._records.values()):
            if not record.recoverable or not is_expired(record.recovery_deadline, now):
                continue
            async with self._locks.hold(record.memory_id):
                await self._purge_tombstone(record)
                purged += 1
            await asyncio.sleep(0)
        if purged:
            logger.info(f"Purged {purged} expired soft deletion(s)")
        return purged

    async def _purge_tombstone(self, record: DeletionRecord) -> None:
        """Delete the soft-deleted row left by ``record``, if it is still there."""
        memory = await self._store.get(record.memory_id)
        if (
            memory is not None
            and memory.state == LifecycleState.SOFT_DELETED
            and memory.metadata.get("deletion_operation_id") == record.operation_id
        ):
            await self._store.delete(record.memory_id)
        record.recoverable = False

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def cleanup_orphans(self, deleted_id: str) -> int:
        """Strip ``deleted_id`` from every memory's related list.

        Idempotent and best-effort: failures are logged, never raised.

        Returns:
            Number of memories cleaned.
        """
        try:
            referencing = await self._find_referencing(deleted_id)
        except Exception as e:
            logger.warning(f"Orphan scan for {deleted_id} failed: {e}")
            return 0

        cleaned = 0
        for memory in referencing:
            remaining = [rid for rid in memory.related_memories if rid != deleted_id]
            try:
                await self._store.update(memory.id, {"related_memories": remaining})
                cleaned += 1
            except Exception as e:
                logger.warning(f"Failed to clean reference in {memory.id}: {e}")

        if cleaned:
            await self._events.emit(
                MemoryBankEvent.ORPHAN_CLEANED,
                {"deleted_memory_id": deleted_id, "cleaned_references": cleaned},
            )
        return cleaned

    async def _find_referencing(self, memory_id: str) -> list[Memory]:
        everything = await self._store.query(MemoryQuery(states=set(LifecycleState)))
        return [
            m
            for m in everything.items
            if m.id != memory_id and memory_id in m.related_memories
        ]

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, operation_id: str) -> DeletionRecord:
        record = self._records.get(operation_id)
        if record is None:
            raise NotFoundError("Deletion record", operation_id)
        return record.model_copy(deep=True)

    def history(self, memory_id: str) -> list[DeletionRecord]:
        """Deletion records for one memory, newest first."""
        records = [r for r in self._records.values() if r.memory_id == memory_id]
        records.sort(key=lambda r: r.deleted_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    def recoverable(self) -> list[DeletionRecord]:
        """Records still inside their recovery window, newest first."""
        now = self._clock()
        records = [
            r
            for r in self._records.values()
            if r.recoverable and not is_expired(r.recovery_deadline, now)
        ]
        records.sort(key=lambda r: r.deleted_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    def records(self) -> list[DeletionRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    def _remember(self, record: DeletionRecord) -> list[DeletionRecord]:
        """Store a record and trim the oldest beyond the limit.

        Returns:
            The trimmed records. Pass them to _release() once no lock is held.
        """
        self._records[record.operation_id] = record
        overflow = len(self._records) - self.config.max_deletion_records
        if overflow <= 0:
            return []
        oldest = sorted(self._records.values(), key=lambda r: r.deleted_at)[:overflow]
        for stale in oldest:
            del self._records[stale.operation_id]
        logger.debug(f"Trimmed {overflow} deletion record(s)")
        return oldest

    async def _release(self, trimmed: list[DeletionRecord]) -> None:
        # A trimmed record can no longer be recovered, so its tombstone goes too
        for record in trimmed:
            if not record.recoverable:
                continue
            async with self._locks.hold(record.memory_id):
                await self._purge_tombstone(record)
            logger.info(
                f"Purged tombstone of {record.memory_id} after trimming {record.operation_id}"
            )
