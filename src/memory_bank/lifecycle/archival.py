# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Archival manager.

Moves memories into tiered archive partitions (hot, warm, cold, frozen),
evaluates archival policies against the live population, restores archived
copies and sweeps expired archives.

Each tier partition is a MemoryRepository keyed by memory id. A memory can
only be archived while it is active, so its id lives in at most one tier
at a time. The live row stays in the store as an ARCHIVED tombstone until
it is restored or its archive expires.
"""

import asyncio
import hashlib
import logging
import time
import zlib
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel

from memory_bank.config import ArchivalConfig
from memory_bank.events import EventChannel, MemoryBankEvent
from memory_bank.exceptions import (
    IntegrityError,
    InvalidStateError,
    MemoryBankError,
    NotFoundError,
    OperationCancelledError,
)
from memory_bank.lifecycle.locks import KeyedLock
from memory_bank.lifecycle.policies import ArchivalPolicy, is_expired
from memory_bank.protocols import MemoryRepository, MemoryStore
from memory_bank.providers.repository import InMemoryRepository
from memory_bank.schemas import (
    ArchivalTrigger,
    ArchiveRecord,
    ArchiveSearchQuery,
    ArchiveSearchResult,
    ArchiveStorageMetadata,
    ArchiveTier,
    LifecycleState,
    Memory,
    MemoryQuery,
    OriginalMetadata,
    SortField,
    new_operation_id,
    utc_now,
)

logger = logging.getLogger(__name__)

ARCHIVE_METADATA_KEYS = ("archive_operation_id", "archive_tier", "archived_at")


class ArchiveEntry(BaseModel):
    """Stored archive payload: the serialized pre-archival memory."""

    operation_id: str
    payload: bytes
    compressed: bool = False

    def decode(self) -> bytes:
        return zlib.decompress(self.payload) if self.compressed else self.payload


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArchivalManager:
    """Tiered archival of memories.

    Example:
        >>> manager = ArchivalManager(store)
        >>> record = await manager.archive(memory.id, ArchiveTier.HOT)
        >>> found = await manager.search_archives(ArchiveSearchQuery(tags=["temporary"]))
        >>> await manager.restore(record.operation_id)

    Attributes:
        config: Archival settings. Policies are copied out of it at init.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[ArchivalConfig] = None,
        events: Optional[EventChannel] = None,
        partitions: Optional[dict[ArchiveTier, MemoryRepository[ArchiveEntry]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the manager.

        Args:
            store: Live memory store.
            config: Archival settings.
            events: Channel lifecycle events are emitted on.
            partitions: Storage per tier. Missing tiers get an InMemoryRepository.
            clock: Source of the current time.
        """
        self._store = store
        self.config = config or ArchivalConfig()
        self._events = events or EventChannel()
        self._clock = clock
        self._partitions: dict[ArchiveTier, MemoryRepository[ArchiveEntry]] = {
            tier: (partitions or {}).get(tier) or InMemoryRepository() for tier in ArchiveTier
        }
        self._policies: dict[str, ArchivalPolicy] = {
            policy.name: policy for policy in self.config.policies
        }
        self._records: dict[str, ArchiveRecord] = {}
        self._locks = KeyedLock()
        self._cleanup_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Archive
    # ------------------------------------------------------------------

    async def archive(
        self,
        memory_id: str,
        tier: Optional[ArchiveTier] = None,
        reason: Optional[str] = None,
        archived_by: str = "system",
        expires_at: Optional[datetime] = None,
        trigger: ArchivalTrigger = ArchivalTrigger.MANUAL,
        policy_name: Optional[str] = None,
    ) -> ArchiveRecord:
        """Move a memory into an archive tier.

        Raises:
            NotFoundError: No memory with this id.
            InvalidStateError: The memory is not active.
        """
        tier = ArchiveTier(tier) if tier is not None else self.config.default_tier
        async with self._locks.hold(memory_id):
            memory = await self._store.get(memory_id)
            if memory is None:
                raise NotFoundError("Memory", memory_id)
            if not memory.is_active:
                raise InvalidStateError(
                    f"Memory {memory_id} is {memory.state.value} and cannot be archived"
                )

            operation_id = new_operation_id("arch")
            now = self._clock()
            serialized = memory.model_dump_json().encode("utf-8")
            payload = zlib.compress(serialized) if self.config.enable_compression else serialized

            record = ArchiveRecord(
                operation_id=operation_id,
                memory_id=memory_id,
                tier=tier,
                trigger=trigger,
                policy_name=policy_name,
                archived_at=now,
                archived_by=archived_by,
                reason=reason,
                original_metadata=OriginalMetadata(
                    importance=memory.importance,
                    access_count=memory.access_count,
                    last_accessed_at=memory.last_accessed_at,
                    created_at=memory.created_at,
                    tags=list(memory.tags),
                    project_context=memory.project_context,
                ),
                storage=ArchiveStorageMetadata(
                    storage_key=f"{tier.value}/{operation_id}",
                    original_size=len(serialized),
                    compressed_size=len(payload),
                    compression_ratio=len(payload) / len(serialized),
                    checksum=checksum(serialized) if self.config.enable_checksums else None,
                ),
                expires_at=expires_at,
            )

            await self._partitions[tier].put(
                memory_id,
                ArchiveEntry(
                    operation_id=operation_id,
                    payload=payload,
                    compressed=self.config.enable_compression,
                ),
            )
            metadata = dict(memory.metadata)
            metadata.update(
                archive_operation_id=operation_id,
                archive_tier=tier.value,
                archived_at=now.isoformat(),
            )
            try:
                await self._store.update(
                    memory_id, {"state": LifecycleState.ARCHIVED, "metadata": metadata}
                )
            except Exception:
                await self._partitions[tier].delete(memory_id)
                raise
            trimmed = self._remember(record)
        await self._release(trimmed)

        logger.info(f"Archived {memory_id} into {tier.value} (op={operation_id})")
        await self._events.emit(MemoryBankEvent.MEMORY_ARCHIVED, record.model_copy(deep=True))
        return record.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def set_policy(self, policy: ArchivalPolicy) -> None:
        self._policies[policy.name] = policy

    def remove_policy(self, name: str) -> bool:
        return self._policies.pop(name, None) is not None

    def policies(self) -> list[ArchivalPolicy]:
        return list(self._policies.values())

    async def run_policies(
        self, cancel_event: Optional[asyncio.Event] = None
    ) -> list[ArchiveRecord]:
        """Archive every active memory selected by an enabled policy.

        Policies run by descending priority over one snapshot of the active
        population. A failure on one memory is logged and skipped.

        Raises:
            OperationCancelledError: ``cancel_event`` was set; ``partial``
                holds the records created so far.
        """
        ordered = sorted(
            (p for p in self._policies.values() if p.enabled),
            key=lambda p: p.priority,
            reverse=True,
        )
        snapshot = (await self._store.query(MemoryQuery())).items
        now = self._clock()
        archived: list[ArchiveRecord] = []
        taken: set[str] = set()

        for policy in ordered:
            for memory in snapshot:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError("run_policies", archived)
                await asyncio.sleep(0)
                if memory.id in taken or not policy.matches(memory, now):
                    continue
                try:
                    record = await self.archive(
                        memory.id,
                        policy.target_tier,
                        reason=f"Policy: {policy.name} - {policy.description}",
                        archived_by="archival-policy",
                        trigger=ArchivalTrigger.POLICY_BASED,
                        policy_name=policy.name,
                    )
                except MemoryBankError as e:
                    logger.warning(f"Policy {policy.name} could not archive {memory.id}: {e}")
                    continue
                except Exception as e:
                    logger.error(f"Policy {policy.name} failed on {memory.id}: {e}")
                    continue
                taken.add(memory.id)
                archived.append(record)
                await self._events.emit(
                    MemoryBankEvent.POLICY_TRIGGERED,
                    {"policy": policy.name, "memory_id": memory.id, "record": record},
                )

        if archived:
            logger.info(f"Archival policies archived {len(archived)} memory(ies)")
        return archived

    async def relieve_storage_pressure(self, capacity: int) -> list[ArchiveRecord]:
        """Archive least-recently-accessed memories until below the pressure line.

        The line is ``storage_pressure_threshold * capacity`` active memories.
        """
        limit = self.config.storage_pressure_threshold * capacity
        page = await self._store.query(
            MemoryQuery(sort_by=SortField.LAST_ACCESSED_AT)
        )
        active = page.total_count
        archived: list[ArchiveRecord] = []
        for memory in page.items:
            if active < limit:
                break
            try:
                archived.append(
                    await self.archive(
                        memory.id,
                        reason="Storage pressure relief",
                        trigger=ArchivalTrigger.STORAGE_PRESSURE,
                    )
                )
                active -= 1
            except MemoryBankError as e:
                logger.warning(f"Storage pressure relief skipped {memory.id}: {e}")
        if archived:
            logger.info(f"Relieved storage pressure by archiving {len(archived)} memory(ies)")
        return archived

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self, operation_id: str) -> Memory:
        """Re-insert an archived memory into the live store. One-shot.

        Raises:
            NotFoundError: No record, or its archive entry is missing.
            InvalidStateError: Not recoverable or expired.
            IntegrityError: The stored copy fails its checksum.
        """
        record = self._records.get(operation_id)
        if record is None:
            raise NotFoundError("Archive record", operation_id)

        async with self._locks.hold(record.memory_id):
            if not record.recoverable:
                raise InvalidStateError(f"Archive {operation_id} is not restorable")
            now = self._clock()
            if is_expired(record.expires_at, now):
                raise InvalidStateError(f"Archive {operation_id} has expired")

            partition = self._partitions[record.tier]
            entry = await partition.get(record.memory_id)
            if entry is None or entry.operation_id != operation_id:
                raise NotFoundError("Archive entry", record.storage.storage_key)

            memory = self._decode(entry, record)
            memory.state = LifecycleState.ACTIVE
            memory.updated_at = now
            for key in ARCHIVE_METADATA_KEYS:
                memory.metadata.pop(key, None)
            memory.metadata["restored_at"] = now.isoformat()
            memory.metadata["restored_from"] = operation_id

            restored = await self._store.store(memory)
            await partition.delete(record.memory_id)
            record.recoverable = False

        logger.info(f"Restored {record.memory_id} from {record.storage.storage_key}")
        await self._events.emit(
            MemoryBankEvent.ARCHIVE_RESTORED, {"operation_id": operation_id, "memory": restored}
        )
        return restored

    def _decode(self, entry: ArchiveEntry, record: ArchiveRecord) -> Memory:
        try:
            serialized = entry.decode()
        except zlib.error as e:
            raise IntegrityError(f"Archive {record.operation_id} payload is unreadable", [str(e)])
        if record.storage.checksum is not None and checksum(serialized) != record.storage.checksum:
            raise IntegrityError(
                f"Archive {record.operation_id} failed checksum verification",
                ["checksum mismatch"],
            )
        try:
            return Memory.model_validate_json(serialized)
        except ValueError as e:
            raise IntegrityError(f"Archive {record.operation_id} payload is malformed", [str(e)])

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_archives(
        self,
        query: Optional[ArchiveSearchQuery] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ArchiveSearchResult:
        """Linear scan of the requested tiers, newest archive first."""
        started = time.perf_counter()
        query = query or ArchiveSearchQuery()
        tiers = list(query.tiers) if query.tiers else list(ArchiveTier)
        matches: list[ArchiveRecord] = []
        policies_matched: list[str] = []

        for tier in tiers:
            for memory_id, entry in await self._partitions[tier].scan():
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelledError("search_archives", matches)
                await asyncio.sleep(0)
                record = self._records.get(entry.operation_id)
                if record is None:
                    continue
                try:
                    memory = Memory.model_validate_json(entry.decode())
                except (zlib.error, ValueError) as e:
                    logger.warning(f"Skipping unreadable archive entry {memory_id}: {e}")
                    continue
                if not self._search_matches(memory, record, query):
                    continue
                matches.append(record.model_copy(deep=True))
                if record.policy_name and record.policy_name not in policies_matched:
                    policies_matched.append(record.policy_name)

        matches.sort(key=lambda r: r.archived_at, reverse=True)
        start = query.offset or 0
        end = None if query.limit is None else start + query.limit
        return ArchiveSearchResult(
            archives=matches[start:end],
            total_count=len(matches),
            search_time_ms=(time.perf_counter() - started) * 1000,
            tiers_searched=tiers,
            policies_matched=policies_matched,
        )

    @staticmethod
    def _search_matches(memory: Memory, record: ArchiveRecord, query: ArchiveSearchQuery) -> bool:
        if query.search_term:
            term = query.search_term.lower()
            if not (
                term in memory.content.lower()
                or any(term in tag.lower() for tag in memory.tags)
                or (memory.project_context and term in memory.project_context.lower())
            ):
                return False
        if query.tags:
            lowered = [tag.lower() for tag in memory.tags]
            if not any(q.lower() in tag for q in query.tags for tag in lowered):
                return False
        if query.project_context and memory.project_context != query.project_context:
            return False
        if query.archived_between and not query.archived_between.contains(record.archived_at):
            return False
        return True

    # ------------------------------------------------------------------
    # Expiry and retention
    # ------------------------------------------------------------------

    async def sweep_expired(self) -> int:
        """Purge archives past their expiry from partitions, records and store.

        Returns:
            Number of archives purged.
        """
        now = self._clock()
        expired = [r for r in self._records.values() if is_expired(r.expires_at, now)]
        for record in expired:
            async with self._locks.hold(record.memory_id):
                await self._purge(record)
                self._records.pop(record.operation_id, None)
            await self._events.emit(MemoryBankEvent.ARCHIVE_EXPIRED, record.model_copy(deep=True))
            await asyncio.sleep(0)
        if expired:
            logger.info(f"Swept {len(expired)} expired archive(s)")
        return len(expired)

    async def _purge(self, record: ArchiveRecord) -> None:
        """Drop the partition entry and the archived tombstone of ``record``."""
        partition = self._partitions[record.tier]
        entry = await partition.get(record.memory_id)
        if entry is not None and entry.operation_id == record.operation_id:
            await partition.delete(record.memory_id)
        tombstone = await self._store.get(record.memory_id)
        if (
            tombstone is not None
            and tombstone.state == LifecycleState.ARCHIVED
            and tombstone.metadata.get("archive_operation_id") == record.operation_id
        ):
            await self._store.delete(record.memory_id)
        record.recoverable = False

    def _remember(self, record: ArchiveRecord) -> list[ArchiveRecord]:
        """Store a record and trim the oldest beyond the limit.

        Returns:
            The trimmed records. Pass them to _release() once no lock is held.
        """
        self._records[record.operation_id] = record
        overflow = len(self._records) - self.config.max_archive_records
        if overflow <= 0:
            return []
        oldest = sorted(self._records.values(), key=lambda r: r.archived_at)[:overflow]
        for stale in oldest:
            del self._records[stale.operation_id]
        logger.debug(f"Trimmed {overflow} archive record(s)")
        return oldest

    async def _release(self, trimmed: list[ArchiveRecord]) -> None:
        # Trimmed archives are purged the same way expired ones are
        for record in trimmed:
            if not record.recoverable:
                continue
            async with self._locks.hold(record.memory_id):
                await self._purge(record)
            logger.info(f"Purged archive {record.operation_id} after trimming its record")

    def start_cleanup(self, interval_hours: Optional[float] = None) -> None:
        """Run sweep_expired() periodically as a background task."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            self._cleanup_task.cancel()
        hours = interval_hours if interval_hours is not None else self.config.cleanup_interval_hours

        async def periodic_sweep() -> None:
            while True:
                try:
                    await asyncio.sleep(hours * 3600)
                    await self.sweep_expired()
                except asyncio.CancelledError:
                    logger.info("Periodic archive sweep cancelled")
                    break
                except Exception as e:
                    logger.error(f"Periodic archive sweep failed: {e}")

        self._cleanup_task = asyncio.create_task(periodic_sweep())
        logger.info(f"Scheduled archive sweeps every {hours} hours")

    def stop_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, operation_id: str) -> ArchiveRecord:
        record = self._records.get(operation_id)
        if record is None:
            raise NotFoundError("Archive record", operation_id)
        return record.model_copy(deep=True)

    def records(self) -> list[ArchiveRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    async def tier_contains(self, tier: ArchiveTier, memory_id: str) -> bool:
        return await self._partitions[ArchiveTier(tier)].get(memory_id) is not None

    def statistics(self) -> dict[str, Any]:
        by_tier = {tier.value: 0 for tier in ArchiveTier}
        by_trigger = {trigger.value: 0 for trigger in ArchivalTrigger}
        storage_used = 0
        ratios: list[float] = []
        for record in self._records.values():
            by_tier[record.tier.value] += 1
            by_trigger[record.trigger.value] += 1
            storage_used += record.storage.compressed_size
            ratios.append(record.storage.compression_ratio)
        return {
            "total_archives": len(self._records),
            "archives_by_tier": by_tier,
            "archives_by_trigger": by_trigger,
            "total_storage_used": storage_used,
            "average_compression_ratio": sum(ratios) / len(ratios) if ratios else 0.0,
        }
