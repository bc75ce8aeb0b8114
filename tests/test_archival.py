# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for ArchivalManager: tiers, policies, restore, search and expiry."""

import asyncio
from datetime import timedelta

import pytest

from memory_bank.config import ArchivalConfig
from memory_bank.events import EventChannel, MemoryBankEvent
from memory_bank.exceptions import (
    IntegrityError,
    InvalidStateError,
    NotFoundError,
    OperationCancelledError,
)
from memory_bank.lifecycle import ArchivalPolicy
from memory_bank.lifecycle.archival import ArchivalManager, ArchiveEntry
from memory_bank.providers import InMemoryRepository
from memory_bank.schemas import (
    ArchivalTrigger,
    ArchiveSearchQuery,
    ArchiveTier,
    LifecycleState,
)


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def partitions():
    return {tier: InMemoryRepository() for tier in ArchiveTier}


@pytest.fixture
def manager(store, events, partitions, clock) -> ArchivalManager:
    return ArchivalManager(store, ArchivalConfig(), events, partitions, clock)


class TestArchive:
    """Tests for archiving and restoring."""

    @pytest.mark.asyncio
    async def test_archive_records_storage_metadata(self, manager, store, make_memory):
        """Archiving flags the memory and records checksum and sizes."""
        memory = await make_memory("config notes", tags=["ops"], importance=0.4)
        record = await manager.archive(memory.id, ArchiveTier.COLD, reason="stale")

        assert record.tier == ArchiveTier.COLD
        assert record.trigger == ArchivalTrigger.MANUAL
        assert record.storage.storage_key == f"cold/{record.operation_id}"
        assert len(record.storage.checksum) == 64
        assert record.storage.compressed_size > 0
        assert record.original_metadata.importance == 0.4

        archived = await store.get(memory.id)
        assert archived.state == LifecycleState.ARCHIVED
        assert archived.metadata["archive_tier"] == "cold"
        assert await manager.tier_contains(ArchiveTier.COLD, memory.id)

    @pytest.mark.asyncio
    async def test_default_tier(self, manager, make_memory):
        """archive() without a tier uses the configured default."""
        memory = await make_memory("x")
        record = await manager.archive(memory.id)
        assert record.tier == ArchiveTier.WARM

    @pytest.mark.asyncio
    async def test_archive_errors(self, manager, make_memory):
        """Missing memories raise NotFound; archived ones raise InvalidState."""
        with pytest.raises(NotFoundError):
            await manager.archive("missing")
        memory = await make_memory("x")
        await manager.archive(memory.id)
        with pytest.raises(InvalidStateError):
            await manager.archive(memory.id)

    @pytest.mark.asyncio
    async def test_restore_once(self, manager, store, make_memory, clock):
        """Restore reactivates the memory, empties the tier and is one-shot."""
        memory = await make_memory("runbook", tags=["ops"])
        record = await manager.archive(memory.id, ArchiveTier.HOT)
        clock.advance(hours=1)

        restored = await manager.restore(record.operation_id)
        assert restored.state == LifecycleState.ACTIVE
        assert restored.content == "runbook"
        assert restored.metadata["restored_from"] == record.operation_id
        assert "archive_tier" not in restored.metadata
        assert (await store.get(memory.id)).is_active
        assert not await manager.tier_contains(ArchiveTier.HOT, memory.id)

        with pytest.raises(InvalidStateError):
            await manager.restore(record.operation_id)

    @pytest.mark.asyncio
    async def test_restore_unknown(self, manager):
        """Unknown operation ids raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await manager.restore("arch_missing")

    @pytest.mark.asyncio
    async def test_restore_expired(self, manager, make_memory, clock):
        """An archive past its expiry cannot be restored."""
        memory = await make_memory("x")
        record = await manager.archive(memory.id, expires_at=clock() + timedelta(days=1))
        clock.advance(days=1)
        with pytest.raises(InvalidStateError):
            await manager.restore(record.operation_id)

    @pytest.mark.asyncio
    async def test_tampered_payload_fails_checksum(self, manager, partitions, make_memory):
        """A modified archive copy raises IntegrityError on restore."""
        memory = await make_memory("original content")
        record = await manager.archive(memory.id, ArchiveTier.WARM)

        forged = memory.model_copy(update={"content": "forged content"})
        await partitions[ArchiveTier.WARM].put(
            memory.id,
            ArchiveEntry(
                operation_id=record.operation_id,
                payload=forged.model_dump_json().encode("utf-8"),
                compressed=False,
            ),
        )
        with pytest.raises(IntegrityError):
            await manager.restore(record.operation_id)

    @pytest.mark.asyncio
    async def test_archived_event(self, manager, events, make_memory):
        """Archiving emits memory-archived with the record."""
        received = []
        events.subscribe(MemoryBankEvent.MEMORY_ARCHIVED, received.append)
        memory = await make_memory("x")
        record = await manager.archive(memory.id)
        assert [r.operation_id for r in received] == [record.operation_id]


class TestPolicies:
    """Tests for policy evaluation."""

    @pytest.mark.asyncio
    async def test_all_criteria_must_hold(self, store, make_memory, clock):
        """A memory satisfying only some thresholds is not selected."""
        policy = ArchivalPolicy(
            name="old-unimportant",
            target_tier=ArchiveTier.COLD,
            max_age_days=100,
            max_importance=0.3,
        )
        manager = ArchivalManager(store, ArchivalConfig(policies=[policy]), clock=clock)
        old = clock() - timedelta(days=200)
        selected = await make_memory("old and minor", created_at=old, importance=0.1)
        await make_memory("old but important", created_at=old, importance=0.9)
        await make_memory("new and minor", importance=0.1)

        records = await manager.run_policies()
        assert [r.memory_id for r in records] == [selected.id]
        assert records[0].trigger == ArchivalTrigger.POLICY_BASED
        assert records[0].policy_name == "old-unimportant"

    @pytest.mark.asyncio
    async def test_no_op_when_nothing_matches(self, manager, store, make_memory):
        """Fresh memories are left alone by the default policies."""
        await make_memory("fresh", tags=["notes"])
        assert await manager.run_policies() == []
        assert await store.get_archived() == []

    @pytest.mark.asyncio
    async def test_policy_without_criteria_matches_nothing(self, store, make_memory, clock):
        """An empty policy never selects anything."""
        manager = ArchivalManager(
            store, ArchivalConfig(policies=[ArchivalPolicy(name="empty")]), clock=clock
        )
        await make_memory("anything")
        assert await manager.run_policies() == []

    @pytest.mark.asyncio
    async def test_highest_priority_wins(self, store, make_memory, clock):
        """A memory matched by two policies goes to the higher-priority tier."""
        low = ArchivalPolicy(name="low", target_tier=ArchiveTier.FROZEN, priority=1,
                             archive_tags=["scratch"])
        high = ArchivalPolicy(name="high", target_tier=ArchiveTier.HOT, priority=5,
                              archive_tags=["scratch"])
        manager = ArchivalManager(store, ArchivalConfig(policies=[low, high]), clock=clock)
        await make_memory("x", tags=["scratch"])
        records = await manager.run_policies()
        assert [(r.policy_name, r.tier) for r in records] == [("high", ArchiveTier.HOT)]

    @pytest.mark.asyncio
    async def test_policy_crud(self, manager):
        """Policies can be added, replaced and removed by name."""
        names = {p.name for p in manager.policies()}
        assert "temporary-files" in names
        manager.set_policy(ArchivalPolicy(name="custom", archive_tags=["x"]))
        assert "custom" in {p.name for p in manager.policies()}
        assert manager.remove_policy("custom") is True
        assert manager.remove_policy("custom") is False

    @pytest.mark.asyncio
    async def test_cancel(self, manager, make_memory):
        """A set cancel event aborts the policy run."""
        await make_memory("x")
        cancel = asyncio.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            await manager.run_policies(cancel_event=cancel)

    @pytest.mark.asyncio
    async def test_storage_pressure(self, manager, store, make_memory, clock):
        """Least recently accessed memories are archived until under the line."""
        for days in (50, 40, 30, 20, 10):
            await make_memory(f"{days}", last_accessed_at=clock() - timedelta(days=days))
        records = await manager.relieve_storage_pressure(capacity=5)
        # Line is 0.8 * 5 = 4 active memories; archive until below it
        assert len(records) == 2
        assert all(r.trigger == ArchivalTrigger.STORAGE_PRESSURE for r in records)
        archived = {m.content for m in await store.get_archived()}
        assert archived == {"50", "40"}


class TestSearchAndExpiry:
    """Tests for archive search and the expiry sweep."""

    @pytest.mark.asyncio
    async def test_temporary_tag_found_only_in_hot(self, manager, make_memory, clock):
        """A policy-archived temporary memory is found in HOT and no other tier."""
        await make_memory(
            "debug output", tags=["temporary"], created_at=clock() - timedelta(days=45)
        )
        records = await manager.run_policies()
        assert [r.tier for r in records] == [ArchiveTier.HOT]

        found = await manager.search_archives(ArchiveSearchQuery(tags=["temporary"]))
        assert [r.operation_id for r in found.archives] == [records[0].operation_id]
        assert found.policies_matched == ["temporary-files"]

        for tier in (ArchiveTier.WARM, ArchiveTier.COLD, ArchiveTier.FROZEN):
            other = await manager.search_archives(
                ArchiveSearchQuery(tags=["temporary"], tiers=[tier])
            )
            assert other.archives == []

    @pytest.mark.asyncio
    async def test_search_filters_and_order(self, manager, make_memory, clock):
        """Free text, project and pagination apply; newest first."""
        first = await make_memory("kafka retention", project_context="ingest")
        second = await make_memory("kafka partitions", project_context="ingest")
        await make_memory("unrelated", project_context="web")
        await manager.archive(first.id)
        clock.advance(minutes=5)
        await manager.archive(second.id)

        result = await manager.search_archives(
            ArchiveSearchQuery(search_term="KAFKA", project_context="ingest")
        )
        assert [r.memory_id for r in result.archives] == [second.id, first.id]
        assert result.total_count == 2

        page = await manager.search_archives(ArchiveSearchQuery(search_term="kafka", limit=1))
        assert [r.memory_id for r in page.archives] == [second.id]
        assert page.total_count == 2

    @pytest.mark.asyncio
    async def test_sweep_expired(self, manager, store, events, make_memory, clock):
        """Expired archives are removed from partition, records and store."""
        expiring = await make_memory("expiring")
        keeper = await make_memory("keeper")
        expired_record = await manager.archive(
            expiring.id, ArchiveTier.COLD, expires_at=clock() + timedelta(days=1)
        )
        await manager.archive(keeper.id, ArchiveTier.COLD)
        swept = []
        events.subscribe(MemoryBankEvent.ARCHIVE_EXPIRED, swept.append)

        assert await manager.sweep_expired() == 0
        clock.advance(days=2)
        assert await manager.sweep_expired() == 1

        assert not await manager.tier_contains(ArchiveTier.COLD, expiring.id)
        assert await manager.tier_contains(ArchiveTier.COLD, keeper.id)
        assert await store.get(expiring.id) is None
        with pytest.raises(NotFoundError):
            manager.get_record(expired_record.operation_id)
        assert [r.operation_id for r in swept] == [expired_record.operation_id]

    @pytest.mark.asyncio
    async def test_trimmed_record_purges_partition_and_tombstone(
        self, store, partitions, make_memory, clock
    ):
        """Trimming an archive record does not leak its entry or its tombstone."""
        manager = ArchivalManager(
            store, ArchivalConfig(max_archive_records=1), partitions=partitions, clock=clock
        )
        first = await make_memory("first")
        second = await make_memory("second")
        await manager.archive(first.id, ArchiveTier.HOT)
        clock.advance(minutes=1)
        kept = await manager.archive(second.id, ArchiveTier.HOT)

        assert [r.operation_id for r in manager.records()] == [kept.operation_id]
        assert not await manager.tier_contains(ArchiveTier.HOT, first.id)
        assert await store.get(first.id) is None
        assert await manager.tier_contains(ArchiveTier.HOT, second.id)
        assert (await manager.restore(kept.operation_id)).state == LifecycleState.ACTIVE

    @pytest.mark.asyncio
    async def test_statistics(self, manager, make_memory):
        """Statistics count archives per tier."""
        memory = await make_memory("x")
        await manager.archive(memory.id, ArchiveTier.FROZEN)
        stats = manager.statistics()
        assert stats["archives_by_tier"]["frozen"] == 1
