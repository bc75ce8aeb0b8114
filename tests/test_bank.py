# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Integration tests for the MemoryBank facade."""

import asyncio
from datetime import timedelta

import pytest

from memory_bank import MemoryBank, MemoryBankEvent, NotFoundError
from memory_bank.config import BackupConfig, EngineConfig
from memory_bank.providers import LocalMemoryStore
from memory_bank.schemas import (
    ArchiveSearchQuery,
    ArchiveTier,
    BackupStatus,
    DeletionStatus,
    DeletionStrategy,
    LifecycleState,
    MemoryType,
    RecoveryOptions,
)

pytestmark = pytest.mark.integration


@pytest.fixture
async def bank(tmp_path, clock):
    config = EngineConfig(backup=BackupConfig(backup_directory=str(tmp_path / "backups")))
    bank = MemoryBank(config, clock=clock)
    await bank.initialize()
    yield bank
    await bank.shutdown()


class TestMemoryOperations:
    """Tests for create/get/update/query through the facade."""

    @pytest.mark.asyncio
    async def test_create_get_update_emit_events(self, bank, clock):
        """CRUD calls emit created, accessed and updated events."""
        seen = []
        for event in (
            MemoryBankEvent.MEMORY_CREATED,
            MemoryBankEvent.MEMORY_ACCESSED,
            MemoryBankEvent.MEMORY_UPDATED,
        ):
            bank.subscribe(event, lambda payload, name=event: seen.append(name))

        memory = await bank.create_memory({"content": "use pathlib", "tags": ["python"]})
        assert memory.created_at == clock()

        clock.advance(minutes=5)
        fetched = await bank.get_memory(memory.id)
        assert fetched.access_count == 1
        assert fetched.last_accessed_at == clock()

        updated = await bank.update_memory(memory.id, {"content": "prefer pathlib", "id": "x"})
        assert updated.id == memory.id
        assert seen == [
            MemoryBankEvent.MEMORY_CREATED,
            MemoryBankEvent.MEMORY_ACCESSED,
            MemoryBankEvent.MEMORY_UPDATED,
        ]

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, bank):
        """Unknown ids return None without emitting."""
        assert await bank.get_memory("missing") is None

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, bank):
        """Updating an unknown id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await bank.update_memory("missing", {"content": "x"})

    @pytest.mark.asyncio
    async def test_contextual_query_and_related(self, bank):
        """Contextual queries rank; find_related follows explicit links."""
        target = await bank.create_memory(
            {"content": "retry with exponential backoff", "project_context": "api"}
        )
        await bank.create_memory({"content": "logging format", "project_context": "api"})
        linked = await bank.create_memory(
            {"content": "circuit breaker", "related_memories": [target.id]}
        )

        page = await bank.query_memories(
            {
                "search_term": "exponential backoff",
                "use_contextual_search": True,
                "context": {"current_project": "api"},
                "limit": 1,
            }
        )
        assert [m.id for m in page.items] == [target.id]
        assert page.total_count == 3

        ranked = await bank.retrieve({"search_term": "breaker", "use_contextual_search": True})
        assert ranked[0].id == linked.id
        assert [m.id for m in await bank.find_related(linked.id)] == [target.id]

    @pytest.mark.asyncio
    async def test_timeout(self, bank, monkeypatch):
        """A long-running call honours its timeout."""

        async def slow(query=None, cancel_event=None):
            await asyncio.sleep(10)

        monkeypatch.setattr(bank.retrieval, "retrieve", slow)
        with pytest.raises(asyncio.TimeoutError):
            await bank.retrieve({"search_term": "x"}, timeout=0.01)


class TestLifecycleOperations:
    """Tests for deletion, archival and backup through the facade."""

    @pytest.mark.asyncio
    async def test_delete_and_recover(self, bank):
        """Soft delete hides a memory from queries until recovered."""
        memory = await bank.create_memory({"content": "draft"})
        validation = await bank.validate_deletion(memory.id)
        assert validation.allowed

        record = await bank.delete_memory(memory.id, reason="cleanup")
        assert record.status == DeletionStatus.COMPLETED
        assert (await bank.query_memories()).total_count == 0

        await bank.recover_memory(record.operation_id)
        assert (await bank.query_memories()).total_count == 1
        assert bank.deletion_history(memory.id)[0].operation_id == record.operation_id

    @pytest.mark.asyncio
    async def test_critical_delete_rejected(self, bank):
        """Critical memories are protected without force."""
        memory = await bank.create_memory({"content": "prod creds", "metadata": {"importance": 0.95}})
        record = await bank.delete_memory(memory.id, DeletionStrategy.SOFT)
        assert record.status == DeletionStatus.REJECTED

    @pytest.mark.asyncio
    async def test_archive_search_restore(self, bank):
        """Archived memories are searchable and restorable."""
        memory = await bank.create_memory({"content": "debug dump", "tags": ["temporary"]})
        record = await bank.archive_memory(memory.id, ArchiveTier.HOT)

        found = await bank.search_archives(ArchiveSearchQuery(tags=["temporary"]))
        assert [r.operation_id for r in found.archives] == [record.operation_id]
        assert (await bank.store.get(memory.id)).state == LifecycleState.ARCHIVED

        restored = await bank.restore_archive(record.operation_id)
        assert restored.state == LifecycleState.ACTIVE

    @pytest.mark.asyncio
    async def test_archival_policies(self, bank, clock):
        """Default policies archive old temporary memories."""
        await bank.create_memory(
            {
                "content": "scratch",
                "tags": ["debug"],
                "created_at": clock() - timedelta(days=40),
            }
        )
        records = await bank.run_archival_policies()
        assert [r.tier for r in records] == [ArchiveTier.HOT]

    @pytest.mark.asyncio
    async def test_backup_and_restore(self, bank, clock):
        """Full plus incremental backups restore a wiped store."""
        doc = await bank.create_memory(
            {"content": "setup guide", "memory_type": MemoryType.DOCUMENTATION}
        )
        clock.advance(minutes=1)
        full = await bank.create_full_backup(description="baseline")
        clock.advance(minutes=1)
        note = await bank.create_memory({"content": "new note"})
        clock.advance(minutes=1)
        incremental = await bank.create_incremental_backup()
        assert incremental.base_backup_id == full.id
        assert (await bank.validate_backup(incremental.id)).is_valid

        await bank.store.delete(doc.id)
        await bank.store.delete(note.id)
        recovery = await bank.restore_backup(incremental.id, RecoveryOptions())
        assert set(recovery.results.recovered_memories) == {doc.id, note.id}
        assert await bank.cleanup_backups() == []

    @pytest.mark.asyncio
    async def test_backup_timeout_marks_record_failed(self, tmp_path, clock):
        """A backup that exceeds its timeout is left FAILED, never in progress."""

        class SlowStore(LocalMemoryStore):
            async def query(self, query=None, cancel_event=None):
                await asyncio.sleep(1)
                return await super().query(query, cancel_event)

        config = EngineConfig(backup=BackupConfig(backup_directory=str(tmp_path / "slow")))
        async with MemoryBank(config, store=SlowStore(clock=clock), clock=clock) as bank:
            with pytest.raises(asyncio.TimeoutError):
                await bank.create_full_backup(timeout=0.05)
            assert [r.status for r in bank.backups.records()] == [BackupStatus.FAILED]

    @pytest.mark.asyncio
    async def test_incremental_without_base(self, bank):
        """An incremental backup needs an earlier backup."""
        with pytest.raises(NotFoundError):
            await bank.create_incremental_backup()

    @pytest.mark.asyncio
    async def test_maintenance_run(self, bank):
        """run_maintenance takes the first scheduled backup."""
        await bank.create_memory({"content": "x"})
        result = await bank.run_maintenance()
        assert result["errors"] == {}
        assert result["backup_created"] is not None


class TestLifecycle:
    """Tests for initialize/shutdown."""

    @pytest.mark.asyncio
    async def test_context_manager(self, tmp_path, clock):
        """The async context manager initializes and shuts down."""
        config = EngineConfig(backup=BackupConfig(backup_directory=str(tmp_path / "cm")))
        async with MemoryBank(config, clock=clock) as bank:
            bank.subscribe(MemoryBankEvent.MEMORY_CREATED, print)
            assert (tmp_path / "cm").is_dir()
        assert bank.events.listener_count(MemoryBankEvent.MEMORY_CREATED) == 0

    @pytest.mark.asyncio
    async def test_background_maintenance_starts_and_stops(self, tmp_path, clock):
        """initialize(start_maintenance=True) starts the janitor task."""
        config = EngineConfig(backup=BackupConfig(backup_directory=str(tmp_path / "bg")))
        bank = MemoryBank(config, clock=clock)
        await bank.initialize(start_maintenance=True)
        assert bank.janitor.running
        await bank.shutdown()
        assert not bank.janitor.running
