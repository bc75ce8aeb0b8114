# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Root pytest configuration with shared fixtures and markers.

This file is automatically loaded by pytest and provides:
- Custom markers
- A controllable clock shared by stores and managers
- Store, memory factory and backup configuration fixtures
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from memory_bank.config import BackupConfig
from memory_bank.providers import LocalMemoryStore
from memory_bank.schemas import Memory, MemoryType


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "critical: Mark test as critical priority",
    )
    config.addinivalue_line(
        "markers",
        "integration: Mark test as integration test (several components)",
    )
    config.addinivalue_line(
        "markers",
        "slow: Mark test as slow-running (may be skipped in quick runs)",
    )


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at 2025-01-15 12:00 UTC."""
    return FakeClock(datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock) -> LocalMemoryStore:
    """Empty in-memory store on the test clock."""
    return LocalMemoryStore(clock=clock)


@pytest.fixture
def make_memory(store, clock):
    """Factory storing a memory stamped with the test clock.

    Keyword arguments override Memory fields; ``importance`` goes to metadata.
    """

    async def factory(content: str = "memory content", **fields: Any) -> Memory:
        importance = fields.pop("importance", None)
        metadata = dict(fields.pop("metadata", {}))
        if importance is not None:
            metadata["importance"] = importance
        now = clock()
        fields.setdefault("created_at", now)
        fields.setdefault("last_accessed_at", now)
        fields.setdefault("updated_at", now)
        fields.setdefault("memory_type", MemoryType.CUSTOM)
        return await store.store(Memory(content=content, metadata=metadata, **fields))

    return factory


@pytest.fixture
def backup_config(tmp_path) -> BackupConfig:
    """Backup settings writing into a per-test temporary directory."""
    return BackupConfig(backup_directory=str(tmp_path / "backups"))


# ============================================================================
# Test Collection Hooks
# ============================================================================


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers based on paths."""
    for item in items:
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
