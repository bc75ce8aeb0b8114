# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Tests for memory and query models."""

from datetime import datetime, timezone

import pytest

from memory_bank.exceptions import NotFoundError, PolicyViolationError
from memory_bank.schemas import (
    DeletionRecord,
    DeletionStatus,
    DeletionStrategy,
    LifecycleState,
    Memory,
    MemoryFilter,
    MemoryQuery,
    MemoryType,
    SortField,
    new_operation_id,
)


class TestMemory:
    """Tests for the Memory model."""

    def test_defaults(self):
        """A new memory is active with a generated id."""
        memory = Memory(content="hello")
        assert memory.id
        assert memory.state == LifecycleState.ACTIVE
        assert memory.is_active
        assert memory.access_count == 0
        assert memory.created_by == "system"

    def test_tags_are_deduplicated_in_order(self):
        """Duplicate tags are dropped, first occurrence wins."""
        memory = Memory(content="x", tags=["a", "b", "a", "c", "b"])
        assert memory.tags == ["a", "b", "c"]

    def test_importance_reads_metadata(self):
        """Importance comes from metadata and defaults to zero."""
        assert Memory(content="x").importance == 0.0
        assert Memory(content="x", metadata={"importance": 0.9}).importance == 0.9

    def test_naive_timestamps_become_utc(self):
        """Naive datetimes are interpreted as UTC."""
        memory = Memory(content="x", created_at=datetime(2025, 1, 1, 12, 0))
        assert memory.created_at.tzinfo is not None
        assert memory.created_at == datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestMemoryQuery:
    """Tests for lenient query parsing."""

    def test_malformed_fields_fall_back_to_defaults(self):
        """Invalid values are replaced rather than raising."""
        query = MemoryQuery.coerce(
            {
                "limit": -5,
                "offset": "many",
                "sort_by": "nonsense",
                "memory_type": 42,
                "similarity_threshold": 7,
                "tags": "not-a-list",
                "search_term": "valid",
            }
        )
        assert query.limit is None
        assert query.offset is None
        assert query.sort_by is None
        assert query.memory_type is None
        assert query.similarity_threshold is None
        assert query.tags == []
        assert query.search_term == "valid"

    def test_coerce_accepts_none_and_models(self):
        """None yields defaults and a model passes through unchanged."""
        assert MemoryQuery.coerce(None) == MemoryQuery()
        query = MemoryQuery(sort_by=SortField.PRIORITY)
        assert MemoryQuery.coerce(query) is query

    def test_default_states_are_active_only(self):
        """Queries see only active memories unless told otherwise."""
        assert MemoryQuery().states == {LifecycleState.ACTIVE}


class TestMemoryFilter:
    """Tests for selective restore filters."""

    def test_matches_type_and_tags(self):
        """All configured criteria must hold."""
        flt = MemoryFilter(types=[MemoryType.DOCUMENTATION], tags=["api"])
        doc = Memory(content="x", memory_type=MemoryType.DOCUMENTATION, tags=["api"])
        code = Memory(content="x", memory_type=MemoryType.CODE, tags=["api"])
        untagged = Memory(content="x", memory_type=MemoryType.DOCUMENTATION)
        assert flt.matches(doc)
        assert not flt.matches(code)
        assert not flt.matches(untagged)

    def test_empty_filter_matches_everything(self):
        """A filter without criteria selects every memory."""
        assert MemoryFilter().matches(Memory(content="x"))


class TestDeletionRecord:
    """Tests for rejected deletion records."""

    def test_raise_for_status_not_found(self):
        """A rejection for a missing memory raises NotFoundError."""
        record = DeletionRecord(
            operation_id="op",
            memory_id="missing",
            strategy=DeletionStrategy.SOFT,
            status=DeletionStatus.REJECTED,
            rejection_reason="Memory not found",
        )
        with pytest.raises(NotFoundError):
            record.raise_for_status()

    def test_raise_for_status_policy(self):
        """Other rejections raise PolicyViolationError."""
        record = DeletionRecord(
            operation_id="op",
            memory_id="m1",
            strategy=DeletionStrategy.SOFT,
            status=DeletionStatus.REJECTED,
            rejection_reason="critical",
        )
        with pytest.raises(PolicyViolationError):
            record.raise_for_status()


def test_operation_ids_are_unique_and_prefixed():
    """Operation ids carry the prefix and never repeat."""
    ids = {new_operation_id("del") for _ in range(100)}
    assert len(ids) == 100
    assert all(i.startswith("del_") for i in ids)
