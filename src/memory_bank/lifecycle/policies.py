# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Archival policies.

A policy is a named, priority-ordered rule. Every threshold it configures
must hold for a memory to be selected; thresholds left unset are not
evaluated. A policy that configures no threshold at all selects nothing.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Optional

from memory_bank.schemas import ArchiveTier, Memory, ensure_utc


@dataclass
class ArchivalPolicy:
    """Named archival rule.

    Attributes:
        name: Unique policy name.
        description: Human-readable summary.
        target_tier: Tier selected memories are archived into.
        enabled: Disabled policies are skipped.
        priority: Higher priorities are evaluated first.
        max_age_days: Select memories at least this old.
        max_inactivity_days: Select memories not accessed for at least this long.
        min_access_count: Select memories accessed fewer times than this.
        max_importance: Select memories whose importance is at most this.
        archive_tags: Select memories carrying any of these tags.
        archive_projects: Select memories in any of these projects.

    Example:
        >>> policy = ArchivalPolicy(name="stale", max_inactivity_days=90)
        >>> policy.matches(memory, now)
        False
    """

    name: str
    description: str = ""
    target_tier: ArchiveTier = ArchiveTier.WARM
    enabled: bool = True
    priority: int = 1
    max_age_days: Optional[float] = None
    max_inactivity_days: Optional[float] = None
    min_access_count: Optional[int] = None
    max_importance: Optional[float] = None
    archive_tags: list[str] = field(default_factory=list)
    archive_projects: list[str] = field(default_factory=list)

    def has_criteria(self) -> bool:
        return (
            self.max_age_days is not None
            or self.max_inactivity_days is not None
            or self.min_access_count is not None
            or self.max_importance is not None
            or bool(self.archive_tags)
            or bool(self.archive_projects)
        )

    def matches(self, memory: Memory, now: datetime) -> bool:
        """True when every configured threshold holds for ``memory``."""
        if not self.has_criteria():
            return False

        now = ensure_utc(now)
        if self.max_age_days is not None:
            if now - memory.created_at < timedelta(days=self.max_age_days):
                return False

        if self.max_inactivity_days is not None:
            if now - memory.last_accessed_at < timedelta(days=self.max_inactivity_days):
                return False

        if self.min_access_count is not None:
            if memory.access_count >= self.min_access_count:
                return False

        if self.max_importance is not None:
            if memory.importance > self.max_importance:
                return False

        if self.archive_tags:
            wanted = {tag.lower() for tag in self.archive_tags}
            if not any(tag.lower() in wanted for tag in memory.tags):
                return False

        if self.archive_projects:
            if memory.project_context not in self.archive_projects:
                return False

        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArchivalPolicy":
        """Build a policy from a config mapping, ignoring unknown keys.

        Raises:
            ValueError: ``name`` is missing or the tier is unknown.
        """
        if not data.get("name"):
            raise ValueError("Archival policy requires a name")
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if "target_tier" in values:
            values["target_tier"] = ArchiveTier(values["target_tier"])
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["target_tier"] = self.target_tier.value
        return data


def default_policies() -> list[ArchivalPolicy]:
    """Built-in policies, a fresh list on every call."""
    return [
        ArchivalPolicy(
            name="old-low-importance",
            description="Archive old memories with low importance",
            target_tier=ArchiveTier.COLD,
            priority=1,
            max_age_days=365,
            max_importance=0.3,
        ),
        ArchivalPolicy(
            name="inactive-memories",
            description="Archive memories not accessed for 6 months",
            target_tier=ArchiveTier.WARM,
            priority=2,
            max_inactivity_days=180,
        ),
        ArchivalPolicy(
            name="temporary-files",
            description="Archive temporary and debug memories after 30 days",
            target_tier=ArchiveTier.HOT,
            priority=3,
            max_age_days=30,
            archive_tags=["temporary", "debug", "test"],
        ),
        ArchivalPolicy(
            name="completed-projects",
            description="Archive memories from completed projects",
            target_tier=ArchiveTier.WARM,
            priority=2,
            archive_projects=["completed", "archived", "deprecated"],
        ),
    ]


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """True when ``expires_at`` is set and not after ``now``."""
    if expires_at is None:
        return False
    return ensure_utc(expires_at) <= ensure_utc(now)
