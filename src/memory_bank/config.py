# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Engine configuration.

This module provides:
- DeletionConfig, ArchivalConfig, BackupConfig, RetrievalConfig dataclasses
- EngineConfig grouping them
- load_config() to parse a YAML file into an EngineConfig

Missing or unreadable files fall back to defaults. Unknown keys are
ignored, values of the wrong type are replaced by the default, and numeric
values are clamped to their valid range.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from memory_bank.lifecycle.policies import ArchivalPolicy, default_policies
from memory_bank.schemas import ArchiveTier

logger = logging.getLogger(__name__)

VERIFICATION_FREQUENCIES = ("always", "daily", "weekly", "monthly")

DEFAULT_BACKUP_DIRECTORY = "./backups/memory-bank"
DEFAULT_NAMING_PATTERN = "memory-bank-{type}-{timestamp}"


@dataclass
class DeletionConfig:
    """Deletion manager settings.

    Attributes:
        default_recovery_period_days: Recovery window for soft deletes.
        require_confirmation_for_critical: Block critical deletions without force.
        critical_importance_threshold: Importance at or above which a memory is critical.
        auto_cleanup_orphans: Strip dangling related ids after each deletion.
        max_deletion_records: Retained deletion records, oldest trimmed first.
        backup_before_hard_delete: Snapshot memories before hard deletes.
    """

    default_recovery_period_days: int = 30
    require_confirmation_for_critical: bool = True
    critical_importance_threshold: float = 0.8
    auto_cleanup_orphans: bool = True
    max_deletion_records: int = 1000
    backup_before_hard_delete: bool = True


@dataclass
class ArchivalConfig:
    """Archival manager settings.

    Attributes:
        policies: Archival policies, evaluated by descending priority.
        max_archive_records: Retained archive records, oldest trimmed first.
        default_tier: Tier used when archive() is called without one.
        enable_compression: zlib-compress archived copies.
        enable_checksums: Record and verify SHA-256 checksums.
        cleanup_interval_hours: Period of the background expiry sweep.
        storage_pressure_threshold: Fraction of capacity that triggers relief.
    """

    policies: list[ArchivalPolicy] = field(default_factory=default_policies)
    max_archive_records: int = 10000
    default_tier: ArchiveTier = ArchiveTier.WARM
    enable_compression: bool = True
    enable_checksums: bool = True
    cleanup_interval_hours: float = 24.0
    storage_pressure_threshold: float = 0.8


@dataclass
class BackupConfig:
    """Backup manager settings.

    Attributes:
        backup_directory: Where backup files are written.
        schedule: Cron expression recorded for external schedulers.
        max_backups: Newest completed backups always kept by cleanup.
        retention_days: Older backups beyond ``max_backups`` are deleted.
        enable_compression: gzip backup files.
        enable_encryption: Key the file checksum with ``encryption_key``.
        encryption_key: Secret for keyed checksums.
        verification_frequency: always, daily, weekly or monthly.
        incremental_frequency_hours: Interval between scheduled incrementals.
        full_backup_frequency_days: Interval between scheduled full backups.
        enable_auto_cleanup: Run cleanup after scheduled backups.
        naming_pattern: File stem with ``{type}`` and ``{timestamp}`` placeholders.
    """

    backup_directory: str = DEFAULT_BACKUP_DIRECTORY
    schedule: str = "0 2 * * *"
    max_backups: int = 30
    retention_days: int = 90
    enable_compression: bool = True
    enable_encryption: bool = False
    encryption_key: Optional[str] = None
    verification_frequency: str = "daily"
    incremental_frequency_hours: float = 6.0
    full_backup_frequency_days: float = 7.0
    enable_auto_cleanup: bool = True
    naming_pattern: str = DEFAULT_NAMING_PATTERN


@dataclass
class RetrievalConfig:
    """Context retrieval weights and bounds.

    Attributes:
        semantic_weight: Weight of lexical overlap.
        recency_weight: Weight of last-access decay.
        frequency_weight: Weight of access count.
        tag_weight: Weight of tag overlap.
        project_weight: Weight of project equality.
        path_weight: Weight of shared file path prefix.
        recency_decay_days: Decay constant of the recency factor.
        frequency_saturation: Access count at which frequency saturates.
        related_fan_out: Related results kept per expansion level.
        related_tag_limit: Tag neighbours fetched per expansion level.
    """

    semantic_weight: float = 0.40
    recency_weight: float = 0.20
    frequency_weight: float = 0.15
    tag_weight: float = 0.15
    project_weight: float = 0.05
    path_weight: float = 0.05
    recency_decay_days: float = 30.0
    frequency_saturation: int = 100
    related_fan_out: int = 3
    related_tag_limit: int = 5


@dataclass
class EngineConfig:
    """All engine settings."""

    deletion: DeletionConfig = field(default_factory=DeletionConfig)
    archival: ArchivalConfig = field(default_factory=ArchivalConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)


# (minimum, maximum) per numeric field; None means unbounded
_BOUNDS: dict[str, tuple[Optional[float], Optional[float]]] = {
    "default_recovery_period_days": (0, None),
    "critical_importance_threshold": (0.0, 1.0),
    "max_deletion_records": (1, None),
    "max_archive_records": (1, None),
    "cleanup_interval_hours": (0.01, None),
    "storage_pressure_threshold": (0.0, 1.0),
    "max_backups": (1, None),
    "retention_days": (0, None),
    "incremental_frequency_hours": (0.01, None),
    "full_backup_frequency_days": (0.01, None),
    "semantic_weight": (0.0, 1.0),
    "recency_weight": (0.0, 1.0),
    "frequency_weight": (0.0, 1.0),
    "tag_weight": (0.0, 1.0),
    "project_weight": (0.0, 1.0),
    "path_weight": (0.0, 1.0),
    "recency_decay_days": (0.01, None),
    "frequency_saturation": (2, None),
    "related_fan_out": (0, None),
    "related_tag_limit": (0, None),
}


def _clamp(name: str, value: Union[int, float]) -> Union[int, float]:
    low, high = _BOUNDS.get(name, (None, None))
    if low is not None and value < low:
        logger.warning(f"Config value {name}={value} below {low}, clamping")
        value = type(value)(low)
    if high is not None and value > high:
        logger.warning(f"Config value {name}={value} above {high}, clamping")
        value = type(value)(high)
    return value


def _coerce_section(cls: type, data: Any, skip: tuple[str, ...] = ()) -> Any:
    """Build a section dataclass from a mapping, keeping defaults for bad values."""
    section = cls()
    if not isinstance(data, dict):
        return section

    for f in fields(cls):
        if f.name in skip or f.name not in data:
            continue
        default = getattr(section, f.name)
        value = data[f.name]

        if isinstance(default, bool):
            if not isinstance(value, bool):
                logger.warning(f"Ignoring non-boolean {cls.__name__}.{f.name}: {value!r}")
                continue
        elif isinstance(default, ArchiveTier):
            try:
                value = ArchiveTier(value)
            except ValueError:
                logger.warning(f"Ignoring unknown tier {cls.__name__}.{f.name}: {value!r}")
                continue
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                logger.warning(f"Ignoring non-numeric {cls.__name__}.{f.name}: {value!r}")
                continue
            if isinstance(default, int) and not isinstance(default, bool):
                value = int(value)
            value = _clamp(f.name, value)
        elif isinstance(default, str) or default is None:
            if value is not None and not isinstance(value, str):
                logger.warning(f"Ignoring non-string {cls.__name__}.{f.name}: {value!r}")
                continue

        setattr(section, f.name, value)
    return section


def _load_policies(data: Any) -> list[ArchivalPolicy]:
    if not isinstance(data, list):
        return default_policies()
    policies = []
    for entry in data:
        if not isinstance(entry, dict):
            logger.warning(f"Ignoring malformed archival policy: {entry!r}")
            continue
        try:
            policies.append(ArchivalPolicy.from_dict(entry))
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring invalid archival policy {entry.get('name')!r}: {e}")
    return policies


def config_from_dict(data: Any) -> EngineConfig:
    """Build an EngineConfig from a parsed mapping."""
    if not isinstance(data, dict):
        return EngineConfig()

    archival = _coerce_section(ArchivalConfig, data.get("archival"), skip=("policies",))
    archival_data = data.get("archival")
    if isinstance(archival_data, dict) and "policies" in archival_data:
        archival.policies = _load_policies(archival_data["policies"])

    backup = _coerce_section(BackupConfig, data.get("backup"))
    if backup.verification_frequency not in VERIFICATION_FREQUENCIES:
        logger.warning(
            f"Unknown verification frequency {backup.verification_frequency!r}, using daily"
        )
        backup.verification_frequency = "daily"

    return EngineConfig(
        deletion=_coerce_section(DeletionConfig, data.get("deletion")),
        archival=archival,
        backup=backup,
        retrieval=_coerce_section(RetrievalConfig, data.get("retrieval")),
    )


def load_config(path: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Load engine configuration from a YAML file.

    Args:
        path: Path to the YAML file. None returns the defaults.

    Returns:
        EngineConfig with settings from the file, or defaults.
    """
    if path is None:
        return EngineConfig()

    config_path = Path(path)
    if not config_path.exists():
        logger.info(f"No config file at {config_path}, using defaults")
        return EngineConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, IOError) as e:
        logger.warning(f"Failed to read config {config_path}: {e}; using defaults")
        return EngineConfig()

    return config_from_dict(data)


def config_to_dict(config: EngineConfig) -> dict[str, Any]:
    """Plain mapping of a config, suitable for ``yaml.safe_dump``."""
    sections: dict[str, Any] = {}
    for name in ("deletion", "archival", "backup", "retrieval"):
        section = getattr(config, name)
        values: dict[str, Any] = {}
        for f in fields(section):
            value = getattr(section, f.name)
            if f.name == "policies":
                value = [policy.to_dict() for policy in value]
            elif f.name == "encryption_key" and value:
                value = "***"
            elif isinstance(value, ArchiveTier):
                value = value.value
            values[f.name] = value
        sections[name] = values
    return sections
