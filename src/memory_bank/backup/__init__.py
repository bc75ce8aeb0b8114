# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Backup and recovery.

This package provides:
- Envelope encoding, checksums and structural validation
- BackupManager: full/incremental/differential backups, verify, restore, cleanup
- BackupScheduler: interval-driven full and incremental backups
"""

from memory_bank.backup.envelope import (
    BACKUP_FILE_EXTENSION,
    BACKUP_FORMAT_VERSION,
    build_envelope,
    compute_checksum,
    decode_envelope,
    encode_envelope,
    summarize,
    validate_structure,
)
from memory_bank.backup.manager import BackupManager
from memory_bank.backup.scheduler import BackupScheduler

__all__ = [
    "BACKUP_FILE_EXTENSION",
    "BACKUP_FORMAT_VERSION",
    "BackupManager",
    "BackupScheduler",
    "build_envelope",
    "compute_checksum",
    "decode_envelope",
    "encode_envelope",
    "summarize",
    "validate_structure",
]
