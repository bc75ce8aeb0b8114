# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Scheduled backups.

A full backup is taken every ``full_backup_frequency_days``; in between,
an incremental backup is taken every ``incremental_frequency_hours`` on
top of the newest full or incremental backup. The cron ``schedule`` in
BackupConfig is informational only.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from memory_bank.backup.manager import BackupManager
from memory_bank.janitor.scheduler import MaintenanceScheduler
from memory_bank.schemas import BackupKind, BackupRecord, utc_now

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Takes whichever backup is due.

    Example:
        >>> scheduler = BackupScheduler(manager)
        >>> record = await scheduler.run_due()
    """

    def __init__(self, manager: BackupManager, clock: Callable[[], datetime] = utc_now):
        self.manager = manager
        config = manager.config
        self._full = MaintenanceScheduler(config.full_backup_frequency_days * 24, clock)
        self._incremental = MaintenanceScheduler(config.incremental_frequency_hours, clock)

    def next_kind(self) -> Optional[BackupKind]:
        """Kind of backup due now, or None."""
        last_full = self.manager.latest(BackupKind.FULL)
        if last_full is None or self._full.should_run(last_full.created_at):
            return BackupKind.FULL

        last_any = self.manager.latest(BackupKind.FULL, BackupKind.INCREMENTAL)
        if last_any is None or self._incremental.should_run(last_any.created_at):
            return BackupKind.INCREMENTAL
        return None

    async def run_due(self, cleanup: bool = True) -> Optional[BackupRecord]:
        """Create the due backup, then prune old backups when auto-cleanup is on.

        Args:
            cleanup: Run retention cleanup after a backup was taken.

        Returns:
            The created backup record, or None when nothing was due.
        """
        kind = self.next_kind()
        record: Optional[BackupRecord] = None
        if kind == BackupKind.FULL:
            record = await self.manager.create_full(description="Scheduled full backup")
        elif kind == BackupKind.INCREMENTAL:
            base = self.manager.latest(BackupKind.FULL, BackupKind.INCREMENTAL)
            record = await self.manager.create_incremental(
                base.id, description="Scheduled incremental backup"
            )
        else:
            logger.debug("No scheduled backup due")

        if cleanup and record is not None and self.manager.config.enable_auto_cleanup:
            await self.manager.cleanup()
        return record
