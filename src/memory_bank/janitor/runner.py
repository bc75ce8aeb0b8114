# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Lifecycle janitor.

Runs the periodic maintenance steps in sequence:
- archive expiry sweep
- archival policies
- purge of soft deletions past their recovery deadline
- scheduled backups
- backup retention cleanup

A failing step is logged and recorded in the result; the remaining steps
still run.
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from memory_bank.backup.manager import BackupManager
    from memory_bank.backup.scheduler import BackupScheduler
    from memory_bank.lifecycle.archival import ArchivalManager
    from memory_bank.lifecycle.deletion import DeletionManager

logger = logging.getLogger(__name__)


class LifecycleJanitor:
    """Orchestrates lifecycle maintenance.

    Any manager may be omitted; its steps are then skipped.

    Example:
        >>> janitor = LifecycleJanitor(deletion, archival, backups, backup_scheduler)
        >>> result = await janitor.run_all()
        >>> print(result["archives_expired"], result["deletions_purged"])
    """

    def __init__(
        self,
        deletion: Optional["DeletionManager"] = None,
        archival: Optional["ArchivalManager"] = None,
        backups: Optional["BackupManager"] = None,
        backup_scheduler: Optional["BackupScheduler"] = None,
    ):
        self.deletion = deletion
        self.archival = archival
        self.backups = backups
        self.backup_scheduler = backup_scheduler
        self._task: Optional[asyncio.Task] = None

    async def _step(
        self, name: str, action: Callable[[], Awaitable[Any]], errors: dict[str, str]
    ) -> Any:
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Janitor step {name} failed: {e}")
            errors[name] = str(e)
            return None

    async def run_all(self) -> dict[str, Any]:
        """Run every maintenance step once.

        Returns:
            Counts per step, the errors of failed steps and the duration.
        """
        start_time = time.perf_counter()
        errors: dict[str, str] = {}
        result: dict[str, Any] = {
            "archives_expired": 0,
            "policy_archived": 0,
            "deletions_purged": 0,
            "backup_created": None,
            "backups_removed": 0,
        }

        if self.archival is not None:
            expired = await self._step("archive_sweep", self.archival.sweep_expired, errors)
            result["archives_expired"] = expired or 0
            archived = await self._step("archival_policies", self.archival.run_policies, errors)
            result["policy_archived"] = len(archived or [])

        if self.deletion is not None:
            purged = await self._step("deletion_purge", self.deletion.purge_expired, errors)
            result["deletions_purged"] = purged or 0

        if self.backup_scheduler is not None:
            scheduler = self.backup_scheduler
            record = await self._step(
                "scheduled_backup", lambda: scheduler.run_due(cleanup=False), errors
            )
            result["backup_created"] = record.id if record is not None else None

        if self.backups is not None and self.backups.config.enable_auto_cleanup:
            removed = await self._step("backup_cleanup", self.backups.cleanup, errors)
            result["backups_removed"] = len(removed or [])

        result["errors"] = errors
        result["duration_ms"] = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Janitor run finished in {result['duration_ms']:.1f}ms "
            f"({len(errors)} failed step(s))"
        )
        return result

    def start(self, interval_hours: float = 24.0) -> None:
        """Run run_all() periodically as a background task."""
        self.stop()

        async def periodic_run() -> None:
            while True:
                try:
                    await asyncio.sleep(interval_hours * 3600)
                    await self.run_all()
                except asyncio.CancelledError:
                    logger.info("Periodic janitor run cancelled")
                    break
                except Exception as e:
                    logger.error(f"Periodic janitor run failed: {e}")

        self._task = asyncio.create_task(periodic_run())
        logger.info(f"Scheduled janitor runs every {interval_hours} hours")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
