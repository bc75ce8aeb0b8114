# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Janitor process for lifecycle maintenance.

Provides scheduled maintenance:
- Archive expiry sweeps and archival policy runs
- Purge of soft deletions past their recovery window
- Scheduled backups and backup retention
"""

from memory_bank.janitor.runner import LifecycleJanitor
from memory_bank.janitor.scheduler import MaintenanceScheduler

__all__ = [
    "LifecycleJanitor",
    "MaintenanceScheduler",
]
