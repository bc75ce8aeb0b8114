# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Interval scheduling for maintenance runs."""

from datetime import datetime, timedelta
from typing import Callable, Optional

from memory_bank.schemas import ensure_utc, utc_now


class MaintenanceScheduler:
    """Decides when an interval-based maintenance task is due.

    Attributes:
        interval: Time between runs.

    Example:
        >>> scheduler = MaintenanceScheduler(interval_hours=24)
        >>> if scheduler.should_run(last_run):
        ...     await janitor.run_all()
    """

    def __init__(
        self,
        interval_hours: float = 24.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.interval = timedelta(hours=interval_hours)
        self._clock = clock

    def should_run(self, last_run: Optional[datetime] = None) -> bool:
        """True when no run has happened yet or the interval has elapsed."""
        if last_run is None:
            return True
        return self._clock() - ensure_utc(last_run) >= self.interval

    def get_next_run(self, last_run: Optional[datetime] = None) -> datetime:
        """Next scheduled run time; now if the run is already due."""
        now = self._clock()
        if last_run is None:
            return now

        next_run = ensure_utc(last_run) + self.interval
        if next_run < now:
            return now
        return next_run
