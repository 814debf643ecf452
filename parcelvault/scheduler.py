"""
Process-wide backup timer on APScheduler.

There is one interval job with a fixed id. Starting again replaces it, so
timers never stack, and ``max_instances=1`` keeps at most one scheduled run
in flight.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from parcelvault.errors import ValidationError

if TYPE_CHECKING:
    from parcelvault.backup import BackupRotationManager
    from parcelvault.db import DbClient

logger = logging.getLogger(__name__)

JOB_ID = "parcelvault-backup-rotation"


class BackupScheduler:
    def __init__(self, manager: "BackupRotationManager", scheduler: Optional[BackgroundScheduler] = None):
        self.manager = manager
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._lock = threading.Lock()
        self.frequency_hours: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler.get_job(JOB_ID) is not None

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(JOB_ID)
        return getattr(job, "next_run_time", None) if job else None

    def start(self, frequency_hours: int) -> None:
        """Arm (or re-arm) the backup job every ``frequency_hours`` hours."""
        if isinstance(frequency_hours, bool) or not isinstance(frequency_hours, int) or frequency_hours < 1:
            raise ValidationError("frequency_hours must be a whole number of at least 1")
        with self._lock:
            self._scheduler.add_job(
                func=self._tick,
                trigger=IntervalTrigger(hours=frequency_hours),
                id=JOB_ID,
                name="Backup rotation",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            if not self._scheduler.running:
                self._scheduler.start()
            self.frequency_hours = frequency_hours
        logger.info("Backup scheduler started: every %d hours", frequency_hours)

    def stop(self) -> None:
        """Disarm the job. A run already in progress finishes."""
        with self._lock:
            if self._scheduler.get_job(JOB_ID) is not None:
                self._scheduler.remove_job(JOB_ID)
                logger.info("Backup scheduler stopped")
            self.frequency_hours = None

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=wait)
            self.frequency_hours = None

    def run_now(self) -> None:
        self._tick()

    def _tick(self) -> None:
        logger.info("Running scheduled backup")
        try:
            self.manager.run_backup_for_all_locations()
        except Exception:
            logger.exception("Scheduled backup failed")

    def initialize_from_settings(self, db: "DbClient", blob_store_configured: bool) -> bool:
        """Arm the job at startup when stored settings say backups are on."""
        settings = db.get_backup_settings()
        if not settings or not settings.enabled:
            return False
        if not settings.api_key_configured or not blob_store_configured:
            logger.warning("Backups are enabled but no validated key is configured; not scheduling")
            return False
        self.start(settings.frequency_hours)
        return True
