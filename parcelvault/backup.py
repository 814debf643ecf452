"""
Backup rotation: per-location snapshots in the blob store, capped at a
fixed number per location with the oldest evicted first.

Eviction and creation are not transactional. When the remote delete of an
evicted snapshot fails, the local row is still removed and the run carries
on; an orphaned remote snapshot is accepted over a stuck rotation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from parcelvault.blobstore import BlobStore
from parcelvault.db import DbClient
from parcelvault.errors import (
    BackupNotConfiguredError,
    InvalidApiKeyError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)
from parcelvault.locks import BackupLock, InMemoryBackupLock
from parcelvault.pricing import cost_for_location
from parcelvault.records import BackupSettings, Location, Ticket, TicketMessage, utcnow
from parcelvault.serialization import to_camel_payload
from parcelvault.types import OutcomeStatus

if TYPE_CHECKING:
    from parcelvault.scheduler import BackupScheduler

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 5
SNAPSHOT_DATE_FORMAT = "%Y-%m-%d"
DELETE_REASON = "Location deleted by admin"
SKIPPED_IN_PROGRESS = "backup already in progress"


@dataclass
class LocationBackupOutcome:
    location_id: str
    name: str
    status: OutcomeStatus
    bin_id: Optional[str] = None
    error: Optional[str] = None
    evicted_bin_ids: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.CREATED

    def as_dict(self) -> dict:
        return {
            "location_id": self.location_id,
            "name": self.name,
            "success": self.success,
            "status": self.status,
            "bin_id": self.bin_id,
            "error": self.error,
            "evicted_bin_ids": list(self.evicted_bin_ids),
        }


@dataclass
class BackupRunResult:
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: list[LocationBackupOutcome] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "success_count": self.success_count,
            "results": [o.as_dict() for o in self.outcomes],
        }


class BackupRotationManager:
    def __init__(
        self,
        db: DbClient,
        blob_store: BlobStore,
        lock: Optional[BackupLock] = None,
        retention: int = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utcnow,
    ):
        if retention < 1:
            raise ValueError("retention must be at least 1")
        self.db = db
        self.blob_store = blob_store
        self.lock = lock or InMemoryBackupLock()
        self.retention = retention
        self.clock = clock

    def _require_configured(self) -> None:
        if not self.blob_store.configured:
            raise BackupNotConfiguredError("No backup API key configured")

    def _snapshot_name(self, prefix: str) -> str:
        return f"{prefix}_{self.clock().strftime(SNAPSHOT_DATE_FORMAT)}"

    def build_location_export(
        self, location_id: str, location: Optional[Location] = None
    ) -> dict:
        """
        Point-in-time export of one location as a camelCase JSON dict.

        Live packages carry ``calculatedCost`` (a number) and their resolved
        ``storageLocation``. Archived packages are not exported.
        """
        location = location or self.db.get_location(location_id)
        if location is None:
            raise NotFoundError("Location not found")

        storage_locations = self.db.list_storage_locations(location.id)
        tiers = self.db.list_pricing_tiers(location.id)
        packages = self.db.list_packages(location.id)
        users = self.db.list_app_users(location.id)
        slots = {s.id: s for s in storage_locations}

        package_entries = []
        for package in packages:
            entry = package.as_dict()
            slot = slots.get(package.storage_location_id)
            entry["storage_location"] = slot.as_dict() if slot else None
            entry["calculated_cost"] = float(cost_for_location(location, tiers, package.weight))
            package_entries.append(entry)

        location_entry = location.as_dict()
        location_entry.update(
            storage_locations=[s.as_dict() for s in storage_locations],
            pricing_tiers=[t.as_dict() for t in tiers],
            package_count=len(packages),
            user_count=len(users),
        )
        return to_camel_payload(
            {
                "location": location_entry,
                "storage_locations": [s.as_dict() for s in storage_locations],
                "pricing_tiers": [t.as_dict() for t in tiers],
                "packages": package_entries,
                "users": [u.as_dict() for u in users],
                "backup_date": self.clock(),
            }
        )

    def _evict(self, location: Location) -> list[str]:
        backups = self.db.list_location_backups(location.id)
        evicted = []
        while len(backups) >= self.retention:
            oldest = backups.pop(0)
            try:
                self.blob_store.delete(oldest.bin_id)
            except Exception as exc:
                logger.warning(
                    "Could not delete snapshot %s for %s, dropping the record anyway: %s",
                    oldest.bin_id, location.name, exc,
                )
            self.db.delete_location_backup(oldest.id)
            evicted.append(oldest.bin_id)
            logger.info("Evicted snapshot %s for %s", oldest.bin_id, location.name)
        return evicted

    def _rotate(self, location: Location) -> LocationBackupOutcome:
        outcome = LocationBackupOutcome(location.id, location.name, OutcomeStatus.FAILED)
        try:
            acquired = self.lock.acquire(location.id)
        except Exception as exc:
            logger.exception("Could not take the backup lock for %s", location.name)
            outcome.error = f"backup lock unavailable for location {location.name}: {exc}"
            return outcome
        if not acquired:
            logger.info("Skipping %s: %s", location.name, SKIPPED_IN_PROGRESS)
            outcome.status = OutcomeStatus.SKIPPED
            outcome.error = SKIPPED_IN_PROGRESS
            return outcome

        try:
            payload = self.build_location_export(location.id, location)
            outcome.evicted_bin_ids = self._evict(location)
            bin_id = self.blob_store.create(self._snapshot_name(location.name), payload)
            self.db.add_location_backup(location.id, bin_id, created_at=self.clock())
            outcome.status = OutcomeStatus.CREATED
            outcome.bin_id = bin_id
            logger.info("Created backup %s for %s", bin_id, location.name)
        except InvalidApiKeyError as exc:
            logger.error("Backup for %s rejected: %s", location.name, exc.message)
            outcome.error = exc.message
        except Exception as exc:
            logger.exception("Backup failed for %s", location.name)
            reason = exc.message if isinstance(exc, ExternalServiceError) else str(exc)
            outcome.error = f"backup incomplete for location {location.name}: {reason}"
        finally:
            try:
                self.lock.release(location.id)
            except Exception:
                logger.exception("Could not release the backup lock for %s", location.name)
        return outcome

    def run_backup_for_location(self, location_id: str) -> LocationBackupOutcome:
        self._require_configured()
        location = self.db.get_location(location_id)
        if location is None:
            raise NotFoundError("Location not found")
        return self._rotate(location)

    def run_backup_for_all_locations(self) -> BackupRunResult:
        """Back up every location independently, then stamp ``last_backup_at``."""
        self._require_configured()
        result = BackupRunResult(started_at=self.clock())
        locations = self.db.list_locations()
        logger.info("Starting backup run for %d locations", len(locations))

        for location in locations:
            result.outcomes.append(self._rotate(location))

        result.finished_at = self.clock()
        self.db.update_backup_settings(last_backup_at=result.finished_at)
        logger.info(
            "Completed backup run: %d of %d locations backed up",
            result.success_count, len(result.outcomes),
        )
        return result

    def create_deletion_snapshot(self, location_id: str) -> Optional[str]:
        """
        Final snapshot of a location about to be deleted. Not recorded and
        not rotated. Returns None instead of raising.
        """
        if not self.blob_store.configured:
            return None
        try:
            location = self.db.get_location(location_id)
            if location is None:
                return None
            payload = self.build_location_export(location_id, location)
            payload["deletedAt"] = self.clock().isoformat()
            payload["deleteReason"] = DELETE_REASON
            bin_id = self.blob_store.create(self._snapshot_name(f"DELETED_{location.name}"), payload)
        except Exception:
            logger.exception("Failed to create deletion backup for location %s", location_id)
            return None
        logger.info("Created deletion backup %s for %s", bin_id, location.name)
        return bin_id

    def archive_ticket(self, ticket: Ticket, messages: Iterable[TicketMessage]) -> Optional[str]:
        if not self.blob_store.configured:
            return None
        payload = to_camel_payload(
            {
                "ticket": ticket.as_dict(),
                "messages": [m.as_dict() for m in messages],
                "resolved_at": ticket.resolved_at,
                "archived_at": self.clock(),
            }
        )
        try:
            bin_id = self.blob_store.create(self._snapshot_name(f"TICKET_{ticket.id}"), payload)
        except Exception:
            logger.exception("Failed to archive ticket %s", ticket.id)
            return None
        logger.info("Archived ticket %s as %s", ticket.id, bin_id)
        return bin_id


class BackupSettingsService:
    """Reads and changes the process-wide backup settings row."""

    def __init__(
        self,
        db: DbClient,
        blob_store: BlobStore,
        scheduler: Optional["BackupScheduler"] = None,
    ):
        self.db = db
        self.blob_store = blob_store
        self.scheduler = scheduler

    def get_settings(self) -> BackupSettings:
        return self.db.get_backup_settings() or BackupSettings()

    def update_settings(
        self, frequency_hours: Optional[int] = None, enabled: Optional[bool] = None
    ) -> BackupSettings:
        current = self.get_settings()
        if frequency_hours is not None:
            if isinstance(frequency_hours, bool) or not isinstance(frequency_hours, int) or frequency_hours < 1:
                raise ValidationError("frequencyHours must be a whole number of at least 1")
            changed = frequency_hours != current.frequency_hours
            current = self.db.update_backup_settings(frequency_hours=frequency_hours)
            if changed and current.enabled and self.scheduler is not None:
                self.scheduler.start(frequency_hours)
        if enabled is not None:
            current = self.set_enabled(enabled)
        return current

    def validate_key(self) -> BackupSettings:
        """
        Check the configured key against the store. Only an explicit auth
        rejection fails; other errors are logged and the key is still marked
        configured.
        """
        if not self.blob_store.configured:
            raise BackupNotConfiguredError("No backup API key configured")
        try:
            self.blob_store.validate_key()
        except InvalidApiKeyError:
            raise
        except ExternalServiceError as exc:
            logger.warning("Key check inconclusive, marking key configured: %s", exc.message)
        return self.db.update_backup_settings(api_key_configured=True)

    def set_enabled(self, enabled: bool) -> BackupSettings:
        current = self.get_settings()
        if enabled:
            if not self.blob_store.configured:
                raise BackupNotConfiguredError("No backup API key configured")
            if not current.api_key_configured:
                raise ValidationError("Validate the backup API key before enabling backups")
        updated = self.db.update_backup_settings(enabled=enabled)
        if self.scheduler is not None:
            if enabled:
                self.scheduler.start(updated.frequency_hours)
            else:
                self.scheduler.stop()
        logger.info("Automatic backups %s", "enabled" if enabled else "disabled")
        return updated

    def location_backup_status(self) -> list[dict]:
        status = []
        for location in self.db.list_locations():
            backups = self.db.list_location_backups(location.id)
            status.append(
                {
                    "location_id": location.id,
                    "name": location.name,
                    "backup_count": len(backups),
                    "latest_backup_at": backups[-1].created_at if backups else None,
                    "bin_ids": [b.bin_id for b in backups],
                }
            )
        return status
