"""
Package lifecycle: pending -> delivered -> archived.

Single-package operations raise; bulk operations and the archive sweep
report a per-package outcome and never roll back units that succeeded.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from parcelvault.db import DbClient
from parcelvault.errors import NotFoundError, ValidationError
from parcelvault.pricing import parse_weight
from parcelvault.records import ArchivedPackage, Package, StorageLocation, utcnow
from parcelvault.types import OutcomeStatus, PackageStatus

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_MONTHS = 2

# Input key -> stored field. camelCase aliases come from JSON clients.
EDITABLE_FIELDS = {
    "tracking_number": "tracking_number",
    "trackingNumber": "tracking_number",
    "recipient_name": "recipient_name",
    "recipientName": "recipient_name",
    "weight": "weight",
    "storage_location_id": "storage_location_id",
    "storageLocationId": "storage_location_id",
    "notes": "notes",
}
BULK_FIELDS = {
    "is_delivered": "is_delivered",
    "isDelivered": "is_delivered",
    "recipient_name": "recipient_name",
    "recipientName": "recipient_name",
    "picked_up_by_last_name": "picked_up_by_last_name",
    "pickedUpByLastName": "picked_up_by_last_name",
}


def subtract_months(moment: datetime, months: int) -> datetime:
    """Go back ``months`` calendar months, clamping the day to the month length."""
    total = moment.year * 12 + (moment.month - 1) - months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _require_text(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


def _optional_text(value: Any, label: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string")
    return value.strip() or None


@dataclass
class UnitOutcome:
    package_id: str
    status: OutcomeStatus
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {"package_id": self.package_id, "status": self.status, "reason": self.reason}


@dataclass
class BulkUpdateResult:
    outcomes: list[UnitOutcome] = field(default_factory=list)

    @property
    def updated_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.UPDATED)

    def as_dict(self) -> dict:
        return {
            "updated_count": self.updated_count,
            "outcomes": [o.as_dict() for o in self.outcomes],
        }


@dataclass
class ArchiveResult:
    cutoff: datetime
    archived: list[ArchivedPackage] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)

    @property
    def archived_count(self) -> int:
        return len(self.archived)

    def as_dict(self) -> dict:
        return {
            "archived_count": self.archived_count,
            "cutoff": self.cutoff,
            "archived_ids": [a.id for a in self.archived],
            "failed_ids": list(self.failed_ids),
        }


class LifecycleManager:
    def __init__(self, db: DbClient, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def _get_scoped(self, package_id: str, location_id: Optional[str]) -> Optional[Package]:
        package = self.db.get_package(package_id)
        if package is None or (location_id and package.location_id != location_id):
            return None
        return package

    def create_package(
        self,
        location_id: str,
        tracking_number: str,
        recipient_name: str,
        weight: Any,
        storage_location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Package:
        tracking_number = _require_text(tracking_number, "Tracking number")
        recipient_name = _require_text(recipient_name, "Recipient name")
        parsed_weight = parse_weight(weight)
        notes = _optional_text(notes, "Notes")

        location = self.db.get_location(location_id)
        if location is None:
            raise NotFoundError("Location not found")
        if location.is_suspended:
            raise ValidationError(f"Location {location.name} is suspended")

        package = self.db.create_package(
            location_id,
            tracking_number,
            recipient_name,
            parsed_weight,
            storage_location_id=storage_location_id or None,
            notes=notes,
        )
        logger.info("Created package %s (%s) at %s", package.id, tracking_number, location_id)
        return package

    def deliver_package(
        self,
        package_id: str,
        picked_up_by_last_name: str,
        location_id: Optional[str] = None,
    ) -> Package:
        """
        Mark a package delivered.

        Delivering an already delivered package keeps the original
        ``delivered_at`` and only overwrites the pickup name.
        """
        pickup_name = _require_text(picked_up_by_last_name, "Pickup last name")
        package = self._get_scoped(package_id, location_id)
        if package is None:
            raise NotFoundError("Package not found")

        fields: dict = {"picked_up_by_last_name": pickup_name}
        if not package.is_delivered:
            fields.update(status=PackageStatus.DELIVERED, delivered_at=self.clock())
        updated = self.db.update_package(package_id, fields, location_id=location_id)
        if updated is None:
            raise NotFoundError("Package not found")
        return updated

    def update_package(
        self, package_id: str, fields: Mapping[str, Any], location_id: Optional[str] = None
    ) -> Package:
        unknown = [key for key in fields if key not in EDITABLE_FIELDS]
        if unknown:
            raise ValidationError(f"Fields cannot be edited here: {sorted(unknown)}")
        changes: dict = {}
        for key, value in fields.items():
            name = EDITABLE_FIELDS[key]
            if name in ("tracking_number", "recipient_name"):
                value = _require_text(value, name.replace("_", " ").capitalize())
            elif name == "weight":
                value = parse_weight(value)
            elif name == "notes":
                value = _optional_text(value, "Notes")
            else:
                value = value or None
            changes[name] = value
        if not changes:
            raise ValidationError("No fields to update")

        if self._get_scoped(package_id, location_id) is None:
            raise NotFoundError("Package not found")
        updated = self.db.update_package(package_id, changes, location_id=location_id)
        if updated is None:
            raise NotFoundError("Package not found")
        return updated

    @staticmethod
    def _normalize_bulk_updates(updates: Mapping[str, Any]) -> dict:
        changes: dict = {}
        for key, value in updates.items():
            name = BULK_FIELDS.get(key)
            if name is None:
                continue
            if name == "is_delivered":
                if not isinstance(value, bool):
                    raise ValidationError("isDelivered must be true or false")
            elif name == "recipient_name":
                value = _require_text(value, "Recipient name")
            else:
                value = _optional_text(value, "Pickup last name")
            changes[name] = value
        return changes

    def _bulk_one(self, package_id: str, changes: dict, location_id: Optional[str]) -> UnitOutcome:
        package = self._get_scoped(package_id, location_id)
        if package is None:
            return UnitOutcome(package_id, OutcomeStatus.NOT_FOUND)

        fields = {k: v for k, v in changes.items() if k != "is_delivered"}
        if "is_delivered" in changes:
            if changes["is_delivered"] and not package.is_delivered:
                fields.update(status=PackageStatus.DELIVERED, delivered_at=self.clock())
            elif not changes["is_delivered"] and package.is_delivered:
                return UnitOutcome(
                    package_id,
                    OutcomeStatus.INVALID_TRANSITION,
                    "delivered packages cannot return to pending",
                )
        if not fields:
            return UnitOutcome(package_id, OutcomeStatus.UNCHANGED)

        if self.db.update_package(package_id, fields, location_id=location_id) is None:
            return UnitOutcome(package_id, OutcomeStatus.NOT_FOUND)
        return UnitOutcome(package_id, OutcomeStatus.UPDATED)

    def bulk_update(
        self,
        package_ids: Iterable[str],
        updates: Mapping[str, Any],
        location_id: Optional[str] = None,
    ) -> BulkUpdateResult:
        """
        Apply ``updates`` to each id independently, in order.

        Only delivery state, recipient name and pickup name can change in
        bulk; other keys are ignored. Ids outside ``location_id`` are
        reported as not found.
        """
        ids = list(package_ids)
        if not ids:
            raise ValidationError("At least one package id is required")
        changes = self._normalize_bulk_updates(updates)

        result = BulkUpdateResult()
        if not changes:
            result.outcomes = [UnitOutcome(pid, OutcomeStatus.UNCHANGED) for pid in ids]
            return result

        for package_id in ids:
            try:
                outcome = self._bulk_one(package_id, changes, location_id)
            except Exception as exc:
                logger.exception("Bulk update failed for package %s", package_id)
                outcome = UnitOutcome(package_id, OutcomeStatus.FAILED, str(exc))
            result.outcomes.append(outcome)

        logger.info(
            "Bulk update touched %d of %d packages", result.updated_count, len(ids)
        )
        return result

    def archive_old_packages(self, months_old: int = DEFAULT_ARCHIVE_MONTHS) -> ArchiveResult:
        """Move delivered packages older than ``months_old`` months to cold storage."""
        if isinstance(months_old, bool) or not isinstance(months_old, int) or months_old < 1:
            raise ValidationError("months_old must be a whole number of at least 1")

        now = self.clock()
        result = ArchiveResult(cutoff=subtract_months(now, months_old))
        for package in self.db.list_delivered_before(result.cutoff):
            try:
                archived = self.db.archive_package(package.id, archived_at=now)
            except Exception:
                logger.exception("Failed to archive package %s", package.id)
                result.failed_ids.append(package.id)
                continue
            if archived is not None:
                result.archived.append(archived)

        logger.info(
            "Archived %d packages delivered before %s (%d failed)",
            result.archived_count, result.cutoff.isoformat(), len(result.failed_ids),
        )
        return result

    def create_storage_location(self, location_id: str, name: str) -> StorageLocation:
        return self.db.create_storage_location(location_id, _require_text(name, "Name"))

    def delete_storage_location(
        self, storage_location_id: str, location_id: Optional[str] = None
    ) -> None:
        """Delete a storage slot. Packages in it stay, with no slot."""
        storage = self.db.get_storage_location(storage_location_id)
        if storage is None or (location_id and storage.location_id != location_id):
            raise NotFoundError("Storage location not found")
        self.db.delete_storage_location(storage_location_id)
        logger.info("Deleted storage location %s", storage_location_id)
