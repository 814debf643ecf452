"""
Location administration: pricing configuration, suspension, stats and
deletion with a final safety snapshot.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Iterable, Optional

from parcelvault.backup import BackupRotationManager
from parcelvault.db import DbClient
from parcelvault.errors import NotFoundError, ValidationError
from parcelvault.pricing import ZERO, cost_for_location, parse_rate, parse_tier
from parcelvault.records import Location
from parcelvault.types import PackageStatus, PricingType

logger = logging.getLogger(__name__)


def _parse_pricing_type(value: Any) -> PricingType:
    try:
        return PricingType(value or PricingType.PER_POUND)
    except ValueError:
        raise ValidationError(f"Unknown pricing type {value!r}") from None


def _parse_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Location name is required")
    return name.strip()


class LocationService:
    def __init__(self, db: DbClient, backup_manager: Optional[BackupRotationManager] = None):
        self.db = db
        self.backup_manager = backup_manager

    def get_location(self, location_id: str) -> Location:
        location = self.db.get_location(location_id)
        if location is None:
            raise NotFoundError("Location not found")
        return location

    def list_locations(self) -> list[Location]:
        return self.db.list_locations()

    def describe_location(self, location: Location) -> dict:
        """Location with its slots, tiers and counts, as shown to admins."""
        payload = location.as_dict()
        payload.update(
            storage_locations=[s.as_dict() for s in self.db.list_storage_locations(location.id)],
            pricing_tiers=[t.as_dict() for t in self.db.list_pricing_tiers(location.id)],
            package_count=self.db.count_packages(location_id=location.id),
            user_count=len(self.db.list_app_users(location.id)),
        )
        return payload

    def _replace_tiers(self, location_id: str, tiers: Iterable[Any]) -> None:
        parsed = [parse_tier(tier) for tier in tiers]
        self.db.delete_pricing_tiers_for_location(location_id)
        for min_weight, max_weight, price in parsed:
            self.db.create_pricing_tier(location_id, min_weight, max_weight, price)

    def create_location(
        self,
        name: str,
        pricing_enabled: bool = False,
        pricing_type: Any = PricingType.PER_POUND,
        per_pound_rate: Any = None,
        tiers: Iterable[Any] = (),
    ) -> Location:
        name = _parse_name(name)
        kind = _parse_pricing_type(pricing_type)
        rate = parse_rate(per_pound_rate)
        parsed_tiers = [parse_tier(tier) for tier in tiers]

        location = self.db.create_location(
            name,
            pricing_enabled=bool(pricing_enabled),
            pricing_type=kind,
            per_pound_rate=rate,
        )
        for min_weight, max_weight, price in parsed_tiers:
            self.db.create_pricing_tier(location.id, min_weight, max_weight, price)
        logger.info("Created location %s (%s)", location.id, name)
        return location

    def update_location(
        self, location_id: str, tiers: Optional[Iterable[Any]] = None, **fields
    ) -> Location:
        """Update location fields; ``tiers``, when given, replaces the whole set."""
        self.get_location(location_id)
        changes: dict = {}
        for key, value in fields.items():
            if key == "name":
                changes["name"] = _parse_name(value)
            elif key == "pricing_enabled":
                changes["pricing_enabled"] = bool(value)
            elif key == "pricing_type":
                changes["pricing_type"] = _parse_pricing_type(value)
            elif key == "per_pound_rate":
                changes["per_pound_rate"] = parse_rate(value)
            else:
                raise ValidationError(f"Unknown location field {key!r}")

        if tiers is not None:
            self._replace_tiers(location_id, tiers)
        location = self.db.update_location(location_id, **changes) if changes else None
        return location or self.get_location(location_id)

    def _set_suspended(self, location_id: str, suspended: bool) -> Location:
        location = self.db.update_location(location_id, is_suspended=suspended)
        if location is None:
            raise NotFoundError("Location not found")
        logger.info("Location %s %s", location_id, "suspended" if suspended else "unsuspended")
        return location

    def suspend_location(self, location_id: str) -> Location:
        return self._set_suspended(location_id, True)

    def unsuspend_location(self, location_id: str) -> Location:
        return self._set_suspended(location_id, False)

    def get_location_stats(self, location_id: str) -> dict:
        location = self.get_location(location_id)
        packages = self.db.list_packages(location_id)
        pending = [p for p in packages if p.status == PackageStatus.PENDING]
        total_value: Decimal = ZERO
        if location.pricing_enabled:
            tiers = self.db.list_pricing_tiers(location_id)
            for package in pending:
                total_value += cost_for_location(location, tiers, package.weight)
        return {
            "total_packages": len(packages),
            "pending_packages": len(pending),
            "total_value": total_value,
        }

    def get_admin_stats(self) -> dict:
        return {
            "total_locations": len(self.db.list_locations()),
            "total_packages": self.db.count_packages(),
            "total_users": len(self.db.list_app_users()),
            "pending_packages": self.db.count_packages(status=PackageStatus.PENDING),
        }

    def delete_location(self, location_id: str, confirm_name: Optional[str]) -> dict:
        """
        Delete a location and everything it owns after the caller retypes
        its name. A final snapshot is attempted first; its failure never
        blocks the delete.
        """
        location = self.get_location(location_id)
        if confirm_name != location.name:
            raise ValidationError("Location name does not match")

        backup_bin_id = None
        if self.backup_manager is not None:
            backup_bin_id = self.backup_manager.create_deletion_snapshot(location_id)

        self.db.delete_location(location_id)
        logger.info("Deleted location %s (%s)", location_id, location.name)
        return {"deleted": True, "backup_bin_id": backup_bin_id}
