"""
Package search and per-recipient grouping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from parcelvault.db import DbClient
from parcelvault.errors import NotFoundError, ValidationError
from parcelvault.pricing import ZERO, cost_for_location
from parcelvault.records import ArchivedPackage, Location, Package, StorageLocation

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECIPIENT_SUMMARIES = 3


@dataclass
class PricedPackage:
    """A package with its cost and storage slot resolved at query time."""

    package: Package
    cost: Decimal
    storage_location: Optional[StorageLocation] = None

    def as_dict(self) -> dict:
        payload = self.package.as_dict()
        payload["calculated_cost"] = self.cost
        payload["storage_location"] = (
            self.storage_location.as_dict() if self.storage_location else None
        )
        return payload


@dataclass
class RecipientSummary:
    recipient_name: str
    total_packages: int = 0
    pending_packages: int = 0
    delivered_packages: int = 0
    total_cost: Decimal = ZERO
    packages: list[PricedPackage] = field(default_factory=list)

    def add(self, priced: PricedPackage) -> None:
        self.packages.append(priced)
        self.total_packages += 1
        if priced.package.is_delivered:
            self.delivered_packages += 1
        else:
            self.pending_packages += 1
            self.total_cost += priced.cost

    def as_dict(self) -> dict:
        return {
            "recipient_name": self.recipient_name,
            "total_packages": self.total_packages,
            "pending_packages": self.pending_packages,
            "delivered_packages": self.delivered_packages,
            "total_cost": self.total_cost,
            "packages": [p.as_dict() for p in self.packages],
        }


@dataclass
class SearchResult:
    recipient_summaries: list[RecipientSummary]
    too_many_recipients: bool
    packages: list[PricedPackage]

    def as_dict(self) -> dict:
        return {
            "recipient_summaries": [s.as_dict() for s in self.recipient_summaries],
            "too_many_recipients": self.too_many_recipients,
            "packages": [p.as_dict() for p in self.packages],
        }


def recipient_key(name: str) -> str:
    return name.strip().lower()


class SearchEngine:
    """Finds a location's packages by recipient or tracking number."""

    def __init__(self, db: DbClient, max_recipient_summaries: int = DEFAULT_MAX_RECIPIENT_SUMMARIES):
        self.db = db
        self.max_recipient_summaries = max_recipient_summaries

    def _require_location(self, location_id: str) -> Location:
        location = self.db.get_location(location_id)
        if location is None:
            raise NotFoundError("Location not found")
        return location

    def _price_all(self, location: Location, packages: list[Package]) -> list[PricedPackage]:
        tiers = self.db.list_pricing_tiers(location.id)
        slots = {s.id: s for s in self.db.list_storage_locations(location.id)}
        return [
            PricedPackage(
                package=package,
                cost=cost_for_location(location, tiers, package.weight),
                storage_location=slots.get(package.storage_location_id),
            )
            for package in packages
        ]

    def search(self, location_id: str, query: str) -> Optional[SearchResult]:
        """
        Search live packages and group the matches by recipient.

        Returns None when nothing matches, so callers can tell "no matches"
        apart from a result they still have to render.
        """
        term = (query or "").strip()
        if not term:
            raise ValidationError("Search query is required")
        location = self._require_location(location_id)

        matches = self.db.find_packages(location_id, term)
        if not matches:
            return None

        priced = self._price_all(location, matches)
        groups: dict[str, RecipientSummary] = {}
        for item in priced:
            key = recipient_key(item.package.recipient_name)
            if key not in groups:
                groups[key] = RecipientSummary(recipient_name=item.package.recipient_name)
            groups[key].add(item)

        logger.debug(
            "Search %r in %s matched %d packages across %d recipients",
            term, location_id, len(priced), len(groups),
        )
        return SearchResult(
            recipient_summaries=list(groups.values()),
            too_many_recipients=len(groups) > self.max_recipient_summaries,
            packages=priced,
        )

    def search_archived(self, location_id: str, query: str) -> list[ArchivedPackage]:
        term = (query or "").strip()
        if not term:
            return []
        self._require_location(location_id)
        return self.db.search_archived_packages(location_id, term)

    def list_packages(self, location_id: str) -> list[PricedPackage]:
        location = self._require_location(location_id)
        return self._price_all(location, self.db.list_packages(location_id))
