"""
Database abstraction for Postgres (via SQLAlchemy) and an in-memory test
implementation.

The clients only persist and filter. Business rules live in the services;
the only checks made here are the ones that need the stored rows
(existence of a parent location, storage-location ownership, the
pending/delivered record invariant).
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    create_engine,
    delete,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from parcelvault.errors import NotFoundError, ReferentialError, ValidationError
from parcelvault.records import (
    AppUser,
    ArchivedPackage,
    BackupSettings,
    Location,
    LocationBackup,
    Package,
    PricingTier,
    StorageLocation,
    Ticket,
    TicketMessage,
    new_id,
    utcnow,
)
from parcelvault.types import PackageStatus, PricingType, TicketStatus, UserRole

UPDATABLE_PACKAGE_FIELDS = frozenset(
    {
        "tracking_number",
        "recipient_name",
        "weight",
        "storage_location_id",
        "notes",
        "status",
        "picked_up_by_last_name",
        "delivered_at",
    }
)
UPDATABLE_LOCATION_FIELDS = frozenset(
    {"name", "pricing_enabled", "pricing_type", "per_pound_rate", "is_suspended"}
)
UPDATABLE_TICKET_FIELDS = frozenset(
    {"subject", "status", "resolved_at", "archived_bin_id"}
)
UPDATABLE_USER_FIELDS = frozenset(
    {"email", "first_name", "last_name", "role", "location_id", "is_active"}
)
UPDATABLE_BACKUP_SETTINGS_FIELDS = frozenset(
    {"api_key_configured", "frequency_hours", "enabled", "last_backup_at"}
)


class DbClient(Protocol):
    """Interface for database access."""

    # Locations
    def list_locations(self) -> list[Location]:
        ...

    def get_location(self, location_id: str) -> Optional[Location]:
        ...

    def create_location(
        self,
        name: str,
        *,
        pricing_enabled: bool = False,
        pricing_type: PricingType = PricingType.PER_POUND,
        per_pound_rate: Optional[Decimal] = None,
        is_suspended: bool = False,
    ) -> Location:
        ...

    def update_location(self, location_id: str, **fields) -> Optional[Location]:
        ...

    def delete_location(self, location_id: str) -> bool:
        ...

    # Storage locations
    def list_storage_locations(self, location_id: str) -> list[StorageLocation]:
        ...

    def get_storage_location(self, storage_location_id: str) -> Optional[StorageLocation]:
        ...

    def create_storage_location(self, location_id: str, name: str) -> StorageLocation:
        ...

    def delete_storage_location(self, storage_location_id: str) -> bool:
        ...

    # Pricing tiers
    def list_pricing_tiers(self, location_id: str) -> list[PricingTier]:
        ...

    def create_pricing_tier(
        self, location_id: str, min_weight: Decimal, max_weight: Decimal, price: Decimal
    ) -> PricingTier:
        ...

    def delete_pricing_tiers_for_location(self, location_id: str) -> None:
        ...

    # Packages
    def list_packages(self, location_id: str) -> list[Package]:
        ...

    def get_package(self, package_id: str) -> Optional[Package]:
        ...

    def create_package(
        self,
        location_id: str,
        tracking_number: str,
        recipient_name: str,
        weight: Decimal,
        *,
        storage_location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Package:
        ...

    def update_package(
        self, package_id: str, fields: dict, *, location_id: Optional[str] = None
    ) -> Optional[Package]:
        ...

    def find_packages(self, location_id: str, term: str) -> list[Package]:
        ...

    def list_delivered_before(self, cutoff: datetime) -> list[Package]:
        ...

    def count_packages(
        self, location_id: Optional[str] = None, status: Optional[PackageStatus] = None
    ) -> int:
        ...

    def archive_package(
        self, package_id: str, archived_at: Optional[datetime] = None
    ) -> Optional[ArchivedPackage]:
        ...

    def search_archived_packages(self, location_id: str, term: str) -> list[ArchivedPackage]:
        ...

    # Users
    def create_app_user(self, auth_user_id: str, **fields) -> AppUser:
        ...

    def list_app_users(self, location_id: Optional[str] = None) -> list[AppUser]:
        ...

    def get_app_user(self, user_id: str) -> Optional[AppUser]:
        ...

    def get_app_user_by_email(self, email: str) -> Optional[AppUser]:
        ...

    def get_app_user_by_auth_id(self, auth_user_id: str) -> Optional[AppUser]:
        ...

    def update_app_user(self, user_id: str, **fields) -> Optional[AppUser]:
        ...

    def delete_app_user(self, user_id: str) -> bool:
        ...

    # Tickets
    def create_ticket(self, location_id: str, user_id: str, subject: str) -> Ticket:
        ...

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ...

    def list_tickets(
        self, location_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[Ticket]:
        ...

    def update_ticket(self, ticket_id: str, **fields) -> Optional[Ticket]:
        ...

    def add_ticket_message(
        self, ticket_id: str, sender_id: str, message: str, is_admin: bool = False
    ) -> TicketMessage:
        ...

    def list_ticket_messages(self, ticket_id: str) -> list[TicketMessage]:
        ...

    # Backups
    def get_backup_settings(self) -> Optional[BackupSettings]:
        ...

    def update_backup_settings(self, **fields) -> BackupSettings:
        ...

    def list_location_backups(self, location_id: str) -> list[LocationBackup]:
        ...

    def add_location_backup(
        self, location_id: str, bin_id: str, created_at: Optional[datetime] = None
    ) -> LocationBackup:
        ...

    def delete_location_backup(self, backup_id: str) -> bool:
        ...


def _reject_unknown(fields: dict, allowed: Iterable[str], kind: str) -> None:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValidationError(f"Cannot update {kind} fields: {sorted(unknown)}")


def _contains(haystack: Optional[str], needle: str) -> bool:
    return needle in (haystack or "").lower()


def _newest_first(items: list, attr: str = "created_at") -> list:
    # Reverse first so insertion order breaks timestamp ties newest-first.
    return sorted(reversed(items), key=lambda item: getattr(item, attr), reverse=True)


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self.locations: Dict[str, Location] = {}
        self.storage_locations: Dict[str, StorageLocation] = {}
        self.pricing_tiers: Dict[str, PricingTier] = {}
        self.packages: Dict[str, Package] = {}
        self.archived_packages: Dict[str, ArchivedPackage] = {}
        self.app_users: Dict[str, AppUser] = {}
        self.tickets: Dict[str, Ticket] = {}
        self.ticket_messages: Dict[str, TicketMessage] = {}
        self.location_backups: Dict[str, LocationBackup] = {}
        self.backup_settings: Optional[BackupSettings] = None

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.locations.clear()
            self.storage_locations.clear()
            self.pricing_tiers.clear()
            self.packages.clear()
            self.archived_packages.clear()
            self.app_users.clear()
            self.tickets.clear()
            self.ticket_messages.clear()
            self.location_backups.clear()
            self.backup_settings = None

    # Locations
    def list_locations(self) -> list[Location]:
        with self._lock:
            return _newest_first(list(self.locations.values()))

    def get_location(self, location_id: str) -> Optional[Location]:
        return self.locations.get(location_id)

    def create_location(
        self,
        name: str,
        *,
        pricing_enabled: bool = False,
        pricing_type: PricingType = PricingType.PER_POUND,
        per_pound_rate: Optional[Decimal] = None,
        is_suspended: bool = False,
    ) -> Location:
        record = Location(
            id=new_id(),
            name=name,
            pricing_enabled=pricing_enabled,
            pricing_type=PricingType(pricing_type),
            per_pound_rate=per_pound_rate,
            is_suspended=is_suspended,
        )
        with self._lock:
            self.locations[record.id] = record
        return record

    def update_location(self, location_id: str, **fields) -> Optional[Location]:
        _reject_unknown(fields, UPDATABLE_LOCATION_FIELDS, "location")
        with self._lock:
            current = self.locations.get(location_id)
            if not current:
                return None
            if "pricing_type" in fields:
                fields["pricing_type"] = PricingType(fields["pricing_type"])
            updated = dataclasses.replace(current, **fields)
            self.locations[location_id] = updated
            return updated

    def delete_location(self, location_id: str) -> bool:
        with self._lock:
            if self.locations.pop(location_id, None) is None:
                return False
            for table in (
                self.storage_locations,
                self.pricing_tiers,
                self.packages,
                self.archived_packages,
                self.location_backups,
            ):
                for key in [k for k, v in table.items() if v.location_id == location_id]:
                    del table[key]
            ticket_ids = {t.id for t in self.tickets.values() if t.location_id == location_id}
            for ticket_id in ticket_ids:
                del self.tickets[ticket_id]
            for key in [
                k for k, v in self.ticket_messages.items() if v.ticket_id in ticket_ids
            ]:
                del self.ticket_messages[key]
            for user in self.app_users.values():
                if user.location_id == location_id:
                    user.location_id = None
            return True

    # Storage locations
    def list_storage_locations(self, location_id: str) -> list[StorageLocation]:
        with self._lock:
            return [s for s in self.storage_locations.values() if s.location_id == location_id]

    def get_storage_location(self, storage_location_id: str) -> Optional[StorageLocation]:
        return self.storage_locations.get(storage_location_id)

    def create_storage_location(self, location_id: str, name: str) -> StorageLocation:
        record = StorageLocation(id=new_id(), location_id=location_id, name=name)
        with self._lock:
            if location_id not in self.locations:
                raise NotFoundError("Location not found")
            self.storage_locations[record.id] = record
        return record

    def delete_storage_location(self, storage_location_id: str) -> bool:
        with self._lock:
            for package_id, package in list(self.packages.items()):
                if package.storage_location_id == storage_location_id:
                    self.packages[package_id] = dataclasses.replace(
                        package, storage_location_id=None
                    )
            return self.storage_locations.pop(storage_location_id, None) is not None

    # Pricing tiers
    def list_pricing_tiers(self, location_id: str) -> list[PricingTier]:
        with self._lock:
            return [t for t in self.pricing_tiers.values() if t.location_id == location_id]

    def create_pricing_tier(
        self, location_id: str, min_weight: Decimal, max_weight: Decimal, price: Decimal
    ) -> PricingTier:
        record = PricingTier(
            id=new_id(),
            location_id=location_id,
            min_weight=min_weight,
            max_weight=max_weight,
            price=price,
        )
        with self._lock:
            if location_id not in self.locations:
                raise NotFoundError("Location not found")
            self.pricing_tiers[record.id] = record
        return record

    def delete_pricing_tiers_for_location(self, location_id: str) -> None:
        with self._lock:
            for key in [k for k, v in self.pricing_tiers.items() if v.location_id == location_id]:
                del self.pricing_tiers[key]

    # Packages
    def _check_storage_reference(self, location_id: str, storage_location_id: Optional[str]) -> None:
        if storage_location_id is None:
            return
        storage = self.storage_locations.get(storage_location_id)
        if storage is None or storage.location_id != location_id:
            raise ReferentialError(
                f"Storage location {storage_location_id} does not belong to location {location_id}"
            )

    def list_packages(self, location_id: str) -> list[Package]:
        with self._lock:
            matches = [p for p in self.packages.values() if p.location_id == location_id]
        return _newest_first(matches)

    def get_package(self, package_id: str) -> Optional[Package]:
        return self.packages.get(package_id)

    def create_package(
        self,
        location_id: str,
        tracking_number: str,
        recipient_name: str,
        weight: Decimal,
        *,
        storage_location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Package:
        with self._lock:
            if location_id not in self.locations:
                raise NotFoundError("Location not found")
            self._check_storage_reference(location_id, storage_location_id)
            record = Package(
                id=new_id(),
                location_id=location_id,
                tracking_number=tracking_number,
                recipient_name=recipient_name,
                weight=weight,
                storage_location_id=storage_location_id,
                notes=notes,
            )
            self.packages[record.id] = record
            return record

    def update_package(
        self, package_id: str, fields: dict, *, location_id: Optional[str] = None
    ) -> Optional[Package]:
        _reject_unknown(fields, UPDATABLE_PACKAGE_FIELDS, "package")
        with self._lock:
            current = self.packages.get(package_id)
            if not current or (location_id and current.location_id != location_id):
                return None
            if fields.get("storage_location_id") is not None:
                self._check_storage_reference(current.location_id, fields["storage_location_id"])
            try:
                updated = dataclasses.replace(current, **fields)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            self.packages[package_id] = updated
            return updated

    def find_packages(self, location_id: str, term: str) -> list[Package]:
        needle = term.lower()
        with self._lock:
            matches = [
                p
                for p in self.packages.values()
                if p.location_id == location_id
                and (_contains(p.recipient_name, needle) or _contains(p.tracking_number, needle))
            ]
        return _newest_first(matches)

    def list_delivered_before(self, cutoff: datetime) -> list[Package]:
        with self._lock:
            return [
                p
                for p in self.packages.values()
                if p.status == PackageStatus.DELIVERED and p.delivered_at < cutoff
            ]

    def count_packages(
        self, location_id: Optional[str] = None, status: Optional[PackageStatus] = None
    ) -> int:
        with self._lock:
            return sum(
                1
                for p in self.packages.values()
                if (location_id is None or p.location_id == location_id)
                and (status is None or p.status == status)
            )

    def archive_package(
        self, package_id: str, archived_at: Optional[datetime] = None
    ) -> Optional[ArchivedPackage]:
        with self._lock:
            package = self.packages.get(package_id)
            if package is None:
                return None
            if not package.is_delivered:
                raise ValidationError(f"Package {package_id} is not delivered")
            record = ArchivedPackage(
                id=new_id(),
                location_id=package.location_id,
                tracking_number=package.tracking_number,
                recipient_name=package.recipient_name,
                picked_up_by_last_name=package.picked_up_by_last_name,
                delivered_at=package.delivered_at,
                archived_at=archived_at or utcnow(),
            )
            self.archived_packages[record.id] = record
            del self.packages[package_id]
            return record

    def search_archived_packages(self, location_id: str, term: str) -> list[ArchivedPackage]:
        needle = term.lower()
        with self._lock:
            matches = [
                a
                for a in self.archived_packages.values()
                if a.location_id == location_id
                and (_contains(a.recipient_name, needle) or _contains(a.tracking_number, needle))
            ]
        return _newest_first(matches, attr="delivered_at")

    # Users
    def create_app_user(self, auth_user_id: str, **fields) -> AppUser:
        if "role" in fields:
            fields["role"] = UserRole(fields["role"])
        record = AppUser(id=new_id(), auth_user_id=auth_user_id, **fields)
        with self._lock:
            self.app_users[record.id] = record
        return record

    def list_app_users(self, location_id: Optional[str] = None) -> list[AppUser]:
        with self._lock:
            return [
                u
                for u in self.app_users.values()
                if location_id is None or u.location_id == location_id
            ]

    def get_app_user(self, user_id: str) -> Optional[AppUser]:
        return self.app_users.get(user_id)

    def get_app_user_by_email(self, email: str) -> Optional[AppUser]:
        needle = email.lower()
        with self._lock:
            return next(
                (u for u in self.app_users.values() if (u.email or "").lower() == needle),
                None,
            )

    def get_app_user_by_auth_id(self, auth_user_id: str) -> Optional[AppUser]:
        with self._lock:
            return next(
                (u for u in self.app_users.values() if u.auth_user_id == auth_user_id), None
            )

    def update_app_user(self, user_id: str, **fields) -> Optional[AppUser]:
        _reject_unknown(fields, UPDATABLE_USER_FIELDS, "user")
        with self._lock:
            current = self.app_users.get(user_id)
            if not current:
                return None
            if "role" in fields:
                fields["role"] = UserRole(fields["role"])
            updated = dataclasses.replace(current, **fields)
            self.app_users[user_id] = updated
            return updated

    def delete_app_user(self, user_id: str) -> bool:
        with self._lock:
            return self.app_users.pop(user_id, None) is not None

    # Tickets
    def create_ticket(self, location_id: str, user_id: str, subject: str) -> Ticket:
        record = Ticket(id=new_id(), location_id=location_id, user_id=user_id, subject=subject)
        with self._lock:
            self.tickets[record.id] = record
        return record

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return self.tickets.get(ticket_id)

    def list_tickets(
        self, location_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[Ticket]:
        with self._lock:
            matches = [
                t
                for t in self.tickets.values()
                if (location_id is None or t.location_id == location_id)
                and (user_id is None or t.user_id == user_id)
            ]
        return _newest_first(matches)

    def update_ticket(self, ticket_id: str, **fields) -> Optional[Ticket]:
        _reject_unknown(fields, UPDATABLE_TICKET_FIELDS, "ticket")
        with self._lock:
            current = self.tickets.get(ticket_id)
            if not current:
                return None
            if "status" in fields:
                fields["status"] = TicketStatus(fields["status"])
            updated = dataclasses.replace(current, updated_at=utcnow(), **fields)
            self.tickets[ticket_id] = updated
            return updated

    def add_ticket_message(
        self, ticket_id: str, sender_id: str, message: str, is_admin: bool = False
    ) -> TicketMessage:
        record = TicketMessage(
            id=new_id(),
            ticket_id=ticket_id,
            sender_id=sender_id,
            message=message,
            is_admin=is_admin,
        )
        with self._lock:
            if ticket_id not in self.tickets:
                raise NotFoundError("Ticket not found")
            self.ticket_messages[record.id] = record
        return record

    def list_ticket_messages(self, ticket_id: str) -> list[TicketMessage]:
        with self._lock:
            return [m for m in self.ticket_messages.values() if m.ticket_id == ticket_id]

    # Backups
    def get_backup_settings(self) -> Optional[BackupSettings]:
        return self.backup_settings

    def update_backup_settings(self, **fields) -> BackupSettings:
        _reject_unknown(fields, UPDATABLE_BACKUP_SETTINGS_FIELDS, "backup settings")
        with self._lock:
            current = self.backup_settings or BackupSettings()
            self.backup_settings = dataclasses.replace(current, updated_at=utcnow(), **fields)
            return self.backup_settings

    def list_location_backups(self, location_id: str) -> list[LocationBackup]:
        with self._lock:
            matches = [b for b in self.location_backups.values() if b.location_id == location_id]
        # Stable sort keeps insertion order for equal timestamps.
        return sorted(matches, key=lambda b: b.created_at)

    def add_location_backup(
        self, location_id: str, bin_id: str, created_at: Optional[datetime] = None
    ) -> LocationBackup:
        record = LocationBackup(
            id=new_id(),
            location_id=location_id,
            bin_id=bin_id,
            created_at=created_at or utcnow(),
        )
        with self._lock:
            self.location_backups[record.id] = record
        return record

    def delete_location_backup(self, backup_id: str) -> bool:
        with self._lock:
            return self.location_backups.pop(backup_id, None) is not None


class UtcDateTime(TypeDecorator):
    """Stores UTC and always hands back timezone-aware datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class SqlDbClient:
    """
    SQLAlchemy-backed client. Postgres in production; any SQLAlchemy URL
    (SQLite in tests) works.
    """

    def __init__(self, database_url: str):
        engine_kwargs: dict = {"future": True}
        if database_url.startswith("sqlite") and ":memory:" in database_url:
            engine_kwargs.update(
                poolclass=StaticPool, connect_args={"check_same_thread": False}
            )
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # Row -> record conversion
    @staticmethod
    def _to_location(row: "LocationRow") -> Location:
        return Location(
            id=row.id,
            name=row.name,
            pricing_enabled=row.pricing_enabled,
            pricing_type=PricingType(row.pricing_type),
            per_pound_rate=row.per_pound_rate,
            is_suspended=row.is_suspended,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_storage_location(row: "StorageLocationRow") -> StorageLocation:
        return StorageLocation(
            id=row.id, location_id=row.location_id, name=row.name, created_at=row.created_at
        )

    @staticmethod
    def _to_pricing_tier(row: "PricingTierRow") -> PricingTier:
        return PricingTier(
            id=row.id,
            location_id=row.location_id,
            min_weight=row.min_weight,
            max_weight=row.max_weight,
            price=row.price,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_package(row: "PackageRow") -> Package:
        return Package(
            id=row.id,
            location_id=row.location_id,
            tracking_number=row.tracking_number,
            recipient_name=row.recipient_name,
            weight=row.weight,
            storage_location_id=row.storage_location_id,
            notes=row.notes,
            status=PackageStatus(row.status),
            picked_up_by_last_name=row.picked_up_by_last_name,
            delivered_at=row.delivered_at,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_archived_package(row: "ArchivedPackageRow") -> ArchivedPackage:
        return ArchivedPackage(
            id=row.id,
            location_id=row.location_id,
            tracking_number=row.tracking_number,
            recipient_name=row.recipient_name,
            picked_up_by_last_name=row.picked_up_by_last_name,
            delivered_at=row.delivered_at,
            archived_at=row.archived_at,
        )

    @staticmethod
    def _to_app_user(row: "AppUserRow") -> AppUser:
        return AppUser(
            id=row.id,
            auth_user_id=row.auth_user_id,
            email=row.email,
            first_name=row.first_name,
            last_name=row.last_name,
            role=UserRole(row.role),
            location_id=row.location_id,
            is_active=row.is_active,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_ticket(row: "TicketRow") -> Ticket:
        return Ticket(
            id=row.id,
            location_id=row.location_id,
            user_id=row.user_id,
            subject=row.subject,
            status=TicketStatus(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
            resolved_at=row.resolved_at,
            archived_bin_id=row.archived_bin_id,
        )

    @staticmethod
    def _to_ticket_message(row: "TicketMessageRow") -> TicketMessage:
        return TicketMessage(
            id=row.id,
            ticket_id=row.ticket_id,
            sender_id=row.sender_id,
            message=row.message,
            is_admin=row.is_admin,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_location_backup(row: "LocationBackupRow") -> LocationBackup:
        return LocationBackup(
            id=row.id, location_id=row.location_id, bin_id=row.bin_id, created_at=row.created_at
        )

    # Locations
    def list_locations(self) -> list[Location]:
        with self.Session() as session:
            rows = session.execute(
                select(LocationRow).order_by(LocationRow.created_at.desc())
            ).scalars()
            return [self._to_location(row) for row in rows]

    def get_location(self, location_id: str) -> Optional[Location]:
        with self.Session() as session:
            row = session.get(LocationRow, location_id)
            return self._to_location(row) if row else None

    def create_location(
        self,
        name: str,
        *,
        pricing_enabled: bool = False,
        pricing_type: PricingType = PricingType.PER_POUND,
        per_pound_rate: Optional[Decimal] = None,
        is_suspended: bool = False,
    ) -> Location:
        with self.Session() as session:
            row = LocationRow(
                id=new_id(),
                name=name,
                pricing_enabled=pricing_enabled,
                pricing_type=PricingType(pricing_type).value,
                per_pound_rate=per_pound_rate,
                is_suspended=is_suspended,
                created_at=utcnow(),
            )
            session.add(row)
            session.commit()
            return self._to_location(row)

    def update_location(self, location_id: str, **fields) -> Optional[Location]:
        _reject_unknown(fields, UPDATABLE_LOCATION_FIELDS, "location")
        with self.Session() as session:
            row = session.get(LocationRow, location_id)
            if not row:
                return None
            for key, value in fields.items():
                if key == "pricing_type":
                    value = PricingType(value).value
                setattr(row, key, value)
            session.commit()
            return self._to_location(row)

    def delete_location(self, location_id: str) -> bool:
        with self.Session() as session:
            row = session.get(LocationRow, location_id)
            if not row:
                return False
            ticket_ids = select(TicketRow.id).where(TicketRow.location_id == location_id)
            session.execute(
                delete(TicketMessageRow).where(TicketMessageRow.ticket_id.in_(ticket_ids))
            )
            for model in (
                TicketRow,
                StorageLocationRow,
                PricingTierRow,
                PackageRow,
                ArchivedPackageRow,
                LocationBackupRow,
            ):
                session.execute(delete(model).where(model.location_id == location_id))
            session.execute(
                update(AppUserRow)
                .where(AppUserRow.location_id == location_id)
                .values(location_id=None)
            )
            session.delete(row)
            session.commit()
            return True

    # Storage locations
    def list_storage_locations(self, location_id: str) -> list[StorageLocation]:
        with self.Session() as session:
            rows = session.execute(
                select(StorageLocationRow)
                .where(StorageLocationRow.location_id == location_id)
                .order_by(StorageLocationRow.created_at.asc())
            ).scalars()
            return [self._to_storage_location(row) for row in rows]

    def get_storage_location(self, storage_location_id: str) -> Optional[StorageLocation]:
        with self.Session() as session:
            row = session.get(StorageLocationRow, storage_location_id)
            return self._to_storage_location(row) if row else None

    def create_storage_location(self, location_id: str, name: str) -> StorageLocation:
        with self.Session() as session:
            if not session.get(LocationRow, location_id):
                raise NotFoundError("Location not found")
            row = StorageLocationRow(
                id=new_id(), location_id=location_id, name=name, created_at=utcnow()
            )
            session.add(row)
            session.commit()
            return self._to_storage_location(row)

    def delete_storage_location(self, storage_location_id: str) -> bool:
        with self.Session() as session:
            session.execute(
                update(PackageRow)
                .where(PackageRow.storage_location_id == storage_location_id)
                .values(storage_location_id=None)
            )
            result = session.execute(
                delete(StorageLocationRow).where(StorageLocationRow.id == storage_location_id)
            )
            session.commit()
            return (result.rowcount or 0) > 0

    # Pricing tiers
    def list_pricing_tiers(self, location_id: str) -> list[PricingTier]:
        with self.Session() as session:
            rows = session.execute(
                select(PricingTierRow)
                .where(PricingTierRow.location_id == location_id)
                .order_by(PricingTierRow.position.asc())
            ).scalars()
            return [self._to_pricing_tier(row) for row in rows]

    def create_pricing_tier(
        self, location_id: str, min_weight: Decimal, max_weight: Decimal, price: Decimal
    ) -> PricingTier:
        with self.Session() as session:
            if not session.get(LocationRow, location_id):
                raise NotFoundError("Location not found")
            position = session.execute(
                select(func.count())
                .select_from(PricingTierRow)
                .where(PricingTierRow.location_id == location_id)
            ).scalar_one()
            row = PricingTierRow(
                id=new_id(),
                location_id=location_id,
                min_weight=min_weight,
                max_weight=max_weight,
                price=price,
                position=position,
                created_at=utcnow(),
            )
            session.add(row)
            session.commit()
            return self._to_pricing_tier(row)

    def delete_pricing_tiers_for_location(self, location_id: str) -> None:
        with self.Session() as session:
            session.execute(delete(PricingTierRow).where(PricingTierRow.location_id == location_id))
            session.commit()

    # Packages
    @staticmethod
    def _check_storage_reference(
        session: Session, location_id: str, storage_location_id: Optional[str]
    ) -> None:
        if storage_location_id is None:
            return
        storage = session.get(StorageLocationRow, storage_location_id)
        if storage is None or storage.location_id != location_id:
            raise ReferentialError(
                f"Storage location {storage_location_id} does not belong to location {location_id}"
            )

    def list_packages(self, location_id: str) -> list[Package]:
        with self.Session() as session:
            rows = session.execute(
                select(PackageRow)
                .where(PackageRow.location_id == location_id)
                .order_by(PackageRow.created_at.desc())
            ).scalars()
            return [self._to_package(row) for row in rows]

    def get_package(self, package_id: str) -> Optional[Package]:
        with self.Session() as session:
            row = session.get(PackageRow, package_id)
            return self._to_package(row) if row else None

    def create_package(
        self,
        location_id: str,
        tracking_number: str,
        recipient_name: str,
        weight: Decimal,
        *,
        storage_location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Package:
        with self.Session() as session:
            if not session.get(LocationRow, location_id):
                raise NotFoundError("Location not found")
            self._check_storage_reference(session, location_id, storage_location_id)
            row = PackageRow(
                id=new_id(),
                location_id=location_id,
                tracking_number=tracking_number,
                recipient_name=recipient_name,
                weight=weight,
                storage_location_id=storage_location_id,
                notes=notes,
                status=PackageStatus.PENDING.value,
                created_at=utcnow(),
            )
            session.add(row)
            session.commit()
            return self._to_package(row)

    def update_package(
        self, package_id: str, fields: dict, *, location_id: Optional[str] = None
    ) -> Optional[Package]:
        _reject_unknown(fields, UPDATABLE_PACKAGE_FIELDS, "package")
        with self.Session() as session:
            row = session.get(PackageRow, package_id)
            if not row or (location_id and row.location_id != location_id):
                return None
            if fields.get("storage_location_id") is not None:
                self._check_storage_reference(session, row.location_id, fields["storage_location_id"])
            for key, value in fields.items():
                if key == "status":
                    value = PackageStatus(value).value
                setattr(row, key, value)
            try:
                record = self._to_package(row)
            except ValueError as exc:
                session.rollback()
                raise ValidationError(str(exc)) from exc
            session.commit()
            return record

    def find_packages(self, location_id: str, term: str) -> list[Package]:
        with self.Session() as session:
            rows = session.execute(
                select(PackageRow)
                .where(
                    PackageRow.location_id == location_id,
                    or_(
                        PackageRow.recipient_name.icontains(term, autoescape=True),
                        PackageRow.tracking_number.icontains(term, autoescape=True),
                    ),
                )
                .order_by(PackageRow.created_at.desc())
            ).scalars()
            return [self._to_package(row) for row in rows]

    def list_delivered_before(self, cutoff: datetime) -> list[Package]:
        with self.Session() as session:
            rows = session.execute(
                select(PackageRow).where(
                    PackageRow.status == PackageStatus.DELIVERED.value,
                    PackageRow.delivered_at < cutoff,
                )
            ).scalars()
            return [self._to_package(row) for row in rows]

    def count_packages(
        self, location_id: Optional[str] = None, status: Optional[PackageStatus] = None
    ) -> int:
        stmt = select(func.count()).select_from(PackageRow)
        if location_id is not None:
            stmt = stmt.where(PackageRow.location_id == location_id)
        if status is not None:
            stmt = stmt.where(PackageRow.status == PackageStatus(status).value)
        with self.Session() as session:
            return session.execute(stmt).scalar_one()

    def archive_package(
        self, package_id: str, archived_at: Optional[datetime] = None
    ) -> Optional[ArchivedPackage]:
        with self.Session() as session:
            row = session.get(PackageRow, package_id)
            if row is None:
                return None
            if row.status != PackageStatus.DELIVERED.value:
                raise ValidationError(f"Package {package_id} is not delivered")
            archived = ArchivedPackageRow(
                id=new_id(),
                location_id=row.location_id,
                tracking_number=row.tracking_number,
                recipient_name=row.recipient_name,
                picked_up_by_last_name=row.picked_up_by_last_name,
                delivered_at=row.delivered_at,
                archived_at=archived_at or utcnow(),
            )
            session.add(archived)
            session.delete(row)
            session.commit()
            return self._to_archived_package(archived)

    def search_archived_packages(self, location_id: str, term: str) -> list[ArchivedPackage]:
        with self.Session() as session:
            rows = session.execute(
                select(ArchivedPackageRow)
                .where(
                    ArchivedPackageRow.location_id == location_id,
                    or_(
                        ArchivedPackageRow.recipient_name.icontains(term, autoescape=True),
                        ArchivedPackageRow.tracking_number.icontains(term, autoescape=True),
                    ),
                )
                .order_by(ArchivedPackageRow.delivered_at.desc())
            ).scalars()
            return [self._to_archived_package(row) for row in rows]

    # Users
    def create_app_user(self, auth_user_id: str, **fields) -> AppUser:
        role = UserRole(fields.pop("role", UserRole.EMPLOYEE)).value
        with self.Session() as session:
            row = AppUserRow(
                id=new_id(),
                auth_user_id=auth_user_id,
                role=role,
                is_active=fields.pop("is_active", True),
                created_at=utcnow(),
                **fields,
            )
            session.add(row)
            session.commit()
            return self._to_app_user(row)

    def list_app_users(self, location_id: Optional[str] = None) -> list[AppUser]:
        stmt = select(AppUserRow).order_by(AppUserRow.created_at.asc())
        if location_id is not None:
            stmt = stmt.where(AppUserRow.location_id == location_id)
        with self.Session() as session:
            return [self._to_app_user(row) for row in session.execute(stmt).scalars()]

    def get_app_user(self, user_id: str) -> Optional[AppUser]:
        with self.Session() as session:
            row = session.get(AppUserRow, user_id)
            return self._to_app_user(row) if row else None

    def get_app_user_by_email(self, email: str) -> Optional[AppUser]:
        with self.Session() as session:
            row = session.execute(
                select(AppUserRow).where(func.lower(AppUserRow.email) == email.lower())
            ).scalars().first()
            return self._to_app_user(row) if row else None

    def get_app_user_by_auth_id(self, auth_user_id: str) -> Optional[AppUser]:
        with self.Session() as session:
            row = session.execute(
                select(AppUserRow).where(AppUserRow.auth_user_id == auth_user_id)
            ).scalars().first()
            return self._to_app_user(row) if row else None

    def update_app_user(self, user_id: str, **fields) -> Optional[AppUser]:
        _reject_unknown(fields, UPDATABLE_USER_FIELDS, "user")
        with self.Session() as session:
            row = session.get(AppUserRow, user_id)
            if not row:
                return None
            for key, value in fields.items():
                if key == "role":
                    value = UserRole(value).value
                setattr(row, key, value)
            session.commit()
            return self._to_app_user(row)

    def delete_app_user(self, user_id: str) -> bool:
        with self.Session() as session:
            result = session.execute(delete(AppUserRow).where(AppUserRow.id == user_id))
            session.commit()
            return (result.rowcount or 0) > 0

    # Tickets
    def create_ticket(self, location_id: str, user_id: str, subject: str) -> Ticket:
        now = utcnow()
        with self.Session() as session:
            row = TicketRow(
                id=new_id(),
                location_id=location_id,
                user_id=user_id,
                subject=subject,
                status=TicketStatus.OPEN.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            return self._to_ticket(row)

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self.Session() as session:
            row = session.get(TicketRow, ticket_id)
            return self._to_ticket(row) if row else None

    def list_tickets(
        self, location_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[Ticket]:
        stmt = select(TicketRow).order_by(TicketRow.created_at.desc())
        if location_id is not None:
            stmt = stmt.where(TicketRow.location_id == location_id)
        if user_id is not None:
            stmt = stmt.where(TicketRow.user_id == user_id)
        with self.Session() as session:
            return [self._to_ticket(row) for row in session.execute(stmt).scalars()]

    def update_ticket(self, ticket_id: str, **fields) -> Optional[Ticket]:
        _reject_unknown(fields, UPDATABLE_TICKET_FIELDS, "ticket")
        with self.Session() as session:
            row = session.get(TicketRow, ticket_id)
            if not row:
                return None
            for key, value in fields.items():
                if key == "status":
                    value = TicketStatus(value).value
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.commit()
            return self._to_ticket(row)

    def add_ticket_message(
        self, ticket_id: str, sender_id: str, message: str, is_admin: bool = False
    ) -> TicketMessage:
        with self.Session() as session:
            if not session.get(TicketRow, ticket_id):
                raise NotFoundError("Ticket not found")
            row = TicketMessageRow(
                id=new_id(),
                ticket_id=ticket_id,
                sender_id=sender_id,
                message=message,
                is_admin=is_admin,
                created_at=utcnow(),
            )
            session.add(row)
            session.commit()
            return self._to_ticket_message(row)

    def list_ticket_messages(self, ticket_id: str) -> list[TicketMessage]:
        with self.Session() as session:
            rows = session.execute(
                select(TicketMessageRow)
                .where(TicketMessageRow.ticket_id == ticket_id)
                .order_by(TicketMessageRow.created_at.asc())
            ).scalars()
            return [self._to_ticket_message(row) for row in rows]

    # Backups
    def get_backup_settings(self) -> Optional[BackupSettings]:
        with self.Session() as session:
            row = session.get(BackupSettingsRow, BackupSettingsRow.SINGLETON_ID)
            if not row:
                return None
            return BackupSettings(
                api_key_configured=row.api_key_configured,
                frequency_hours=row.frequency_hours,
                enabled=row.enabled,
                last_backup_at=row.last_backup_at,
                updated_at=row.updated_at,
            )

    def update_backup_settings(self, **fields) -> BackupSettings:
        _reject_unknown(fields, UPDATABLE_BACKUP_SETTINGS_FIELDS, "backup settings")
        with self.Session() as session:
            row = session.get(BackupSettingsRow, BackupSettingsRow.SINGLETON_ID)
            if not row:
                defaults = BackupSettings()
                row = BackupSettingsRow(
                    id=BackupSettingsRow.SINGLETON_ID,
                    api_key_configured=defaults.api_key_configured,
                    frequency_hours=defaults.frequency_hours,
                    enabled=defaults.enabled,
                )
                session.add(row)
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()
            session.commit()
        return self.get_backup_settings()

    def list_location_backups(self, location_id: str) -> list[LocationBackup]:
        with self.Session() as session:
            rows = session.execute(
                select(LocationBackupRow)
                .where(LocationBackupRow.location_id == location_id)
                .order_by(LocationBackupRow.created_at.asc(), LocationBackupRow.seq.asc())
            ).scalars()
            return [self._to_location_backup(row) for row in rows]

    def add_location_backup(
        self, location_id: str, bin_id: str, created_at: Optional[datetime] = None
    ) -> LocationBackup:
        with self.Session() as session:
            # Tiebreak for snapshots stamped with the same created_at.
            seq = session.execute(
                select(func.coalesce(func.max(LocationBackupRow.seq), 0))
                .where(LocationBackupRow.location_id == location_id)
            ).scalar_one() + 1
            row = LocationBackupRow(
                id=new_id(),
                location_id=location_id,
                bin_id=bin_id,
                seq=seq,
                created_at=created_at or utcnow(),
            )
            session.add(row)
            session.commit()
            return self._to_location_backup(row)

    def delete_location_backup(self, backup_id: str) -> bool:
        with self.Session() as session:
            result = session.execute(
                delete(LocationBackupRow).where(LocationBackupRow.id == backup_id)
            )
            session.commit()
            return (result.rowcount or 0) > 0


Base = declarative_base()

MONEY = Numeric(10, 2, asdecimal=True)
WEIGHT = Numeric(12, 4, asdecimal=True)


class LocationRow(Base):
    __tablename__ = "locations"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=False)
    pricing_enabled = Column(Boolean, nullable=False, default=False)
    pricing_type = Column(String, nullable=False, default=PricingType.PER_POUND.value)
    per_pound_rate = Column(WEIGHT, nullable=True)
    is_suspended = Column(Boolean, nullable=False, default=False)
    created_at = Column(UtcDateTime, nullable=False)


class StorageLocationRow(Base):
    __tablename__ = "storage_locations"

    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, index=True)
    name = Column(Text, nullable=False)
    created_at = Column(UtcDateTime, nullable=False)


class PricingTierRow(Base):
    __tablename__ = "pricing_tiers"

    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, index=True)
    min_weight = Column(WEIGHT, nullable=False)
    max_weight = Column(WEIGHT, nullable=False)
    price = Column(MONEY, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(UtcDateTime, nullable=False)


class PackageRow(Base):
    __tablename__ = "packages"

    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, index=True)
    tracking_number = Column(Text, nullable=False)
    recipient_name = Column(Text, nullable=False)
    weight = Column(WEIGHT, nullable=False)
    storage_location_id = Column(String, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, index=True, default=PackageStatus.PENDING.value)
    picked_up_by_last_name = Column(Text, nullable=True)
    delivered_at = Column(UtcDateTime, nullable=True)
    created_at = Column(UtcDateTime, nullable=False)


class ArchivedPackageRow(Base):
    __tablename__ = "archived_packages"

    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, index=True)
    tracking_number = Column(Text, nullable=False)
    recipient_name = Column(Text, nullable=False)
    picked_up_by_last_name = Column(Text, nullable=True)
    delivered_at = Column(UtcDateTime, nullable=False)
    archived_at = Column(UtcDateTime, nullable=False)


class AppUserRow(Base):
    __tablename__ = "app_users"

    id = Column(String, primary_key=True)
    auth_user_id = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    role = Column(String, nullable=False, default=UserRole.EMPLOYEE.value)
    location_id = Column(String, nullable=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UtcDateTime, nullable=False)


class TicketRow(Base):
    __tablename__ = "tickets"

    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    subject = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=TicketStatus.OPEN.value)
    created_at = Column(UtcDateTime, nullable=False)
    updated_at = Column(UtcDateTime, nullable=False)
    resolved_at = Column(UtcDateTime, nullable=True)
    archived_bin_id = Column(String, nullable=True)


class TicketMessageRow(Base):
    __tablename__ = "ticket_messages"

    id = Column(String, primary_key=True)
    ticket_id = Column(String, nullable=False, index=True)
    sender_id = Column(String, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    message = Column(Text, nullable=False)
    created_at = Column(UtcDateTime, nullable=False)


class BackupSettingsRow(Base):
    __tablename__ = "backup_settings"

    SINGLETON_ID = "global"

    id = Column(String, primary_key=True)
    api_key_configured = Column(Boolean, nullable=False, default=False)
    frequency_hours = Column(Integer, nullable=False, default=24)
    enabled = Column(Boolean, nullable=False, default=False)
    last_backup_at = Column(UtcDateTime, nullable=True)
    updated_at = Column(UtcDateTime, nullable=True)


class LocationBackupRow(Base):
    __tablename__ = "location_backups"

    id = Column(String, primary_key=True)
    location_id = Column(String, nullable=False, index=True)
    bin_id = Column(Text, nullable=False)
    created_at = Column(UtcDateTime, nullable=False)
    seq = Column(Integer, nullable=False, default=0)
