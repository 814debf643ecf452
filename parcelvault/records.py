"""
Plain record types returned by the database clients.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from parcelvault.types import PackageStatus, PricingType, TicketStatus, UserRole


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Location:
    id: str
    name: str
    pricing_enabled: bool = False
    pricing_type: PricingType = PricingType.PER_POUND
    per_pound_rate: Optional[Decimal] = None
    is_suspended: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class PricingTier:
    id: str
    location_id: str
    min_weight: Decimal
    max_weight: Decimal
    price: Decimal
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class StorageLocation:
    id: str
    location_id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class Package:
    """
    A live package. Status is the source of truth; ``delivered_at`` is set
    exactly when the status is DELIVERED.
    """

    id: str
    location_id: str
    tracking_number: str
    recipient_name: str
    weight: Decimal
    storage_location_id: Optional[str] = None
    notes: Optional[str] = None
    status: PackageStatus = PackageStatus.PENDING
    picked_up_by_last_name: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.status = PackageStatus(self.status)
        if self.status == PackageStatus.ARCHIVED:
            raise ValueError("Archived packages are stored as ArchivedPackage")
        if self.status == PackageStatus.DELIVERED and self.delivered_at is None:
            raise ValueError(f"Delivered package {self.id} has no delivered_at")
        if self.status == PackageStatus.PENDING and self.delivered_at is not None:
            raise ValueError(f"Pending package {self.id} has a delivered_at")

    @property
    def is_delivered(self) -> bool:
        return self.status == PackageStatus.DELIVERED

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload["is_delivered"] = self.is_delivered
        return payload


@dataclass
class ArchivedPackage:
    id: str
    location_id: str
    tracking_number: str
    recipient_name: str
    delivered_at: datetime
    picked_up_by_last_name: Optional[str] = None
    archived_at: datetime = field(default_factory=utcnow)

    @property
    def status(self) -> PackageStatus:
        return PackageStatus.ARCHIVED

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class AppUser:
    id: str
    auth_user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: UserRole = UserRole.EMPLOYEE
    location_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class Ticket:
    id: str
    location_id: str
    user_id: str
    subject: str
    status: TicketStatus = TicketStatus.OPEN
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    archived_bin_id: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class TicketMessage:
    id: str
    ticket_id: str
    sender_id: str
    message: str
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class BackupSettings:
    api_key_configured: bool = False
    frequency_hours: int = 24
    enabled: bool = False
    last_backup_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class LocationBackup:
    id: str
    location_id: str
    bin_id: str
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict:
        return asdict(self)
