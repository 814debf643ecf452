"""
Pydantic request schemas for the FastAPI backend. JSON bodies use
camelCase; snake_case names are accepted too.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PricingTierPayload(ApiModel):
    min_weight: Any
    max_weight: Any
    price: Any


class LocationCreateRequest(ApiModel):
    name: str
    pricing_enabled: bool = False
    pricing_type: str = "per_pound"
    per_pound_rate: Optional[Any] = None
    pricing_tiers: list[PricingTierPayload] = Field(default_factory=list)


class LocationUpdateRequest(ApiModel):
    name: Optional[str] = None
    pricing_enabled: Optional[bool] = None
    pricing_type: Optional[str] = None
    per_pound_rate: Optional[Any] = None
    pricing_tiers: Optional[list[PricingTierPayload]] = None


class LocationDeleteRequest(ApiModel):
    confirm_name: Optional[str] = None


class PackageCreateRequest(ApiModel):
    tracking_number: str
    recipient_name: str
    weight: Decimal
    storage_location_id: Optional[str] = None
    notes: Optional[str] = None


class PackageUpdateRequest(ApiModel):
    tracking_number: Optional[str] = None
    recipient_name: Optional[str] = None
    weight: Optional[Decimal] = None
    storage_location_id: Optional[str] = None
    notes: Optional[str] = None


class DeliverRequest(ApiModel):
    picked_up_by_last_name: str


class BulkUpdateRequest(ApiModel):
    package_ids: list[str]
    # Kept as a raw mapping: unknown keys are ignored downstream, not rejected.
    updates: dict


class StorageLocationCreateRequest(ApiModel):
    name: str


class ArchiveRunRequest(ApiModel):
    months_old: Optional[int] = None


class BackupSettingsUpdateRequest(ApiModel):
    frequency_hours: Optional[int] = None
    enabled: Optional[bool] = None


class BackupToggleRequest(ApiModel):
    enabled: bool


class BackupRunRequest(ApiModel):
    location_id: Optional[str] = None


class TicketCreateRequest(ApiModel):
    subject: str
    message: str


class TicketMessageRequest(ApiModel):
    message: str


class TicketUpdateRequest(ApiModel):
    status: str


class UserCreateRequest(ApiModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    location_id: Optional[str] = None
    auth_user_id: Optional[str] = None


class UserUpdateRequest(ApiModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[str] = None
    location_id: Optional[str] = None
    is_active: Optional[bool] = None
