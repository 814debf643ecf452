"""
HTTP routes for the parcel backend API.

Every handler wraps one service call. Service errors are mapped to status
codes by the exception handler registered in ``parcelvault.app``.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from parcelvault.backup import BackupRotationManager, BackupSettingsService
from parcelvault.config import get_settings
from parcelvault.dependencies import (
    Caller,
    get_backup_manager,
    get_backup_settings_service,
    get_lifecycle_manager,
    get_location_service,
    get_search_engine,
    get_ticket_service,
    get_user_service,
    require_admin,
    require_user,
)
from parcelvault.errors import PermissionDeniedError
from parcelvault.lifecycle import LifecycleManager
from parcelvault.locations import LocationService
from parcelvault.schemas import (
    ArchiveRunRequest,
    BackupRunRequest,
    BackupSettingsUpdateRequest,
    BackupToggleRequest,
    BulkUpdateRequest,
    DeliverRequest,
    LocationCreateRequest,
    LocationDeleteRequest,
    LocationUpdateRequest,
    PackageCreateRequest,
    PackageUpdateRequest,
    StorageLocationCreateRequest,
    TicketCreateRequest,
    TicketMessageRequest,
    TicketUpdateRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from parcelvault.search import SearchEngine
from parcelvault.serialization import to_camel_payload
from parcelvault.tickets import TicketService
from parcelvault.users import UserService

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_location_access(caller: Caller, location_id: str) -> None:
    if not caller.is_admin and caller.location_id != location_id:
        raise PermissionDeniedError("Not authorized for this location")


@router.get("/health")
def health():
    return {"status": "ok"}


# Locations


@router.get("/locations")
def list_locations(
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    return to_camel_payload(
        [locations.describe_location(loc) for loc in locations.list_locations()]
    )


@router.post("/locations", status_code=201)
def create_location(
    payload: LocationCreateRequest,
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    location = locations.create_location(
        payload.name,
        pricing_enabled=payload.pricing_enabled,
        pricing_type=payload.pricing_type,
        per_pound_rate=payload.per_pound_rate,
        tiers=payload.pricing_tiers,
    )
    return to_camel_payload(locations.describe_location(location))


@router.get("/locations/{location_id}")
def get_location(
    location_id: str,
    caller: Caller = Depends(require_user),
    locations: LocationService = Depends(get_location_service),
):
    _check_location_access(caller, location_id)
    return to_camel_payload(locations.describe_location(locations.get_location(location_id)))


@router.patch("/locations/{location_id}")
def update_location(
    location_id: str,
    payload: LocationUpdateRequest,
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    fields = payload.model_dump(exclude_unset=True)
    tiers = fields.pop("pricing_tiers", None)
    location = locations.update_location(
        location_id,
        tiers=tiers,
        **fields,
    )
    return to_camel_payload(locations.describe_location(location))


@router.post("/locations/{location_id}/suspend")
def suspend_location(
    location_id: str,
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    return to_camel_payload(locations.suspend_location(location_id).as_dict())


@router.post("/locations/{location_id}/unsuspend")
def unsuspend_location(
    location_id: str,
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    return to_camel_payload(locations.unsuspend_location(location_id).as_dict())


@router.delete("/locations/{location_id}")
def delete_location(
    location_id: str,
    payload: Optional[LocationDeleteRequest] = None,
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    confirm_name = payload.confirm_name if payload else None
    return to_camel_payload(locations.delete_location(location_id, confirm_name))


@router.get("/locations/{location_id}/stats")
def location_stats(
    location_id: str,
    caller: Caller = Depends(require_user),
    locations: LocationService = Depends(get_location_service),
):
    _check_location_access(caller, location_id)
    return to_camel_payload(locations.get_location_stats(location_id))


# Packages


@router.get("/locations/{location_id}/packages")
def list_packages(
    location_id: str,
    caller: Caller = Depends(require_user),
    search: SearchEngine = Depends(get_search_engine),
):
    _check_location_access(caller, location_id)
    return to_camel_payload([p.as_dict() for p in search.list_packages(location_id)])


@router.post("/locations/{location_id}/packages", status_code=201)
def create_package(
    location_id: str,
    payload: PackageCreateRequest,
    caller: Caller = Depends(require_user),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    _check_location_access(caller, location_id)
    package = lifecycle.create_package(
        location_id,
        payload.tracking_number,
        payload.recipient_name,
        payload.weight,
        storage_location_id=payload.storage_location_id,
        notes=payload.notes,
    )
    return to_camel_payload(package.as_dict())


@router.patch("/locations/{location_id}/packages/bulk")
def bulk_update_packages(
    location_id: str,
    payload: BulkUpdateRequest,
    caller: Caller = Depends(require_user),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    _check_location_access(caller, location_id)
    result = lifecycle.bulk_update(payload.package_ids, payload.updates, location_id=location_id)
    return to_camel_payload(result.as_dict())


@router.get("/locations/{location_id}/packages/archive/search")
def search_archived_packages(
    location_id: str,
    q: str = Query(default=""),
    caller: Caller = Depends(require_user),
    search: SearchEngine = Depends(get_search_engine),
):
    _check_location_access(caller, location_id)
    return to_camel_payload([a.as_dict() for a in search.search_archived(location_id, q)])


@router.patch("/locations/{location_id}/packages/{package_id}")
def update_package(
    location_id: str,
    package_id: str,
    payload: PackageUpdateRequest,
    caller: Caller = Depends(require_user),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    _check_location_access(caller, location_id)
    package = lifecycle.update_package(
        package_id, payload.model_dump(exclude_unset=True), location_id=location_id
    )
    return to_camel_payload(package.as_dict())


@router.post("/locations/{location_id}/packages/{package_id}/deliver")
def deliver_package(
    location_id: str,
    package_id: str,
    payload: DeliverRequest,
    caller: Caller = Depends(require_user),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    _check_location_access(caller, location_id)
    package = lifecycle.deliver_package(
        package_id, payload.picked_up_by_last_name, location_id=location_id
    )
    return to_camel_payload(package.as_dict())


@router.get("/locations/{location_id}/search/{query}")
def search_packages(
    location_id: str,
    query: str,
    caller: Caller = Depends(require_user),
    search: SearchEngine = Depends(get_search_engine),
):
    _check_location_access(caller, location_id)
    result = search.search(location_id, query)
    return to_camel_payload(result.as_dict()) if result else None


# Storage locations


@router.get("/locations/{location_id}/storage-locations")
def list_storage_locations(
    location_id: str,
    caller: Caller = Depends(require_user),
    locations: LocationService = Depends(get_location_service),
):
    _check_location_access(caller, location_id)
    locations.get_location(location_id)
    return to_camel_payload(
        [s.as_dict() for s in locations.db.list_storage_locations(location_id)]
    )


@router.post("/locations/{location_id}/storage-locations", status_code=201)
def create_storage_location(
    location_id: str,
    payload: StorageLocationCreateRequest,
    caller: Caller = Depends(require_user),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    _check_location_access(caller, location_id)
    return to_camel_payload(lifecycle.create_storage_location(location_id, payload.name).as_dict())


@router.delete("/locations/{location_id}/storage-locations/{storage_location_id}", status_code=204)
def delete_storage_location(
    location_id: str,
    storage_location_id: str,
    caller: Caller = Depends(require_user),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    _check_location_access(caller, location_id)
    lifecycle.delete_storage_location(storage_location_id, location_id=location_id)


# Archive


@router.post("/archive/run")
def run_archive(
    payload: Optional[ArchiveRunRequest] = None,
    caller: Caller = Depends(require_admin),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    months_old = payload.months_old if payload else None
    if months_old is None:
        months_old = get_settings().archive_months_default
    return to_camel_payload(lifecycle.archive_old_packages(months_old).as_dict())


# Backups


@router.get("/admin/backup/settings")
def get_backup_settings(
    caller: Caller = Depends(require_admin),
    service: BackupSettingsService = Depends(get_backup_settings_service),
):
    return to_camel_payload(service.get_settings().as_dict())


@router.patch("/admin/backup/settings")
def update_backup_settings(
    payload: BackupSettingsUpdateRequest,
    caller: Caller = Depends(require_admin),
    service: BackupSettingsService = Depends(get_backup_settings_service),
):
    settings = service.update_settings(
        frequency_hours=payload.frequency_hours, enabled=payload.enabled
    )
    return to_camel_payload(settings.as_dict())


@router.post("/admin/backup/validate-key")
def validate_backup_key(
    caller: Caller = Depends(require_admin),
    service: BackupSettingsService = Depends(get_backup_settings_service),
):
    settings = service.validate_key()
    return to_camel_payload({"valid": True, "settings": settings.as_dict()})


@router.post("/admin/backup/toggle")
def toggle_backups(
    payload: BackupToggleRequest,
    caller: Caller = Depends(require_admin),
    service: BackupSettingsService = Depends(get_backup_settings_service),
):
    return to_camel_payload(service.set_enabled(payload.enabled).as_dict())


@router.get("/admin/backup/locations")
def backup_locations(
    caller: Caller = Depends(require_admin),
    service: BackupSettingsService = Depends(get_backup_settings_service),
):
    return to_camel_payload(service.location_backup_status())


@router.post("/admin/backup/run")
def run_backup(
    payload: Optional[BackupRunRequest] = None,
    caller: Caller = Depends(require_admin),
    manager: BackupRotationManager = Depends(get_backup_manager),
):
    if payload and payload.location_id:
        return to_camel_payload(manager.run_backup_for_location(payload.location_id).as_dict())
    return to_camel_payload(manager.run_backup_for_all_locations().as_dict())


@router.get("/admin/stats")
def admin_stats(
    caller: Caller = Depends(require_admin),
    locations: LocationService = Depends(get_location_service),
):
    return to_camel_payload(locations.get_admin_stats())


# Users


@router.get("/admin/users")
def list_users(
    caller: Caller = Depends(require_admin),
    users: UserService = Depends(get_user_service),
):
    return to_camel_payload([u.as_dict() for u in users.list_users(caller.role)])


@router.post("/admin/users", status_code=201)
def create_user(
    payload: UserCreateRequest,
    caller: Caller = Depends(require_admin),
    users: UserService = Depends(get_user_service),
):
    user = users.create_user(
        caller.role,
        payload.email,
        role=payload.role,
        location_id=payload.location_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        auth_user_id=payload.auth_user_id,
    )
    return to_camel_payload(user.as_dict())


@router.patch("/admin/users/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdateRequest,
    caller: Caller = Depends(require_admin),
    users: UserService = Depends(get_user_service),
):
    user = users.update_user(caller.role, user_id, payload.model_dump(exclude_unset=True))
    return to_camel_payload(user.as_dict())


@router.delete("/admin/users/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    caller: Caller = Depends(require_admin),
    users: UserService = Depends(get_user_service),
):
    users.delete_user(caller.role, user_id)


@router.get("/locations/{location_id}/users")
def list_location_users(
    location_id: str,
    caller: Caller = Depends(require_user),
    users: UserService = Depends(get_user_service),
):
    _check_location_access(caller, location_id)
    return to_camel_payload(
        [u.as_dict() for u in users.list_users(caller.role, location_id=location_id)]
    )


@router.post("/locations/{location_id}/users", status_code=201)
def create_location_user(
    location_id: str,
    payload: UserCreateRequest,
    caller: Caller = Depends(require_user),
    users: UserService = Depends(get_user_service),
):
    _check_location_access(caller, location_id)
    user = users.create_user(
        caller.role,
        payload.email,
        role=payload.role,
        location_id=location_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        auth_user_id=payload.auth_user_id,
    )
    return to_camel_payload(user.as_dict())


@router.patch("/locations/{location_id}/users/{user_id}")
def update_location_user(
    location_id: str,
    user_id: str,
    payload: UserUpdateRequest,
    caller: Caller = Depends(require_user),
    users: UserService = Depends(get_user_service),
):
    _check_location_access(caller, location_id)
    user = users.update_user(
        caller.role, user_id, payload.model_dump(exclude_unset=True), location_id=location_id
    )
    return to_camel_payload(user.as_dict())


@router.delete("/locations/{location_id}/users/{user_id}", status_code=204)
def delete_location_user(
    location_id: str,
    user_id: str,
    caller: Caller = Depends(require_user),
    users: UserService = Depends(get_user_service),
):
    _check_location_access(caller, location_id)
    users.delete_user(caller.role, user_id, location_id=location_id)


# Tickets


@router.get("/tickets")
def list_tickets(
    caller: Caller = Depends(require_user),
    tickets: TicketService = Depends(get_ticket_service),
):
    user_id = None if caller.is_admin else caller.user_id
    return to_camel_payload([t.as_dict() for t in tickets.list_tickets(user_id=user_id)])


@router.post("/tickets", status_code=201)
def create_ticket(
    payload: TicketCreateRequest,
    caller: Caller = Depends(require_user),
    tickets: TicketService = Depends(get_ticket_service),
):
    ticket = tickets.create_ticket(
        caller.location_id, caller.user_id, payload.subject, payload.message
    )
    return to_camel_payload(
        tickets.get_ticket_with_messages(ticket.id, caller.user_id, caller.is_admin)
    )


@router.get("/tickets/{ticket_id}")
def get_ticket(
    ticket_id: str,
    caller: Caller = Depends(require_user),
    tickets: TicketService = Depends(get_ticket_service),
):
    return to_camel_payload(
        tickets.get_ticket_with_messages(ticket_id, caller.user_id, caller.is_admin)
    )


@router.post("/tickets/{ticket_id}/messages", status_code=201)
def add_ticket_message(
    ticket_id: str,
    payload: TicketMessageRequest,
    caller: Caller = Depends(require_user),
    tickets: TicketService = Depends(get_ticket_service),
):
    message = tickets.add_message(
        ticket_id, caller.user_id, payload.message, is_admin=caller.is_admin
    )
    return to_camel_payload(message.as_dict())


@router.patch("/admin/tickets/{ticket_id}")
def update_ticket(
    ticket_id: str,
    payload: TicketUpdateRequest,
    caller: Caller = Depends(require_admin),
    tickets: TicketService = Depends(get_ticket_service),
):
    return to_camel_payload(tickets.update_status(ticket_id, payload.status).as_dict())
