"""
Dependency wiring for the FastAPI app and the operator scripts.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from parcelvault.backup import BackupRotationManager, BackupSettingsService
from parcelvault.blobstore import BlobStore, InMemoryBlobStore, JsonBinBlobStore, S3BlobStore
from parcelvault.config import get_settings
from parcelvault.db import DbClient, InMemoryDbClient, SqlDbClient
from parcelvault.errors import PermissionDeniedError, ValidationError
from parcelvault.lifecycle import LifecycleManager
from parcelvault.locations import LocationService
from parcelvault.locks import BackupLock, InMemoryBackupLock, RedisBackupLock
from parcelvault.scheduler import BackupScheduler
from parcelvault.search import SearchEngine
from parcelvault.tickets import TicketService
from parcelvault.types import UserRole
from parcelvault.users import UserService

_db_client: DbClient | None = None
_blob_store: BlobStore | None = None
_backup_lock: BackupLock | None = None
_backup_manager: BackupRotationManager | None = None
_backup_scheduler: BackupScheduler | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = SqlDbClient(settings.database_url)
    return _db_client


def get_blob_store() -> BlobStore:
    global _blob_store
    if _blob_store:
        return _blob_store

    settings = get_settings()
    if settings.use_in_memory_backends or settings.blob_backend == "memory":
        _blob_store = InMemoryBlobStore()
    elif settings.blob_backend == "s3":
        _blob_store = S3BlobStore(
            bucket=settings.s3_bucket or "",
            region=settings.s3_region or "",
            endpoint=settings.s3_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            prefix=settings.s3_prefix,
        )
    else:
        _blob_store = JsonBinBlobStore(
            api_key=settings.jsonbin_api_key,
            base_url=settings.jsonbin_base_url,
            timeout=settings.blob_timeout_seconds,
            max_retries=settings.blob_max_retries,
            backoff_seconds=settings.blob_backoff_seconds,
        )
    return _blob_store


def get_backup_lock() -> BackupLock:
    global _backup_lock
    if _backup_lock:
        return _backup_lock

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _backup_lock = RedisBackupLock(
            url=settings.redis_url,
            key_prefix=settings.redis_lock_prefix,
            ttl_seconds=settings.backup_lock_ttl_seconds,
        )
    else:
        _backup_lock = InMemoryBackupLock()
    return _backup_lock


def get_backup_manager() -> BackupRotationManager:
    global _backup_manager
    if _backup_manager:
        return _backup_manager
    _backup_manager = BackupRotationManager(
        get_db_client(),
        get_blob_store(),
        lock=get_backup_lock(),
        retention=get_settings().backup_retention,
    )
    return _backup_manager


def get_backup_scheduler() -> BackupScheduler:
    """
    Return the process-wide scheduler; request handlers and the lifespan
    hook must share one timer.
    """
    global _backup_scheduler
    if _backup_scheduler:
        return _backup_scheduler
    _backup_scheduler = BackupScheduler(get_backup_manager())
    return _backup_scheduler


def shutdown_backup_scheduler() -> None:
    if _backup_scheduler is not None:
        _backup_scheduler.shutdown(wait=False)


def get_backup_settings_service() -> BackupSettingsService:
    return BackupSettingsService(get_db_client(), get_blob_store(), get_backup_scheduler())


def get_search_engine() -> SearchEngine:
    return SearchEngine(get_db_client(), get_settings().max_recipient_summaries)


def get_lifecycle_manager() -> LifecycleManager:
    return LifecycleManager(get_db_client())


def get_location_service() -> LocationService:
    return LocationService(get_db_client(), get_backup_manager())


def get_ticket_service() -> TicketService:
    return TicketService(get_db_client(), get_backup_manager())


def get_user_service() -> UserService:
    return UserService(get_db_client())


def reset_dependencies() -> None:
    """Drop every singleton (used by tests and after settings change)."""
    global _db_client, _blob_store, _backup_lock, _backup_manager, _backup_scheduler
    shutdown_backup_scheduler()
    _db_client = None
    _blob_store = None
    _backup_lock = None
    _backup_manager = None
    _backup_scheduler = None


@dataclass
class Caller:
    """Identity passed in by the fronting auth proxy. Not verified here."""

    user_id: Optional[str]
    role: UserRole
    location_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


def get_caller(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_location_id: Optional[str] = Header(default=None),
) -> Caller:
    try:
        role = UserRole(x_user_role or UserRole.EMPLOYEE)
    except ValueError:
        raise ValidationError(f"Unknown role {x_user_role!r}") from None
    return Caller(user_id=x_user_id, role=role, location_id=x_location_id)


def require_user(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.user_id:
        raise PermissionDeniedError("Not authenticated")
    return caller


def require_admin(caller: Caller = Depends(require_user)) -> Caller:
    if not caller.is_admin:
        raise PermissionDeniedError("Admin access required")
    return caller
