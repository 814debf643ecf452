"""
Staff accounts: admins manage everyone, managers manage the employees of
their own location.

Credentials are not stored here. The fronting proxy authenticates people
and passes ``auth_user_id`` along as ``X-User-Id``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from parcelvault.db import DbClient
from parcelvault.errors import NotFoundError, PermissionDeniedError, ValidationError
from parcelvault.records import AppUser
from parcelvault.types import UserRole

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("email", "first_name", "last_name", "role", "location_id", "is_active")


def _parse_role(value: Any) -> UserRole:
    try:
        return UserRole(value)
    except ValueError:
        raise ValidationError(f"Unknown role {value!r}") from None


def _parse_email(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Email is required")
    email = value.strip()
    if "@" not in email:
        raise ValidationError(f"Invalid email {email!r}")
    return email


def _optional_name(value: Any, label: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string")
    return value.strip() or None


class UserService:
    def __init__(self, db: DbClient):
        self.db = db

    @staticmethod
    def _require_manager(actor_role: Any) -> UserRole:
        role = _parse_role(actor_role)
        if role == UserRole.EMPLOYEE:
            raise PermissionDeniedError("Permission denied")
        return role

    def _require_location(self, location_id: Optional[str]) -> None:
        if location_id is not None and self.db.get_location(location_id) is None:
            raise NotFoundError("Location not found")

    def _require_unique(
        self, email: Optional[str], auth_user_id: Optional[str], user_id: Optional[str] = None
    ) -> None:
        if email is not None:
            existing = self.db.get_app_user_by_email(email)
            if existing is not None and existing.id != user_id:
                raise ValidationError("A user with this email already exists")
        if auth_user_id is not None:
            existing = self.db.get_app_user_by_auth_id(auth_user_id)
            if existing is not None and existing.id != user_id:
                raise ValidationError("A user with this login already exists")

    def get_user(self, user_id: str, location_id: Optional[str] = None) -> AppUser:
        """Fetch a user; with ``location_id`` the user must belong to it."""
        user = self.db.get_app_user(user_id)
        if user is None or (location_id is not None and user.location_id != location_id):
            raise NotFoundError("User not found")
        return user

    def list_users(self, actor_role: Any, location_id: Optional[str] = None) -> list[AppUser]:
        self._require_manager(actor_role)
        self._require_location(location_id)
        return self.db.list_app_users(location_id=location_id)

    def create_user(
        self,
        actor_role: Any,
        email: Any,
        *,
        role: Any = None,
        location_id: Optional[str] = None,
        first_name: Any = None,
        last_name: Any = None,
        auth_user_id: Optional[str] = None,
    ) -> AppUser:
        """
        Create a staff account.

        ``role`` defaults to employee. Managers may only create employees.
        ``auth_user_id`` defaults to the email address.
        """
        actor = self._require_manager(actor_role)
        new_role = _parse_role(role) if role else UserRole.EMPLOYEE
        if actor == UserRole.MANAGER and new_role != UserRole.EMPLOYEE:
            raise PermissionDeniedError("Managers can only create employees")

        email = _parse_email(email)
        auth_user_id = (auth_user_id or "").strip() or email.lower()
        first_name = _optional_name(first_name, "First name")
        last_name = _optional_name(last_name, "Last name")
        self._require_location(location_id)
        self._require_unique(email, auth_user_id)

        user = self.db.create_app_user(
            auth_user_id,
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=new_role,
            location_id=location_id,
            is_active=True,
        )
        logger.info("Created %s user %s at location %s", new_role.value, user.id, location_id)
        return user

    def update_user(
        self,
        actor_role: Any,
        user_id: str,
        updates: dict,
        location_id: Optional[str] = None,
    ) -> AppUser:
        """
        Apply ``updates`` to a user. Keys outside ``EDITABLE_FIELDS`` are
        rejected. With ``location_id`` the user must belong to that location.
        """
        actor = self._require_manager(actor_role)
        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update user fields: {sorted(unknown)}")
        current = self.get_user(user_id, location_id)

        changes: dict[str, Any] = {}
        for key, value in updates.items():
            if key == "email":
                changes[key] = _parse_email(value)
            elif key == "role":
                changes[key] = _parse_role(value)
            elif key == "is_active":
                if not isinstance(value, bool):
                    raise ValidationError("is_active must be a boolean")
                changes[key] = value
            elif key == "location_id":
                changes[key] = value or None
            else:
                changes[key] = _optional_name(value, key.replace("_", " ").capitalize())

        if actor == UserRole.MANAGER:
            if current.role != UserRole.EMPLOYEE:
                raise PermissionDeniedError("Managers can only manage employees")
            if changes.get("role", UserRole.EMPLOYEE) != UserRole.EMPLOYEE:
                raise PermissionDeniedError("Managers can only assign the employee role")
            if "location_id" in changes and changes["location_id"] != current.location_id:
                raise PermissionDeniedError("Only admins can move users between locations")

        self._require_location(changes.get("location_id"))
        self._require_unique(changes.get("email"), None, user_id=user_id)

        updated = self.db.update_app_user(user_id, **changes)
        if updated is None:
            raise NotFoundError("User not found")
        logger.info("Updated user %s: %s", user_id, sorted(changes))
        return updated

    def delete_user(
        self, actor_role: Any, user_id: str, location_id: Optional[str] = None
    ) -> None:
        actor = self._require_manager(actor_role)
        current = self.get_user(user_id, location_id)
        if actor == UserRole.MANAGER and current.role != UserRole.EMPLOYEE:
            raise PermissionDeniedError("Managers can only manage employees")
        if not self.db.delete_app_user(user_id):
            raise NotFoundError("User not found")
        logger.info("Deleted user %s", user_id)
