"""
Enumerations shared across the backend.
"""

from __future__ import annotations

from enum import Enum


class PricingType(str, Enum):
    PER_POUND = "per_pound"
    RANGE_BASED = "range_based"


class PackageStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    ARCHIVED = "archived"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    EMPLOYEE = "employee"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def is_final(self) -> bool:
        return self in (TicketStatus.RESOLVED, TicketStatus.CLOSED)


class OutcomeStatus(str, Enum):
    """Per-unit result of a multi-unit operation."""

    UPDATED = "updated"
    UNCHANGED = "unchanged"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    FAILED = "failed"
    CREATED = "created"
    SKIPPED = "skipped"
