"""
Support tickets between location staff and admins.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from parcelvault.backup import BackupRotationManager
from parcelvault.db import DbClient
from parcelvault.errors import NotFoundError, PermissionDeniedError, ValidationError
from parcelvault.records import Ticket, TicketMessage, utcnow
from parcelvault.types import TicketStatus

logger = logging.getLogger(__name__)


def _require_text(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


class TicketService:
    def __init__(
        self,
        db: DbClient,
        backup_manager: Optional[BackupRotationManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.backup_manager = backup_manager
        self.clock = clock

    def create_ticket(
        self, location_id: Optional[str], user_id: str, subject: str, message: str
    ) -> Ticket:
        subject = _require_text(subject, "Subject")
        message = _require_text(message, "Message")
        if not location_id:
            raise ValidationError("User must be assigned to a location to create tickets")
        if self.db.get_location(location_id) is None:
            raise NotFoundError("Location not found")

        ticket = self.db.create_ticket(location_id, user_id, subject)
        self.db.add_ticket_message(ticket.id, user_id, message, is_admin=False)
        logger.info("Ticket %s opened by %s", ticket.id, user_id)
        return ticket

    def get_ticket(
        self, ticket_id: str, requester_id: Optional[str] = None, is_admin: bool = False
    ) -> Ticket:
        """Fetch a ticket; non-admins only see their own."""
        ticket = self.db.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket not found")
        if not is_admin and ticket.user_id != requester_id:
            raise PermissionDeniedError("Not authorized to view this ticket")
        return ticket

    def get_ticket_with_messages(
        self, ticket_id: str, requester_id: Optional[str] = None, is_admin: bool = False
    ) -> dict:
        ticket = self.get_ticket(ticket_id, requester_id, is_admin)
        payload = ticket.as_dict()
        payload["messages"] = [m.as_dict() for m in self.db.list_ticket_messages(ticket.id)]
        return payload

    def list_tickets(
        self, location_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> list[Ticket]:
        return self.db.list_tickets(location_id=location_id, user_id=user_id)

    def add_message(
        self, ticket_id: str, sender_id: str, message: str, is_admin: bool = False
    ) -> TicketMessage:
        message = _require_text(message, "Message")
        ticket = self.get_ticket(ticket_id, sender_id, is_admin)
        if not is_admin and ticket.status == TicketStatus.CLOSED:
            raise ValidationError("Cannot add messages to a closed ticket")

        created = self.db.add_ticket_message(ticket_id, sender_id, message, is_admin=is_admin)
        if is_admin and ticket.status == TicketStatus.OPEN:
            self.db.update_ticket(ticket_id, status=TicketStatus.IN_PROGRESS)
        return created

    def update_status(self, ticket_id: str, status: Any) -> Ticket:
        """
        Change a ticket's status. Resolving or closing an unresolved ticket
        stamps ``resolved_at`` and attempts a snapshot of the conversation;
        the status change stands even if the snapshot fails.
        """
        try:
            new_status = TicketStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown ticket status {status!r}") from None
        ticket = self.db.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket not found")

        if not new_status.is_final or ticket.status.is_final:
            return self.db.update_ticket(ticket_id, status=new_status)

        ticket = self.db.update_ticket(ticket_id, status=new_status, resolved_at=self.clock())
        if self.backup_manager is not None:
            bin_id = self.backup_manager.archive_ticket(
                ticket, self.db.list_ticket_messages(ticket_id)
            )
            if bin_id:
                ticket = self.db.update_ticket(ticket_id, archived_bin_id=bin_id)
        logger.info("Ticket %s marked %s", ticket_id, new_status.value)
        return ticket
