"""Feedback and help tickets with per-category status workflows.

Each category has its own closed status set; a status from the other
category is rejected. The conversation with moderators lives in the
messages table under "ticket:<id>" with the counterpart ADMIN_PARTY_ID.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.db.models import Ticket, TicketCategory, TicketStatus, to_iso
from src.errors.domain import ConflictError, NotFoundError, ValidationError
from src.services.change_feed import change_feed, user_topic
from src.services.chat_service import ADMIN_PARTY_ID, ChatService
from src.services.moderation_service import ModerationService
from src.utils.text import MAX_MESSAGE_LENGTH, require_text

logger = logging.getLogger(__name__)

MAX_TOPIC_LENGTH = 100

# Valid status transitions per ticket category
TICKET_TRANSITIONS: dict[TicketCategory, dict[TicketStatus, list[TicketStatus]]] = {
    TicketCategory.feedback: {
        TicketStatus.open: [
            TicketStatus.implementing,
            TicketStatus.implemented,
            TicketStatus.rejected,
        ],
        TicketStatus.implementing: [TicketStatus.implemented, TicketStatus.rejected],
        TicketStatus.implemented: [],  # terminal
        TicketStatus.rejected: [],  # terminal
    },
    TicketCategory.help: {
        TicketStatus.open: [TicketStatus.resolved],
        TicketStatus.resolved: [],  # terminal
    },
}


def allowed_statuses(category: TicketCategory) -> list[TicketStatus]:
    """All statuses a ticket of this category can ever hold."""
    return list(TICKET_TRANSITIONS[category])


def can_transition(
    category: TicketCategory, current: TicketStatus, target: TicketStatus
) -> bool:
    return target in TICKET_TRANSITIONS[category].get(current, [])


class TicketService:
    """Ticket creation, listing and moderator status changes."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_ticket(self, ticket_id: str) -> Ticket:
        ticket = self.db.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket", ticket_id)
        return ticket

    def create_ticket(
        self,
        user_id: str,
        category: TicketCategory | str,
        topic: str,
        message: str,
        now: datetime | None = None,
    ) -> Ticket:
        """Open a ticket and post its first message to the moderators.

        Args:
            user_id: Ticket owner.
            category: feedback or help.
            topic: Short subject line.
            message: Opening message, stored encrypted for (user, admin).
            now: Creation time (defaults to the current time).

        Returns:
            The created Ticket in status open.

        Raises:
            ValidationError: Unknown category, empty topic or message.
        """
        try:
            category = TicketCategory(category)
        except ValueError:
            raise ValidationError(f"Unknown ticket category '{category}'") from None
        topic = require_text(topic, "Topic", MAX_TOPIC_LENGTH)
        message = require_text(message, "Message", MAX_MESSAGE_LENGTH)

        now = now or datetime.now(UTC)
        stamp = to_iso(now)
        ticket = Ticket(
            user_id=user_id,
            category=category.value,
            topic=topic,
            status=TicketStatus.open.value,
            created_at=stamp,
            updated_at=stamp,
        )
        self.db.add(ticket)
        self.db.commit()
        self.db.refresh(ticket)

        chat = ChatService(self.db).open_conversation(
            ticket.conversation_id, user_id, ADMIN_PARTY_ID
        )
        chat.send(message, now=now)
        logger.info("Ticket %s (%s) opened by %s", ticket.id, category.value, user_id)
        return ticket

    def list_tickets(
        self,
        user_id: str | None = None,
        category: TicketCategory | None = None,
        status: TicketStatus | None = None,
    ) -> list[Ticket]:
        """List tickets, newest first, optionally filtered by owner, category and status."""
        stmt = select(Ticket).order_by(Ticket.created_at.desc())
        if user_id is not None:
            stmt = stmt.where(Ticket.user_id == user_id)
        if category is not None:
            stmt = stmt.where(Ticket.category == category.value)
        if status is not None:
            stmt = stmt.where(Ticket.status == status.value)
        return list(self.db.execute(stmt).scalars().all())

    def set_ticket_status(
        self,
        ticket_id: str,
        moderator_id: str,
        status: TicketStatus | str,
        now: datetime | None = None,
    ) -> Ticket:
        """Move a ticket along its category's workflow.

        Args:
            ticket_id: The ticket.
            moderator_id: Privileged user making the change.
            status: Target status; must be legal for the category and the
                current status.
            now: Change time (defaults to the current time).

        Raises:
            AuthorizationError: moderator_id is not privileged.
            ValidationError: status is not legal for this ticket.
            ConflictError: The ticket changed status concurrently.
        """
        ModerationService(self.db).require_privileged(moderator_id)
        ticket = self.get_ticket(ticket_id)
        category = TicketCategory(ticket.category)
        current = TicketStatus(ticket.status)
        try:
            target = TicketStatus(status)
        except ValueError:
            target = None
        if target is None or not can_transition(category, current, target):
            raise ValidationError.from_code(
                "E-2004",
                status=status.value if isinstance(status, TicketStatus) else status,
                target=f"{category.value} ticket",
                current=current.value,
            )

        terminal = not TICKET_TRANSITIONS[category][target]
        result = self.db.execute(
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == current.value)
            .values(
                status=target.value,
                updated_at=to_iso(now or datetime.now(UTC)),
                resolved_by=moderator_id if terminal else None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError.from_code("E-1005", target=f"ticket {ticket_id}")
        self.db.commit()
        self.db.refresh(ticket)
        logger.info("Ticket %s set to %s by %s", ticket_id, target.value, moderator_id)
        change_feed.publish(
            user_topic(ticket.user_id),
            "ticket_changed",
            {"ticket_id": ticket_id, "status": ticket.status},
        )
        return ticket
