"""SQLAlchemy ORM models for the Dreamie Exchange state database.

This module defines the trade request, encrypted chat message, moderation
log, report and ticket models, plus the boundary model for user profiles
owned by the external identity store. Uses SQLAlchemy 2.0 style with
Mapped and mapped_column.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def to_iso(moment: datetime) -> str:
    """Format a timestamp as a fixed-width UTC ISO8601 string.

    Fixed width (always with microseconds) keeps string comparison in SQL
    guards consistent with chronological order.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO8601 string written by to_iso (or a naive legacy value)."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return to_iso(datetime.now(UTC))


# Enums matching the database schema constraints


class TradeStatus(str, Enum):
    """Status values for trade requests.

    Lifecycle: open -> ongoing -> completed
               ongoing -> open (cancel / expire)
               open -> deleted (withdrawn by requester, row removed)
    """

    open = "open"
    ongoing = "ongoing"
    completed = "completed"
    cancelled = "cancelled"


class TradeStep(int, Enum):
    """Handoff sub-steps while a trade is ongoing."""

    accepted = 1
    boxed = 2
    gates_open = 3
    done = 4


class OfferKind(str, Enum):
    """What the requester offers in return."""

    bells = "bells"
    nmt = "nmt"
    none = "none"


class ModerationAction(str, Enum):
    """Moderation decisions recorded in the action log."""

    restrict = "restrict"
    unrestrict = "unrestrict"
    dismiss_report = "dismiss_report"
    ban = "ban"
    unban = "unban"
    warn = "warn"


class UserReportStatus(str, Enum):
    """Lifecycle: open -> dismissed | closed."""

    open = "open"
    dismissed = "dismissed"
    closed = "closed"


class TicketCategory(str, Enum):
    """Ticket categories; each has its own status set."""

    feedback = "feedback"
    help = "help"


class TicketStatus(str, Enum):
    """Union of all ticket statuses.

    Which of these a ticket may take depends on its category, see
    src.services.ticket_service.TICKET_TRANSITIONS.
    """

    open = "open"
    implementing = "implementing"
    implemented = "implemented"
    rejected = "rejected"
    resolved = "resolved"


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class UserProfile(Base):
    """Profile row from the external identity store.

    Only the columns the exchange reads or writes are modelled. List
    columns are JSON text (SQLite has no array type), exposed through
    *_list properties.

    Attributes:
        id: User id (opaque string from the identity provider).
        user_number: Public sequential user number.
        username: Optional display name.
        rank: Privilege rank; configured ranks grant full moderation rights.
        owned_items: JSON list of owned item names.
        wishlist: JSON list of wished-for item names.
        favourites: JSON list of favourite item names.
        verified_items: JSON list of items whose ownership was verified.
        last_seen_at: Heartbeat/keystroke timestamp used for presence.
        trade_restricted: Blocks creating and accepting trades.
        banned: Blocks all trading and messaging.
    """

    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=generate_uuid)
    user_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    owned_items: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    wishlist: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    favourites: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    verified_items: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_seen_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    trade_restricted: Mapped[bool] = mapped_column(
        nullable=False, default=False, server_default="0"
    )
    banned: Mapped[bool] = mapped_column(nullable=False, default=False, server_default="0")
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    @property
    def owned_list(self) -> list[str]:
        """Parse owned_items JSON into a Python list."""
        return json.loads(self.owned_items or "[]")

    @owned_list.setter
    def owned_list(self, value: list[str]) -> None:
        self.owned_items = json.dumps(value)

    @property
    def wishlist_list(self) -> list[str]:
        return json.loads(self.wishlist or "[]")

    @wishlist_list.setter
    def wishlist_list(self, value: list[str]) -> None:
        self.wishlist = json.dumps(value)

    @property
    def favourites_list(self) -> list[str]:
        return json.loads(self.favourites or "[]")

    @favourites_list.setter
    def favourites_list(self, value: list[str]) -> None:
        self.favourites = json.dumps(value)

    @property
    def verified_list(self) -> list[str]:
        return json.loads(self.verified_items or "[]")

    @verified_list.setter
    def verified_list(self, value: list[str]) -> None:
        self.verified_items = json.dumps(value)

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id!r}, user_number={self.user_number!r})>"


class TradeRequest(Base):
    """A request for an item, and the handoff state once accepted.

    Attributes:
        id: UUID primary key
        requester_id: User who wants the item (the tradee)
        acceptor_id: User who owns the item and accepted (the trader);
            null while open, and on legacy rows accepted before the column existed
        item_name: Catalog key of the traded villager
        offer_text: Free-form proposal from the requester
        offer_kind: bells, nmt or none
        offer_amount: Offered quantity (null when offer_kind is none)
        status: open, ongoing, completed or cancelled
        step: Handoff sub-step 1..3 while ongoing, 4 once completed
        plot_available: Tradee confirmed a free plot (step 2)
        transfer_code: Out-of-band rendezvous code, set at the 2 -> 3 transition
        completed_at: ISO8601 completion timestamp
        reported: Completed trade flagged by a party
        report_reason: Why it was reported
        reported_by: Reporting user id
        trader_verified: Result of the optional ownership verification
        created_at: ISO8601 creation timestamp
        updated_at: ISO8601 timestamp of the last transition (step timer origin)
    """

    __tablename__ = "trade_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False)
    acceptor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    item_name: Mapped[str] = mapped_column(String(100), nullable=False)
    offer_text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    offer_kind: Mapped[str] = mapped_column(
        String(10), nullable=False, default=OfferKind.none.value
    )
    offer_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TradeStatus.open.value
    )
    step: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    plot_available: Mapped[bool] = mapped_column(
        nullable=False, default=False, server_default="0"
    )
    transfer_code: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    reported: Mapped[bool] = mapped_column(nullable=False, default=False, server_default="0")
    report_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reported_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    trader_verified: Mapped[bool | None] = mapped_column(nullable=True)

    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("idx_trade_requests_requester_status", "requester_id", "status"),
        Index("idx_trade_requests_acceptor_status", "acceptor_id", "status"),
        Index("idx_trade_requests_item_status", "item_name", "status"),
    )

    @property
    def step_started_at(self) -> str:
        """Origin of the step timers: last update, else creation."""
        return self.updated_at or self.created_at

    def __repr__(self) -> str:
        return (
            f"<TradeRequest(id={self.id!r}, item={self.item_name!r}, "
            f"status={self.status!r}, step={self.step})>"
        )


class Message(Base):
    """Encrypted chat message.

    Plaintext is never stored; ciphertext and iv are only meaningful
    together with both participant ids (see src.services.message_crypto).

    Attributes:
        id: UUID primary key
        conversation_id: Grouping key (friend pair, trade:<id>, ticket:<id>)
        sender_id: Author user id
        receiver_id: Counterpart user id ("admin" for ticket chats)
        ciphertext: Base64 AES-GCM ciphertext including the auth tag
        iv: Base64 96-bit nonce
        read_at: When the receiver marked it read
        report_flagged: Included as evidence in a message report
        report_reason: Reason given by the reporter
        reported_by: Reporting user id
        created_at: ISO8601 creation timestamp (ordering key)
    """

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    conversation_id: Mapped[str] = mapped_column(String(100), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ciphertext: Mapped[str] = mapped_column(Text, nullable=False)
    iv: Mapped[str] = mapped_column(String(32), nullable=False)
    read_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    report_flagged: Mapped[bool] = mapped_column(
        nullable=False, default=False, server_default="0"
    )
    report_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reported_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Message(id={self.id!r}, conversation={self.conversation_id!r})>"


class ModerationLogEntry(Base):
    """Append-only record of a moderation decision.

    Attributes:
        id: UUID primary key
        moderator_id: Privileged user who acted
        target_user_id: Affected user, if any
        action: ModerationAction value
        title: Short human-readable summary
        reason: Optional free-text justification
        meta_json: JSON context (e.g. related trade id)
        created_at: ISO8601 timestamp
    """

    __tablename__ = "moderation_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    moderator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)

    __table_args__ = (
        Index("idx_moderation_log_created_at", "created_at"),
        Index("idx_moderation_log_target", "target_user_id"),
    )

    @property
    def meta(self) -> dict:
        return json.loads(self.meta_json or "{}")

    def __repr__(self) -> str:
        return f"<ModerationLogEntry(action={self.action!r}, target={self.target_user_id!r})>"


class UserReport(Base):
    """Conversation-level report against another user."""

    __tablename__ = "user_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    reporter_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reported_id: Mapped[str] = mapped_column(String(64), nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserReportStatus.open.value
    )
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<UserReport(id={self.id!r}, status={self.status!r})>"


class Ticket(Base):
    """Feedback or help ticket raised by a user.

    The conversation with moderators lives in the messages table under
    conversation id "ticket:<id>".
    """

    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    topic: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TicketStatus.open.value
    )
    created_at: Mapped[str] = mapped_column(String(50), nullable=False, default=utc_now_iso)
    updated_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("user_profiles.id"), nullable=True
    )

    __table_args__ = (Index("idx_tickets_user", "user_id"),)

    @property
    def conversation_id(self) -> str:
        return f"ticket:{self.id}"

    def __repr__(self) -> str:
        return f"<Ticket(id={self.id!r}, category={self.category!r}, status={self.status!r})>"
