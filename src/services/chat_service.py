"""Encrypted conversations for direct, trade and ticket chats.

A conversation is a conversation_id plus the two participant ids; the id
pair alone determines the key (see src.services.message_crypto). Trade chats
use "trade:<trade_id>" between requester and acceptor. Ticket chats use
"ticket:<ticket_id>" with the fixed counterpart ADMIN_PARTY_ID so that any
moderator can read and answer them.

Example:
    chat = ChatService(db).open_conversation("trade:abc", "u1", "u2")
    chat.send("Gates are open!")
    for entry in chat.history():
        print(entry.sender_id, entry.text)
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from src.db.models import Message, Ticket, UserReport, to_iso
from src.errors.domain import AuthorizationError, ConflictError, NotFoundError, ValidationError
from src.services.change_feed import change_feed, conversation_topic, user_topic
from src.services.message_crypto import decrypt_message, encrypt_message
from src.services.profile_service import ProfileService
from src.services.role_resolver import TradeRole
from src.services.trade_service import TradeService
from src.utils.text import MAX_MESSAGE_LENGTH, MAX_REASON_LENGTH, require_text

logger = logging.getLogger(__name__)

ADMIN_PARTY_ID = "admin"
# A message report flags the target and this many messages before it
REPORT_CONTEXT_SIZE = 4


def trade_conversation_id(trade_id: str) -> str:
    return f"trade:{trade_id}"


def ticket_conversation_id(ticket_id: str) -> str:
    return f"ticket:{ticket_id}"


def direct_conversation_id(id_a: str, id_b: str) -> str:
    """Stable id for a friend chat, independent of who opens it."""
    first, second = sorted((id_a, id_b))
    return f"direct:{first}:{second}"


@dataclass(frozen=True)
class ChatEntry:
    """Decrypted view of one stored message."""

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at: str
    read_at: str | None
    report_flagged: bool


class Conversation:
    """One participant's handle on a conversation.

    Sends are encrypted for (self_id, other_id); history decrypts each row
    with its own sender and receiver ids and degrades undecryptable rows to
    the sentinel text. A read-only handle (a moderator reviewing a trade
    chat) can read history but refuses every write.
    """

    def __init__(
        self,
        db: Session,
        conversation_id: str,
        self_id: str,
        other_id: str,
        read_only: bool = False,
    ) -> None:
        self.db = db
        self.conversation_id = conversation_id
        self.self_id = self_id
        self.other_id = other_id
        self.read_only = read_only
        self.profiles = ProfileService(db)

    def _require_writable(self, action: str) -> None:
        if self.read_only:
            raise AuthorizationError.from_code(
                "E-5001", actor_id=self.self_id, action=f"{action} in {self.conversation_id}"
            )

    def _to_entry(self, message: Message) -> ChatEntry:
        return ChatEntry(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            text=decrypt_message(
                message.ciphertext, message.iv, message.sender_id, message.receiver_id
            ),
            created_at=message.created_at,
            read_at=message.read_at,
            report_flagged=bool(message.report_flagged),
        )

    def send(self, text: str, now: datetime | None = None) -> ChatEntry:
        """Encrypt and store a message from self to other.

        Args:
            text: Plaintext, 1-2000 characters after stripping.
            now: Creation time (defaults to the current time).

        Returns:
            The stored message as a ChatEntry.

        Raises:
            ValidationError: Empty or oversized text.
            AuthorizationError: The sender is banned, or the handle is read-only.
        """
        self._require_writable("send messages")
        text = require_text(text, "Message", MAX_MESSAGE_LENGTH)
        if self.self_id != ADMIN_PARTY_ID and self.profiles.is_banned(self.self_id):
            raise AuthorizationError.from_code(
                "E-5003", actor_id=self.self_id, action="sending messages"
            )

        envelope = encrypt_message(text, self.self_id, self.other_id)
        message = Message(
            conversation_id=self.conversation_id,
            sender_id=self.self_id,
            receiver_id=self.other_id,
            ciphertext=envelope.ciphertext,
            iv=envelope.iv,
            created_at=to_iso(now or datetime.now(UTC)),
        )
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)

        data = {"conversation_id": self.conversation_id, "message_id": message.id}
        change_feed.publish(conversation_topic(self.conversation_id), "message_created", data)
        change_feed.publish(user_topic(self.other_id), "message_created", data)
        return ChatEntry(
            id=message.id,
            conversation_id=message.conversation_id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            text=text,
            created_at=message.created_at,
            read_at=None,
            report_flagged=False,
        )

    def history(self, limit: int | None = None) -> list[ChatEntry]:
        """Messages in creation order, decrypted.

        Args:
            limit: When set, only the most recent N messages (still ascending).
        """
        stmt = select(Message).where(Message.conversation_id == self.conversation_id)
        if limit is not None:
            stmt = stmt.order_by(Message.created_at.desc(), Message.id.desc()).limit(limit)
            rows = list(reversed(self.db.execute(stmt).scalars().all()))
        else:
            stmt = stmt.order_by(Message.created_at.asc(), Message.id.asc())
            rows = list(self.db.execute(stmt).scalars().all())
        return [self._to_entry(m) for m in rows]

    def mark_read(self, message_ids: list[str] | None = None, now: datetime | None = None) -> int:
        """Set read_at on unread messages addressed to self.

        Args:
            message_ids: Restrict to these ids; None marks everything unread.
            now: Read time (defaults to the current time).

        Returns:
            Number of messages marked.
        """
        self._require_writable("mark messages read")
        stmt = update(Message).where(
            Message.conversation_id == self.conversation_id,
            Message.receiver_id == self.self_id,
            Message.read_at.is_(None),
        )
        if message_ids is not None:
            if not message_ids:
                return 0
            stmt = stmt.where(Message.id.in_(message_ids))
        result = self.db.execute(
            stmt.values(read_at=to_iso(now or datetime.now(UTC))).execution_options(
                synchronize_session=False
            )
        )
        self.db.commit()
        marked = result.rowcount or 0
        if marked:
            change_feed.publish(
                conversation_topic(self.conversation_id),
                "messages_read",
                {"conversation_id": self.conversation_id, "reader_id": self.self_id},
            )
        return marked

    def unread_count(self) -> int:
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == self.conversation_id,
            Message.receiver_id == self.self_id,
            Message.read_at.is_(None),
        )
        return self.db.execute(stmt).scalar_one()

    def report_messages(self, around_id: str, reason: str) -> list[str]:
        """Flag a message and the REPORT_CONTEXT_SIZE messages before it.

        Args:
            around_id: The offending message.
            reason: Why it is reported (1-500 characters).

        Returns:
            Ids of the flagged messages, oldest first.

        Raises:
            ValidationError: Empty or oversized reason.
            NotFoundError: Unknown message.
            ConflictError: The message is in another conversation.
        """
        self._require_writable("report messages")
        reason = require_text(reason, "Reason", MAX_REASON_LENGTH)
        target = self.db.get(Message, around_id)
        if target is None:
            raise NotFoundError("Message", around_id)
        if target.conversation_id != self.conversation_id:
            raise ConflictError.from_code(
                "E-3001", message_id=around_id, conversation_id=self.conversation_id
            )

        preceding = (
            self.db.execute(
                select(Message.id)
                .where(
                    Message.conversation_id == self.conversation_id,
                    or_(
                        Message.created_at < target.created_at,
                        and_(
                            Message.created_at == target.created_at,
                            Message.id < target.id,
                        ),
                    ),
                )
                .order_by(Message.created_at.desc(), Message.id.desc())
                .limit(REPORT_CONTEXT_SIZE)
            )
            .scalars()
            .all()
        )
        flagged = [*reversed(preceding), target.id]
        self.db.execute(
            update(Message)
            .where(Message.id.in_(flagged))
            .values(report_flagged=True, report_reason=reason, reported_by=self.self_id)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        logger.info(
            "%d messages in %s reported by %s", len(flagged), self.conversation_id, self.self_id
        )
        return flagged

    def report_conversation(self, reason: str) -> UserReport:
        """Open a report against the other participant.

        Raises:
            ValidationError: Empty or oversized reason, or reporting the
                admin counterpart.
        """
        self._require_writable("report users")
        reason = require_text(reason, "Reason", MAX_REASON_LENGTH)
        if self.other_id == ADMIN_PARTY_ID:
            raise ValidationError("Support conversations cannot be reported")
        report = UserReport(
            reporter_id=self.self_id,
            reported_id=self.other_id,
            conversation_id=self.conversation_id,
            reason=reason,
        )
        self.db.add(report)
        self.db.commit()
        self.db.refresh(report)
        logger.info("User %s reported %s (report %s)", self.self_id, self.other_id, report.id)
        return report

    def on_keystroke(self, now: datetime | None = None) -> None:
        """Typing signal: refresh self's last_seen_at."""
        self._require_writable("signal typing")
        if self.self_id == ADMIN_PARTY_ID:
            return
        self.profiles.touch_last_seen(self.self_id, now=now)
        change_feed.publish(
            conversation_topic(self.conversation_id),
            "presence_changed",
            {"conversation_id": self.conversation_id, "user_id": self.self_id},
        )


class ChatService:
    """Factory for Conversation handles plus cross-conversation queries."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def open_conversation(
        self,
        conversation_id: str,
        self_id: str,
        other_id: str,
        read_only: bool = False,
    ) -> Conversation:
        """Open a handle on conversation_id between self_id and other_id.

        Raises:
            ValidationError: Missing ids, or both ids are the same user.
        """
        if not conversation_id or not self_id or not other_id:
            raise ValidationError("Conversation and participant ids are required")
        if self_id == other_id:
            raise ValidationError("A conversation needs two different participants")
        return Conversation(self.db, conversation_id, self_id, other_id, read_only=read_only)

    def unread_counts(self, user_id: str) -> dict[str, int]:
        """Unread message counts per conversation for the receiving user."""
        stmt = (
            select(Message.conversation_id, func.count(Message.id))
            .where(Message.receiver_id == user_id, Message.read_at.is_(None))
            .group_by(Message.conversation_id)
        )
        return {conv_id: count for conv_id, count in self.db.execute(stmt).all()}

    def open_for_actor(self, conversation_id: str, actor_id: str) -> Conversation:
        """Open a conversation on behalf of an authenticated actor.

        The counterpart is derived from the conversation id:
            trade:<id>     the other trade party; privileged non-parties get a
                           read-only handle for reviewing disputes
            ticket:<id>    ADMIN_PARTY_ID for the ticket owner; privileged
                           users act as ADMIN_PARTY_ID towards the owner
            direct:<a>:<b> whichever of a and b is not the actor

        Raises:
            NotFoundError: Unknown trade or ticket.
            AuthorizationError: The actor is not a participant.
            ValidationError: Malformed id, or a trade without a counterpart yet.
        """
        kind, _, key = conversation_id.partition(":")
        if not key:
            raise ValidationError(f"Malformed conversation id '{conversation_id}'")

        if kind == "trade":
            trade = TradeService(self.db).require_trade(key)
            role = TradeService(self.db).role_for(trade, actor_id)
            if role == TradeRole.NONE:
                if ProfileService(self.db).is_privileged(actor_id):
                    return self.open_conversation(
                        conversation_id, actor_id, trade.requester_id, read_only=True
                    )
                raise AuthorizationError.from_code(
                    "E-5001", actor_id=actor_id, action=f"read {conversation_id}"
                )
            other_id = trade.requester_id if role == TradeRole.TRADER else trade.acceptor_id
            if not other_id:
                raise ValidationError("This trade has no counterpart yet")
            return self.open_conversation(conversation_id, actor_id, other_id)

        if kind == "ticket":
            ticket = self.db.get(Ticket, key)
            if ticket is None:
                raise NotFoundError("Ticket", key)
            if ticket.user_id == actor_id:
                return self.open_conversation(conversation_id, actor_id, ADMIN_PARTY_ID)
            if ProfileService(self.db).is_privileged(actor_id):
                return self.open_conversation(conversation_id, ADMIN_PARTY_ID, ticket.user_id)
            raise AuthorizationError.from_code(
                "E-5001", actor_id=actor_id, action=f"read {conversation_id}"
            )

        if kind == "direct":
            first, _, second = key.partition(":")
            if actor_id not in (first, second) or not second:
                raise AuthorizationError.from_code(
                    "E-5001", actor_id=actor_id, action=f"read {conversation_id}"
                )
            other_id = second if actor_id == first else first
            return self.open_conversation(conversation_id, actor_id, other_id)

        raise ValidationError(f"Unknown conversation kind '{kind}'")
