"""Moderation decisions with an append-only action log.

Every sanction (restrict, unrestrict, ban, unban, warn) and every dismissed
report writes exactly one ModerationLogEntry in the same transaction as the
row change it records. Entries are never updated or deleted.

Privilege is checked before anything is written: only profiles whose rank
is in the configured privileged set (see
src.services.profile_service.privileged_ranks) may act.

Usage:
    mod = ModerationService(db)
    mod.restrict("u9", moderator_id="admin-1", reason="No-show twice")
    for entry in mod.list_log(limit=20):
        print(entry.created_at, entry.action, entry.title)
"""

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.db.models import (
    Message,
    ModerationAction,
    ModerationLogEntry,
    TradeRequest,
    TradeStatus,
    UserProfile,
    UserReport,
    UserReportStatus,
    to_iso,
)
from src.errors.domain import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from src.services.change_feed import change_feed, trade_topic, user_topic
from src.services.message_crypto import decrypt_message
from src.services.profile_service import (
    ProfileService,
    add_item,
    invalidate_profile,
    remove_item,
)
from src.utils.text import MAX_REASON_LENGTH, optional_text

logger = logging.getLogger(__name__)

# Allowed user report transitions
USER_REPORT_TRANSITIONS: dict[UserReportStatus, list[UserReportStatus]] = {
    UserReportStatus.open: [UserReportStatus.dismissed, UserReportStatus.closed],
    UserReportStatus.dismissed: [],  # terminal
    UserReportStatus.closed: [],  # terminal
}

DEFAULT_LOG_LIMIT = 50
DEFAULT_FLAGGED_LIMIT = 200


@dataclass(frozen=True)
class FlaggedMessage:
    """Decrypted message included as evidence in a message report."""

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at: str
    report_reason: str | None
    reported_by: str | None


class ModerationService:
    """Privileged moderation operations and the action log.

    Attributes:
        db: SQLAlchemy session for database operations.
        profiles: Profile reads and privilege checks.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the moderation service with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db
        self.profiles = ProfileService(db)

    # =========================================================================
    # Log Primitives
    # =========================================================================

    def require_privileged(self, actor_id: str) -> None:
        """Raise AuthorizationError (E-5002) unless actor_id is privileged."""
        if not self.profiles.is_privileged(actor_id):
            logger.warning("Privileged operation refused for %s", actor_id)
            raise AuthorizationError.from_code("E-5002", actor_id=actor_id)

    def _append(
        self,
        moderator_id: str,
        action: ModerationAction,
        title: str,
        target_user_id: str | None = None,
        reason: str | None = None,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        """Stage a log entry in the current transaction (caller commits)."""
        entry = ModerationLogEntry(
            moderator_id=moderator_id,
            target_user_id=target_user_id,
            action=action.value,
            title=title,
            reason=reason or None,
            meta_json=json.dumps(meta or {}),
            created_at=to_iso(now or datetime.now(UTC)),
        )
        self.db.add(entry)
        return entry

    def log_action(
        self,
        moderator_id: str,
        action: ModerationAction,
        title: str,
        target_user_id: str | None = None,
        reason: str | None = None,
        meta: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        """Append one entry to the moderation log.

        Args:
            moderator_id: Privileged user taking the action.
            action: The decision being recorded.
            title: Short summary shown in the log.
            target_user_id: Affected user, if any.
            reason: Optional justification.
            meta: Free-form JSON context.
            now: Entry time (defaults to the current time).

        Returns:
            The committed ModerationLogEntry.

        Raises:
            AuthorizationError: moderator_id is not privileged.
        """
        self.require_privileged(moderator_id)
        reason = optional_text(reason, "Reason", MAX_REASON_LENGTH)
        entry = self._append(moderator_id, action, title, target_user_id, reason, meta, now)
        self.db.commit()
        self.db.refresh(entry)
        logger.info("Moderation %s by %s on %s", action.value, moderator_id, target_user_id)
        return entry

    def list_log(self, limit: int = DEFAULT_LOG_LIMIT) -> list[ModerationLogEntry]:
        """Most recent log entries, newest first."""
        stmt = (
            select(ModerationLogEntry)
            .order_by(ModerationLogEntry.created_at.desc(), ModerationLogEntry.id.desc())
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    # =========================================================================
    # Account Sanctions
    # =========================================================================

    def _set_flag(
        self,
        target_user_id: str,
        moderator_id: str,
        column: str,
        value: bool,
        action: ModerationAction,
        title: str,
        reason: str | None,
        now: datetime | None,
    ) -> ModerationLogEntry:
        self.require_privileged(moderator_id)
        reason = optional_text(reason, "Reason", MAX_REASON_LENGTH)
        self.profiles.require_row(target_user_id)

        self.db.execute(
            update(UserProfile)
            .where(UserProfile.id == target_user_id)
            .values({column: value})
            .execution_options(synchronize_session=False)
        )
        entry = self._append(moderator_id, action, title, target_user_id, reason, None, now)
        self.db.commit()
        self.db.expire_all()
        invalidate_profile(target_user_id)
        logger.info("Moderation %s by %s on %s", action.value, moderator_id, target_user_id)
        change_feed.publish(
            user_topic(target_user_id), "profile_changed", {"user_id": target_user_id}
        )
        return entry

    def restrict(
        self,
        target_user_id: str,
        moderator_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        """Block the user from creating and accepting trades."""
        return self._set_flag(
            target_user_id, moderator_id, "trade_restricted", True,
            ModerationAction.restrict, "Trading restricted", reason, now,
        )

    def unrestrict(
        self,
        target_user_id: str,
        moderator_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        return self._set_flag(
            target_user_id, moderator_id, "trade_restricted", False,
            ModerationAction.unrestrict, "Trading restriction lifted", reason, now,
        )

    def ban(
        self,
        target_user_id: str,
        moderator_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        """Block the user from trading and messaging."""
        return self._set_flag(
            target_user_id, moderator_id, "banned", True,
            ModerationAction.ban, "Account banned", reason, now,
        )

    def unban(
        self,
        target_user_id: str,
        moderator_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        return self._set_flag(
            target_user_id, moderator_id, "banned", False,
            ModerationAction.unban, "Account unbanned", reason, now,
        )

    def warn(
        self,
        target_user_id: str,
        moderator_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ModerationLogEntry:
        """Record a warning. Changes nothing but the log."""
        self.require_privileged(moderator_id)
        self.profiles.require_row(target_user_id)
        return self.log_action(
            moderator_id,
            ModerationAction.warn,
            "Warning issued",
            target_user_id=target_user_id,
            reason=reason,
            now=now,
        )

    # =========================================================================
    # Trade Reports and Verification
    # =========================================================================

    def list_reported_trades(self) -> list[TradeRequest]:
        stmt = (
            select(TradeRequest)
            .where(TradeRequest.reported.is_(True))
            .order_by(TradeRequest.completed_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def dismiss_trade_report(
        self,
        trade_id: str,
        moderator_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> TradeRequest:
        """Clear a trade's report flag and log the dismissal atomically.

        Raises:
            AuthorizationError: moderator_id is not privileged.
            NotFoundError: Unknown trade.
            ConflictError: The trade is not (or no longer) reported.
        """
        self.require_privileged(moderator_id)
        reason = optional_text(reason, "Reason", MAX_REASON_LENGTH)
        trade = _require_trade(self.db, trade_id)
        reported_by = trade.reported_by

        result = self.db.execute(
            update(TradeRequest)
            .where(TradeRequest.id == trade_id, TradeRequest.reported.is_(True))
            .values(reported=False, report_reason=None, reported_by=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError.from_code("E-1005", target=f"trade {trade_id}")

        self._append(
            moderator_id,
            ModerationAction.dismiss_report,
            "Trade report dismissed",
            target_user_id=reported_by,
            reason=reason,
            meta={"trade_id": trade_id},
            now=now,
        )
        self.db.commit()
        self.db.refresh(trade)
        logger.info("Report on trade %s dismissed by %s", trade_id, moderator_id)
        change_feed.publish(trade_topic(trade_id), "trade_changed", {"trade_id": trade_id})
        return trade

    def verify_completion(
        self,
        trade_id: str,
        moderator_id: str,
        passed: bool,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> TradeRequest:
        """Record whether the trader really owned the traded item.

        Runs once per completed trade. In one transaction:
            - trade.trader_verified is set to passed
            - passed: the item is added to the trader's verified items
            - failed: the item is removed from the trader's owned and
              verified items, and a warning is logged against the trader
            - the requester is credited with the item either way

        Raises:
            AuthorizationError: moderator_id is not privileged.
            NotFoundError: Unknown trade or missing profile.
            ConflictError: Not completed, already verified, or no trader on record.
        """
        self.require_privileged(moderator_id)
        reason = optional_text(reason, "Reason", MAX_REASON_LENGTH)
        trade = _require_trade(self.db, trade_id)
        trader_id = trade.acceptor_id
        if not trader_id:
            raise ConflictError.from_code("E-1001", trade_id=trade_id, action="verified")

        result = self.db.execute(
            update(TradeRequest)
            .where(
                TradeRequest.id == trade_id,
                TradeRequest.status == TradeStatus.completed.value,
                TradeRequest.trader_verified.is_(None),
            )
            .values(trader_verified=passed)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError.from_code("E-1001", trade_id=trade_id, action="verified")

        trader = self.profiles.get_row(trader_id)
        requester = self.profiles.get_row(trade.requester_id)
        if trader is None or requester is None:
            self.db.rollback()
            missing = trader_id if trader is None else trade.requester_id
            raise NotFoundError("Profile", missing)

        item = trade.item_name
        if passed:
            trader.verified_list = add_item(trader.verified_list, item)
        else:
            trader.owned_list = remove_item(trader.owned_list, item)
            trader.verified_list = remove_item(trader.verified_list, item)
            self._append(
                moderator_id,
                ModerationAction.warn,
                "Ownership verification failed",
                target_user_id=trader_id,
                reason=reason,
                meta={"trade_id": trade_id, "item_name": item},
                now=now,
            )
        requester.owned_list = add_item(requester.owned_list, item)

        self.db.commit()
        invalidate_profile(trader_id, trade.requester_id)
        self.db.refresh(trade)
        logger.info(
            "Trade %s verification %s by %s",
            trade_id,
            "passed" if passed else "failed",
            moderator_id,
        )
        change_feed.publish(trade_topic(trade_id), "trade_changed", {"trade_id": trade_id})
        return trade

    # =========================================================================
    # Message Reports
    # =========================================================================

    def list_flagged_messages(
        self,
        moderator_id: str,
        conversation_id: str | None = None,
        limit: int = DEFAULT_FLAGGED_LIMIT,
    ) -> list[FlaggedMessage]:
        """Messages flagged by message reports, decrypted for review.

        Each row is decrypted with its own sender and receiver ids;
        undecryptable rows carry the sentinel text. Grouped by conversation,
        oldest first within each.

        Args:
            moderator_id: Privileged user reviewing the reports.
            conversation_id: Restrict to one conversation.
            limit: Maximum number of messages returned.

        Raises:
            AuthorizationError: moderator_id is not privileged.
        """
        self.require_privileged(moderator_id)
        stmt = select(Message).where(Message.report_flagged.is_(True))
        if conversation_id is not None:
            stmt = stmt.where(Message.conversation_id == conversation_id)
        stmt = stmt.order_by(
            Message.conversation_id, Message.created_at.asc(), Message.id.asc()
        ).limit(limit)
        return [
            FlaggedMessage(
                id=m.id,
                conversation_id=m.conversation_id,
                sender_id=m.sender_id,
                receiver_id=m.receiver_id,
                text=decrypt_message(m.ciphertext, m.iv, m.sender_id, m.receiver_id),
                created_at=m.created_at,
                report_reason=m.report_reason,
                reported_by=m.reported_by,
            )
            for m in self.db.execute(stmt).scalars()
        ]

    # =========================================================================
    # User Reports
    # =========================================================================

    def list_user_reports(self, status: UserReportStatus | None = None) -> list[UserReport]:
        stmt = select(UserReport).order_by(UserReport.created_at.desc())
        if status is not None:
            stmt = stmt.where(UserReport.status == status.value)
        return list(self.db.execute(stmt).scalars().all())

    def set_user_report_status(
        self,
        report_id: str,
        moderator_id: str,
        status: UserReportStatus | str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> UserReport:
        """Move a user report out of open.

        Dismissals are logged as dismiss_report in the same transaction.

        Raises:
            AuthorizationError: moderator_id is not privileged.
            ValidationError: status is not a legal target.
            NotFoundError: Unknown report.
            ConflictError: The report was already handled.
        """
        self.require_privileged(moderator_id)
        reason = optional_text(reason, "Reason", MAX_REASON_LENGTH)
        report = self.db.get(UserReport, report_id)
        if report is None:
            raise NotFoundError("User report", report_id)

        try:
            target = UserReportStatus(status)
        except ValueError:
            target = None
        current = UserReportStatus(report.status)
        if target is None or target not in USER_REPORT_TRANSITIONS[UserReportStatus.open]:
            raise ValidationError.from_code(
                "E-2004", status=status, target="user report", current=current.value
            )

        stamp = to_iso(now or datetime.now(UTC))
        result = self.db.execute(
            update(UserReport)
            .where(
                UserReport.id == report_id,
                UserReport.status == UserReportStatus.open.value,
            )
            .values(status=target.value, updated_at=stamp)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError.from_code("E-1005", target=f"user report {report_id}")

        if target == UserReportStatus.dismissed:
            self._append(
                moderator_id,
                ModerationAction.dismiss_report,
                "User report dismissed",
                target_user_id=report.reported_id,
                reason=reason,
                meta={"user_report_id": report_id},
                now=now,
            )
        self.db.commit()
        self.db.refresh(report)
        logger.info("User report %s set to %s by %s", report_id, target.value, moderator_id)
        return report


def _require_trade(db: Session, trade_id: str) -> TradeRequest:
    trade = db.get(TradeRequest, trade_id)
    if trade is None:
        raise NotFoundError("Trade", trade_id)
    return trade
