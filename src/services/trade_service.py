"""Trade lifecycle management with guarded single-row transitions.

A trade request moves through:

    open --accept--> ongoing(step 1) --box--> step 2 --confirm plot--> step 2
        (plot ready) --open gates--> step 3 --complete--> completed(step 4)

with cancel and expire resetting an ongoing trade to open, and withdraw
deleting an open request. Every transition is one conditional UPDATE whose
WHERE clause re-checks the guard; a zero row count means another actor got
there first and surfaces as ConflictError. Completion is the only
transition touching more than one row and commits the trade and the
requester's profile together.

Timers are evaluated lazily inside the guard against the step origin
(updated_at, falling back to created_at). expire_stale_trades() resets
expired trades proactively with the same guard.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from src.db.models import (
    OfferKind,
    TradeRequest,
    TradeStatus,
    TradeStep,
    UserProfile,
    from_iso,
    to_iso,
)
from src.errors.domain import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from src.services.change_feed import change_feed, trade_topic, user_topic
from src.services.profile_service import ProfileService, add_item, invalidate_profile
from src.services.role_resolver import TradeRole, is_legacy_acceptor, resolve_role
from src.utils.text import (
    MAX_ITEM_NAME_LENGTH,
    MAX_OFFER_TEXT_LENGTH,
    MAX_REASON_LENGTH,
    normalize_transfer_code,
    optional_text,
    require_text,
)

logger = logging.getLogger(__name__)

EXPIRY_WINDOW = timedelta(hours=48)
TRADEE_COMPLETE_WINDOW = timedelta(hours=24)
HISTORY_RETENTION = timedelta(days=28)

ACTIVE_STATUSES = (TradeStatus.open.value, TradeStatus.ongoing.value)


class TradeAction(str, Enum):
    """User-facing trade transitions."""

    accept = "accept"
    box = "box"
    confirm_plot = "confirm_plot"
    open_gates = "open_gates"
    complete = "complete"
    cancel = "cancel"
    expire = "expire"
    withdraw = "withdraw"
    report = "report"


# Which role may fire each action (NONE = any non-party user)
ACTION_ROLES: dict[TradeAction, tuple[TradeRole, ...]] = {
    TradeAction.accept: (TradeRole.NONE,),
    TradeAction.box: (TradeRole.TRADER,),
    TradeAction.confirm_plot: (TradeRole.TRADEE,),
    TradeAction.open_gates: (TradeRole.TRADER,),
    TradeAction.complete: (TradeRole.TRADER, TradeRole.TRADEE),
    TradeAction.cancel: (TradeRole.TRADER, TradeRole.TRADEE),
    TradeAction.expire: (TradeRole.TRADER, TradeRole.TRADEE),
    TradeAction.withdraw: (TradeRole.TRADEE,),
    TradeAction.report: (TradeRole.TRADER, TradeRole.TRADEE),
}

# Column values written when an ongoing trade goes back to open
RESET_TO_OPEN: dict[str, Any] = {
    "status": TradeStatus.open.value,
    "acceptor_id": None,
    "step": TradeStep.accepted.value,
    "plot_available": False,
    "transfer_code": "",
}


@dataclass(frozen=True)
class TradeOffer:
    """What a requester proposes in return for an item."""

    kind: OfferKind = OfferKind.none
    amount: int | None = None
    text: str = ""


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def _step_origin():
    """SQL expression for the step timer origin."""
    return func.coalesce(TradeRequest.updated_at, TradeRequest.created_at)


def _validate_offer(offer: TradeOffer) -> tuple[str, int | None, str]:
    try:
        kind = OfferKind(offer.kind)
    except ValueError:
        raise ValidationError.from_code(
            "E-2003", details=f"unknown offer kind '{offer.kind}'"
        ) from None

    amount = offer.amount
    if kind == OfferKind.none:
        amount = None
    elif amount is None or isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError.from_code("E-2003", details="amount must be a whole number")
    elif amount < 0:
        raise ValidationError.from_code("E-2003", details="amount cannot be negative")

    text = optional_text(offer.text, "Offer", MAX_OFFER_TEXT_LENGTH)
    return kind.value, amount, text


class TradeService:
    """Service for the trade request state machine.

    Each public transition loads the trade, checks the caller's role, then
    applies one guarded UPDATE and commits. Authorization and validation
    errors are raised before anything is written.

    Attributes:
        db: SQLAlchemy session for database operations.
        profiles: Profile reads and privilege checks.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the trade service with a database session.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db
        self.profiles = ProfileService(db)

    # =========================================================================
    # Lookup and Role Resolution
    # =========================================================================

    def get_trade(self, trade_id: str) -> TradeRequest | None:
        """Get a trade by its ID.

        Args:
            trade_id: The UUID of the trade.

        Returns:
            The TradeRequest if found, None otherwise.
        """
        return self.db.get(TradeRequest, trade_id)

    def require_trade(self, trade_id: str) -> TradeRequest:
        trade = self.get_trade(trade_id)
        if trade is None:
            raise NotFoundError("Trade", trade_id)
        return trade

    def role_for(self, trade: TradeRequest, user_id: str) -> TradeRole:
        """Resolve user_id's role on trade, consulting owned items only when needed."""
        owned: tuple[str, ...] = ()
        if not trade.acceptor_id:
            owned = self.profiles.owned_items(user_id)
        return resolve_role(trade, user_id, owned)

    def _require_role(
        self,
        trade: TradeRequest,
        actor_id: str,
        action: TradeAction,
    ) -> TradeRole:
        role = self.role_for(trade, actor_id)
        if role not in ACTION_ROLES[action]:
            raise AuthorizationError.from_code(
                "E-5001", actor_id=actor_id, action=f"{action.value} trade {trade.id}"
            )
        return role

    def _require_unrestricted(self, user_id: str, action: str) -> UserProfile:
        profile = self.profiles.load_current(user_id)
        if profile is None:
            raise NotFoundError("Profile", user_id)
        if profile.banned or profile.trade_restricted:
            raise AuthorizationError.from_code("E-5003", actor_id=user_id, action=action)
        return profile

    def _party_guard(
        self,
        trade: TradeRequest,
        actor_id: str,
        role: TradeRole,
    ) -> tuple[list[Any], dict[str, Any]]:
        """Row guard pinning the actor's side of the trade.

        For a trader resolved through the legacy ownership fallback, the
        guard requires acceptor_id to still be null and the update
        backfills it with the actor.

        Returns:
            (extra WHERE clauses, extra column values)
        """
        if role == TradeRole.TRADEE:
            return [TradeRequest.requester_id == actor_id], {}
        if trade.acceptor_id:
            return [TradeRequest.acceptor_id == actor_id], {}
        logger.warning(
            "Trade %s has no acceptor_id; resolving trader %s by ownership",
            trade.id,
            actor_id,
        )
        return [TradeRequest.acceptor_id.is_(None)], {"acceptor_id": actor_id}

    # =========================================================================
    # Guarded Update Primitive
    # =========================================================================

    def _guarded_update(
        self,
        trade: TradeRequest,
        action: TradeAction | str,
        guards: list[Any],
        values: dict[str, Any],
        now: datetime | None = None,
        commit: bool = True,
    ) -> None:
        """Apply UPDATE trade_requests SET values WHERE id = trade.id AND guards.

        Args:
            trade: The loaded trade (refreshed after commit).
            action: Action name for the conflict message.
            guards: SQL conditions the row must still satisfy.
            values: Column values to write.
            now: When set, updated_at is stamped with this time.
            commit: Commit and refresh when True; otherwise leave the
                transaction open for further row changes.

        Raises:
            ConflictError: If no row matched the guard.
        """
        if now is not None:
            values = {**values, "updated_at": to_iso(now)}
        stmt = (
            update(TradeRequest)
            .where(TradeRequest.id == trade.id, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            self.db.rollback()
            action_name = action.value if isinstance(action, TradeAction) else action
            logger.info("Guard failed for %s on trade %s", action_name, trade.id)
            raise ConflictError.from_code("E-1001", trade_id=trade.id, action=action_name)
        if commit:
            self.db.commit()
            self.db.refresh(trade)

    def _publish(self, trade: TradeRequest, *extra_user_ids: str | None) -> None:
        data = {"trade_id": trade.id, "status": trade.status, "step": trade.step}
        change_feed.publish(trade_topic(trade.id), "trade_changed", data)
        notified = {trade.requester_id, trade.acceptor_id, *extra_user_ids}
        for user_id in notified:
            if user_id:
                change_feed.publish(user_topic(user_id), "trade_changed", data)

    # =========================================================================
    # Creation and Withdrawal
    # =========================================================================

    def _has_active_request(self, requester_id: str, item_name: str) -> bool:
        stmt = select(TradeRequest.id).where(
            TradeRequest.requester_id == requester_id,
            TradeRequest.item_name == item_name,
            TradeRequest.status.in_(ACTIVE_STATUSES),
        )
        return self.db.execute(stmt.limit(1)).first() is not None

    def _new_request(
        self,
        requester_id: str,
        item_name: str,
        offer: tuple[str, int | None, str],
        stamp: str,
    ) -> TradeRequest:
        kind, amount, text = offer
        trade = TradeRequest(
            requester_id=requester_id,
            item_name=item_name,
            offer_kind=kind,
            offer_amount=amount,
            offer_text=text,
            status=TradeStatus.open.value,
            step=TradeStep.accepted.value,
            created_at=stamp,
            updated_at=stamp,
        )
        self.db.add(trade)
        return trade

    def create_request(
        self,
        requester_id: str,
        item_name: str,
        offer: TradeOffer | None = None,
        now: datetime | None = None,
    ) -> TradeRequest:
        """Create an open request for an item.

        Args:
            requester_id: User who wants the item.
            item_name: Catalog key of the item.
            offer: What the requester offers in return (default: nothing).
            now: Creation time (defaults to the current time).

        Returns:
            The created TradeRequest (status open, step 1).

        Raises:
            ValidationError: Bad item name or offer.
            AuthorizationError: Requester is restricted or banned.
            ConflictError: Requester already has an active request for the item.
        """
        item_name = require_text(item_name, "Item name", MAX_ITEM_NAME_LENGTH)
        offer_values = _validate_offer(offer or TradeOffer())
        self._require_unrestricted(requester_id, "trading")

        if self._has_active_request(requester_id, item_name):
            raise ConflictError.from_code("E-1002", item_name=item_name)

        trade = self._new_request(requester_id, item_name, offer_values, to_iso(_now(now)))
        self.db.commit()
        self.db.refresh(trade)
        logger.info("Trade %s created by %s for %s", trade.id, requester_id, item_name)
        self._publish(trade)
        return trade

    def create_requests(
        self,
        requester_id: str,
        item_names: list[str],
        offers: dict[str, TradeOffer] | None = None,
        now: datetime | None = None,
    ) -> list[TradeRequest]:
        """Create one open request per basket item in a single commit.

        Items that already have an active request by the requester, and
        repeats within the basket, are skipped rather than rejected.

        Args:
            requester_id: User who wants the items.
            item_names: Catalog keys, in basket order.
            offers: Optional per-item offers keyed by item name.
            now: Creation time (defaults to the current time).

        Returns:
            The created requests, in basket order.
        """
        offers = offers or {}
        prepared: list[tuple[str, tuple[str, int | None, str]]] = []
        seen: set[str] = set()
        for raw_name in item_names:
            item_name = require_text(raw_name, "Item name", MAX_ITEM_NAME_LENGTH)
            if item_name in seen:
                continue
            seen.add(item_name)
            prepared.append((item_name, _validate_offer(offers.get(item_name, TradeOffer()))))

        self._require_unrestricted(requester_id, "trading")

        stamp = to_iso(_now(now))
        created: list[TradeRequest] = []
        for item_name, offer_values in prepared:
            if self._has_active_request(requester_id, item_name):
                logger.info("Skipping %s for %s: request already active", item_name, requester_id)
                continue
            created.append(self._new_request(requester_id, item_name, offer_values, stamp))

        if not created:
            return []
        self.db.commit()
        for trade in created:
            self.db.refresh(trade)
            self._publish(trade)
        logger.info("Created %d basket requests for %s", len(created), requester_id)
        return created

    def withdraw(self, trade_id: str, actor_id: str) -> None:
        """Hard-delete an open request. Only its requester may withdraw it.

        Raises:
            NotFoundError: Unknown trade.
            AuthorizationError: Actor is not the requester.
            ConflictError: The request is no longer open.
        """
        trade = self.require_trade(trade_id)
        if trade.requester_id != actor_id:
            raise AuthorizationError.from_code(
                "E-5001", actor_id=actor_id, action=f"withdraw trade {trade_id}"
            )
        result = self.db.execute(
            delete(TradeRequest)
            .where(
                TradeRequest.id == trade_id,
                TradeRequest.requester_id == actor_id,
                TradeRequest.status == TradeStatus.open.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise ConflictError.from_code("E-1001", trade_id=trade_id, action="withdrawn")
        self.db.commit()
        self.db.expunge(trade)
        logger.info("Trade %s withdrawn by %s", trade_id, actor_id)
        data = {"trade_id": trade_id, "status": "deleted"}
        change_feed.publish(trade_topic(trade_id), "trade_deleted", data)
        change_feed.publish(user_topic(actor_id), "trade_deleted", data)

    # =========================================================================
    # Handoff Transitions
    # =========================================================================

    def accept(
        self, trade_id: str, actor_id: str, now: datetime | None = None
    ) -> TradeRequest:
        """Accept an open request; the actor becomes the trader.

        Raises:
            NotFoundError: Unknown trade.
            AuthorizationError: Actor is the requester, restricted or banned.
            ConflictError: The request is no longer open (lost an accept race).
        """
        now = _now(now)
        trade = self.require_trade(trade_id)
        if trade.requester_id == actor_id:
            raise AuthorizationError.from_code(
                "E-5001", actor_id=actor_id, action="accept their own request"
            )
        self._require_unrestricted(actor_id, "trading")

        self._guarded_update(
            trade,
            TradeAction.accept,
            [
                TradeRequest.status == TradeStatus.open.value,
                TradeRequest.requester_id != actor_id,
            ],
            {
                "status": TradeStatus.ongoing.value,
                "acceptor_id": actor_id,
                "step": TradeStep.accepted.value,
                "plot_available": False,
                "transfer_code": "",
            },
            now=now,
        )
        logger.info("Trade %s accepted by %s", trade_id, actor_id)
        self._publish(trade)
        return trade

    def mark_boxed(
        self, trade_id: str, actor_id: str, now: datetime | None = None
    ) -> TradeRequest:
        """Trader reports the item is packed up (step 1 -> 2)."""
        now = _now(now)
        trade = self.require_trade(trade_id)
        role = self._require_role(trade, actor_id, TradeAction.box)
        party_guards, party_values = self._party_guard(trade, actor_id, role)

        self._guarded_update(
            trade,
            TradeAction.box,
            [
                TradeRequest.status == TradeStatus.ongoing.value,
                TradeRequest.step == TradeStep.accepted.value,
                *party_guards,
            ],
            {"step": TradeStep.boxed.value, **party_values},
            now=now,
        )
        logger.info("Trade %s boxed by %s", trade_id, actor_id)
        self._publish(trade)
        return trade

    def confirm_plot(
        self, trade_id: str, actor_id: str, now: datetime | None = None
    ) -> TradeRequest:
        """Tradee confirms a free plot is available (step 2).

        Does not advance the step or restart the step timer.
        """
        trade = self.require_trade(trade_id)
        role = self._require_role(trade, actor_id, TradeAction.confirm_plot)
        party_guards, _ = self._party_guard(trade, actor_id, role)

        self._guarded_update(
            trade,
            TradeAction.confirm_plot,
            [
                TradeRequest.status == TradeStatus.ongoing.value,
                TradeRequest.step == TradeStep.boxed.value,
                *party_guards,
            ],
            {"plot_available": True},
        )
        logger.info("Trade %s plot confirmed by %s", trade_id, actor_id)
        self._publish(trade)
        return trade

    def open_gates(
        self,
        trade_id: str,
        actor_id: str,
        transfer_code: str,
        now: datetime | None = None,
    ) -> TradeRequest:
        """Trader shares the transfer code and opens their gates (step 2 -> 3).

        Args:
            trade_id: The trade.
            actor_id: Acting user (must be the trader).
            transfer_code: 5-32 letters or digits; stored uppercased.
            now: Transition time; starts the tradee completion timer.

        Raises:
            ValidationError: Malformed transfer code.
            AuthorizationError: Actor is not the trader.
            ConflictError: Not at step 2 with a confirmed plot.
        """
        now = _now(now)
        code = normalize_transfer_code(transfer_code)
        trade = self.require_trade(trade_id)
        role = self._require_role(trade, actor_id, TradeAction.open_gates)
        party_guards, party_values = self._party_guard(trade, actor_id, role)

        self._guarded_update(
            trade,
            TradeAction.open_gates,
            [
                TradeRequest.status == TradeStatus.ongoing.value,
                TradeRequest.step == TradeStep.boxed.value,
                TradeRequest.plot_available.is_(True),
                *party_guards,
            ],
            {"step": TradeStep.gates_open.value, "transfer_code": code, **party_values},
            now=now,
        )
        logger.info("Trade %s gates opened by %s", trade_id, actor_id)
        self._publish(trade)
        return trade

    def complete(
        self, trade_id: str, actor_id: str, now: datetime | None = None
    ) -> TradeRequest:
        """Mark the trade completed and credit the requester with the item.

        The trader may complete any time at step 3; the tradee only once the
        trade has sat at step 3 for TRADEE_COMPLETE_WINDOW. The trade row and
        the requester's owned list commit together or not at all.

        Raises:
            AuthorizationError: Actor is not a party.
            ConflictError: Not at step 3, or the tradee's window has not elapsed.
        """
        now = _now(now)
        trade = self.require_trade(trade_id)
        role = self._require_role(trade, actor_id, TradeAction.complete)
        party_guards, party_values = self._party_guard(trade, actor_id, role)

        guards = [
            TradeRequest.status == TradeStatus.ongoing.value,
            TradeRequest.step == TradeStep.gates_open.value,
            *party_guards,
        ]
        if role == TradeRole.TRADEE:
            cutoff = now - TRADEE_COMPLETE_WINDOW
            started = from_iso(trade.step_started_at)
            if (
                trade.status == TradeStatus.ongoing.value
                and trade.step == TradeStep.gates_open.value
                and started is not None
                and started > cutoff
            ):
                raise ConflictError.from_code(
                    "E-1003",
                    trade_id=trade_id,
                    hours=int(TRADEE_COMPLETE_WINDOW.total_seconds() // 3600),
                )
            guards.append(_step_origin() <= to_iso(cutoff))

        stamp = to_iso(now)
        self._guarded_update(
            trade,
            TradeAction.complete,
            guards,
            {
                "status": TradeStatus.completed.value,
                "step": TradeStep.done.value,
                "completed_at": stamp,
                **party_values,
            },
            now=now,
            commit=False,
        )

        requester = self.db.get(UserProfile, trade.requester_id)
        if requester is None:
            self.db.rollback()
            raise NotFoundError("Profile", trade.requester_id)
        requester.owned_list = add_item(requester.owned_list, trade.item_name)

        self.db.commit()
        invalidate_profile(trade.requester_id)
        self.db.refresh(trade)
        logger.info("Trade %s completed by %s (%s)", trade_id, actor_id, role.value)
        self._publish(trade)
        return trade

    # =========================================================================
    # Recovery Transitions
    # =========================================================================

    def _inactive_too_short(self, trade: TradeRequest, now: datetime) -> bool:
        started = from_iso(trade.step_started_at)
        return started is not None and now - started < EXPIRY_WINDOW

    def cancel(
        self, trade_id: str, actor_id: str, now: datetime | None = None
    ) -> TradeRequest:
        """Either party backs out, returning the request to open.

        Allowed before the item is boxed, or after EXPIRY_WINDOW of
        inactivity at any step.

        Raises:
            AuthorizationError: Actor is not a party.
            ConflictError: Boxed and still within the inactivity window.
        """
        now = _now(now)
        trade = self.require_trade(trade_id)
        role = self._require_role(trade, actor_id, TradeAction.cancel)
        party_guards, _ = self._party_guard(trade, actor_id, role)
        previous_acceptor = trade.acceptor_id or (
            actor_id if role == TradeRole.TRADER else None
        )

        if (
            trade.status == TradeStatus.ongoing.value
            and trade.step >= TradeStep.boxed.value
            and self._inactive_too_short(trade, now)
        ):
            raise ConflictError.from_code(
                "E-1004", trade_id=trade_id, hours=int(EXPIRY_WINDOW.total_seconds() // 3600)
            )

        self._guarded_update(
            trade,
            TradeAction.cancel,
            [
                TradeRequest.status == TradeStatus.ongoing.value,
                or_(
                    TradeRequest.step < TradeStep.boxed.value,
                    _step_origin() <= to_iso(now - EXPIRY_WINDOW),
                ),
                *party_guards,
            ],
            RESET_TO_OPEN,
            now=now,
        )
        logger.info("Trade %s cancelled by %s", trade_id, actor_id)
        self._publish(trade, previous_acceptor)
        return trade

    def expire(
        self, trade_id: str, actor_id: str, now: datetime | None = None
    ) -> TradeRequest:
        """Reset an ongoing trade that has been inactive for EXPIRY_WINDOW.

        Raises:
            AuthorizationError: Actor is not a party.
            ConflictError: The trade is not ongoing or not yet stale.
        """
        now = _now(now)
        trade = self.require_trade(trade_id)
        role = self._require_role(trade, actor_id, TradeAction.expire)
        party_guards, _ = self._party_guard(trade, actor_id, role)
        previous_acceptor = trade.acceptor_id or (
            actor_id if role == TradeRole.TRADER else None
        )

        if trade.status == TradeStatus.ongoing.value and self._inactive_too_short(trade, now):
            raise ConflictError.from_code(
                "E-1004", trade_id=trade_id, hours=int(EXPIRY_WINDOW.total_seconds() // 3600)
            )

        self._guarded_update(
            trade,
            TradeAction.expire,
            [
                TradeRequest.status == TradeStatus.ongoing.value,
                _step_origin() <= to_iso(now - EXPIRY_WINDOW),
                *party_guards,
            ],
            RESET_TO_OPEN,
            now=now,
        )
        logger.info("Trade %s expired by %s", trade_id, actor_id)
        self._publish(trade, previous_acceptor)
        return trade

    def expire_stale_trades(self, now: datetime | None = None) -> int:
        """Reset every ongoing trade inactive for EXPIRY_WINDOW.

        Applies the same guard as expire(), so a trade a party touched in the
        meantime is left alone.

        Returns:
            Number of trades reset to open.
        """
        now = _now(now)
        cutoff = to_iso(now - EXPIRY_WINDOW)
        stale = self.db.execute(
            select(TradeRequest.id, TradeRequest.requester_id, TradeRequest.acceptor_id).where(
                TradeRequest.status == TradeStatus.ongoing.value,
                _step_origin() <= cutoff,
            )
        ).all()
        if not stale:
            return 0

        result = self.db.execute(
            update(TradeRequest)
            .where(
                TradeRequest.id.in_([row.id for row in stale]),
                TradeRequest.status == TradeStatus.ongoing.value,
                _step_origin() <= cutoff,
            )
            .values(**RESET_TO_OPEN, updated_at=to_iso(now))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.expire_all()
        reset = result.rowcount or 0
        logger.info("Expiry sweep reset %d of %d stale trades", reset, len(stale))

        for row in stale:
            data = {"trade_id": row.id, "status": TradeStatus.open.value, "step": 1}
            change_feed.publish(trade_topic(row.id), "trade_changed", data)
            for user_id in (row.requester_id, row.acceptor_id):
                if user_id:
                    change_feed.publish(user_topic(user_id), "trade_changed", data)
        return reset

    # =========================================================================
    # Reporting
    # =========================================================================

    def report(self, trade_id: str, actor_id: str, reason: str) -> TradeRequest:
        """Flag a completed trade for moderator review.

        Leaves status and step untouched. A trade can be reported once until
        a moderator dismisses the report.

        Raises:
            ValidationError: Empty or oversized reason.
            AuthorizationError: Actor is not a party.
            ConflictError: Not completed, or already reported.
        """
        reason = require_text(reason, "Reason", MAX_REASON_LENGTH)
        trade = self.require_trade(trade_id)
        self._require_role(trade, actor_id, TradeAction.report)

        self._guarded_update(
            trade,
            TradeAction.report,
            [
                TradeRequest.status == TradeStatus.completed.value,
                TradeRequest.reported.is_(False),
            ],
            {"reported": True, "report_reason": reason, "reported_by": actor_id},
        )
        logger.info("Trade %s reported by %s", trade_id, actor_id)
        self._publish(trade)
        return trade

    # =========================================================================
    # Legacy Data Repair
    # =========================================================================

    def backfill_acceptor_ids(self) -> int:
        """Fill acceptor_id on accepted rows that predate the column.

        The trader is the single non-requester whose owned list holds the
        item. Rows with zero or several candidates are left for the
        ownership fallback and logged.

        Returns:
            Number of rows backfilled.
        """
        legacy = (
            self.db.execute(
                select(TradeRequest).where(
                    TradeRequest.acceptor_id.is_(None),
                    TradeRequest.status != TradeStatus.open.value,
                )
            )
            .scalars()
            .all()
        )
        filled = 0
        for trade in legacy:
            candidates = (
                self.db.execute(
                    select(UserProfile).where(
                        UserProfile.id != trade.requester_id,
                        UserProfile.owned_items.contains(
                            f'"{trade.item_name}"', autoescape=True
                        ),
                    )
                )
                .scalars()
                .all()
            )
            owners = [p.id for p in candidates if is_legacy_acceptor(trade, p.owned_list)]
            if len(owners) != 1:
                logger.warning(
                    "Cannot backfill trade %s: %d candidate traders", trade.id, len(owners)
                )
                continue
            result = self.db.execute(
                update(TradeRequest)
                .where(TradeRequest.id == trade.id, TradeRequest.acceptor_id.is_(None))
                .values(acceptor_id=owners[0])
                .execution_options(synchronize_session=False)
            )
            filled += result.rowcount or 0
        self.db.commit()
        self.db.expire_all()
        logger.info("Backfilled acceptor_id on %d legacy trades", filled)
        return filled

    # =========================================================================
    # Read Models
    # =========================================================================

    def available_actions(
        self,
        trade: TradeRequest,
        user_id: str,
        now: datetime | None = None,
    ) -> list[TradeAction]:
        """List the transitions user_id may currently fire on trade.

        Mirrors the guards of the transition methods, so a listed action
        only fails if another actor changes the row first.
        """
        now = _now(now)
        role = self.role_for(trade, user_id)
        status = trade.status
        actions: list[TradeAction] = []

        if status == TradeStatus.open.value:
            if role == TradeRole.TRADEE:
                actions.append(TradeAction.withdraw)
            elif trade.requester_id != user_id:
                if self.profiles.can_trade(user_id):
                    actions.append(TradeAction.accept)
            return actions

        if role == TradeRole.NONE:
            return actions

        if status == TradeStatus.completed.value:
            if not trade.reported:
                actions.append(TradeAction.report)
            return actions

        if status != TradeStatus.ongoing.value:
            return actions

        started = from_iso(trade.step_started_at)
        elapsed = now - started if started else timedelta(0)
        stale = elapsed >= EXPIRY_WINDOW

        if role == TradeRole.TRADER:
            if trade.step == TradeStep.accepted.value:
                actions.append(TradeAction.box)
            elif trade.step == TradeStep.boxed.value and trade.plot_available:
                actions.append(TradeAction.open_gates)
            elif trade.step == TradeStep.gates_open.value:
                actions.append(TradeAction.complete)
        else:
            if trade.step == TradeStep.boxed.value and not trade.plot_available:
                actions.append(TradeAction.confirm_plot)
            elif (
                trade.step == TradeStep.gates_open.value
                and elapsed >= TRADEE_COMPLETE_WINDOW
            ):
                actions.append(TradeAction.complete)

        if trade.step < TradeStep.boxed.value or stale:
            actions.append(TradeAction.cancel)
        if stale:
            actions.append(TradeAction.expire)
        return actions

    def list_incoming(self, user_id: str) -> list[TradeRequest]:
        """Open requests by others for items the user owns, oldest first."""
        owned = self.profiles.owned_items(user_id)
        if not owned:
            return []
        stmt = (
            select(TradeRequest)
            .where(
                TradeRequest.status == TradeStatus.open.value,
                TradeRequest.requester_id != user_id,
                TradeRequest.item_name.in_(owned),
            )
            .order_by(TradeRequest.created_at.asc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_my_open(self, user_id: str) -> list[TradeRequest]:
        """The user's own open requests, newest first."""
        stmt = (
            select(TradeRequest)
            .where(
                TradeRequest.requester_id == user_id,
                TradeRequest.status == TradeStatus.open.value,
            )
            .order_by(TradeRequest.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_ongoing(self, user_id: str) -> list[TradeRequest]:
        """Ongoing trades where the user is either party, most recently active first."""
        owned = self.profiles.owned_items(user_id)
        party = [
            TradeRequest.requester_id == user_id,
            TradeRequest.acceptor_id == user_id,
        ]
        if owned:
            party.append(
                and_(
                    TradeRequest.acceptor_id.is_(None),
                    TradeRequest.item_name.in_(owned),
                )
            )
        stmt = (
            select(TradeRequest)
            .where(TradeRequest.status == TradeStatus.ongoing.value, or_(*party))
            .order_by(_step_origin().desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_history(
        self, user_id: str, now: datetime | None = None
    ) -> list[TradeRequest]:
        """Completed trades of either party within HISTORY_RETENTION, newest first.

        Older completed rows stay in the store; this is a read-side filter.
        """
        cutoff = to_iso(_now(now) - HISTORY_RETENTION)
        stmt = (
            select(TradeRequest)
            .where(
                TradeRequest.status == TradeStatus.completed.value,
                TradeRequest.completed_at >= cutoff,
                or_(
                    TradeRequest.requester_id == user_id,
                    TradeRequest.acceptor_id == user_id,
                ),
            )
            .order_by(TradeRequest.completed_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())
