"""Tests for the trade request state machine."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from src.db.models import TradeRequest, TradeStatus, UserProfile, to_iso
from src.errors.domain import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from src.services.profile_service import ProfileService
from src.services.trade_service import (
    TradeAction,
    TradeOffer,
    TradeService,
)

HOUR = timedelta(hours=1)


@pytest.fixture
def service(db, users) -> TradeService:
    return TradeService(db)


def _at_step_three(service: TradeService, t0, requester="u1", trader="u2") -> TradeRequest:
    """Drive a fresh Raymond request to step 3; gates open at t0 + 4h."""
    trade = service.create_request(requester, "Raymond", now=t0)
    service.accept(trade.id, trader, now=t0 + HOUR)
    service.mark_boxed(trade.id, trader, now=t0 + 2 * HOUR)
    service.confirm_plot(trade.id, requester, now=t0 + 3 * HOUR)
    return service.open_gates(trade.id, trader, "abcde", now=t0 + 4 * HOUR)


class TestHappyPath:
    """End-to-end handoff from request to completion."""

    def test_full_handoff_credits_requester(self, service, db, t0):
        """create -> accept -> box -> plot -> open gates -> complete."""
        trade = service.create_request("u1", "Raymond", now=t0)
        assert trade.status == TradeStatus.open.value
        assert trade.step == 1
        assert trade.acceptor_id is None

        service.accept(trade.id, "u2", now=t0 + HOUR)
        assert trade.status == TradeStatus.ongoing.value
        assert trade.acceptor_id == "u2"
        assert trade.step == 1

        service.mark_boxed(trade.id, "u2", now=t0 + 2 * HOUR)
        assert trade.step == 2

        service.confirm_plot(trade.id, "u1", now=t0 + 3 * HOUR)
        assert trade.plot_available is True

        service.open_gates(trade.id, "u2", "abcde", now=t0 + 4 * HOUR)
        assert trade.step == 3
        assert trade.transfer_code == "ABCDE"

        done = service.complete(trade.id, "u2", now=t0 + 25 * HOUR)
        assert done.status == TradeStatus.completed.value
        assert done.step == 4
        assert done.completed_at == to_iso(t0 + 25 * HOUR)
        assert "Raymond" in ProfileService(db).get_profile("u1").owned

    def test_offer_is_stored(self, service):
        trade = service.create_request(
            "u1", "Marshal", offer=TradeOffer(kind="bells", amount=500000, text="plus NMT")
        )
        assert trade.offer_kind == "bells"
        assert trade.offer_amount == 500000
        assert trade.offer_text == "plus NMT"

    def test_none_offer_drops_amount(self, service):
        trade = service.create_request("u1", "Marshal", offer=TradeOffer(amount=10))
        assert trade.offer_kind == "none"
        assert trade.offer_amount is None


class TestCreate:
    """Request creation guards."""

    def test_duplicate_active_request_conflicts(self, service):
        service.create_request("u1", "Raymond")
        with pytest.raises(ConflictError) as exc_info:
            service.create_request("u1", "Raymond")
        assert exc_info.value.code == "E-1002"

    def test_duplicate_allowed_after_completion(self, service, t0):
        trade = _at_step_three(service, t0)
        service.complete(trade.id, "u2", now=t0 + 5 * HOUR)
        again = service.create_request("u1", "Raymond", now=t0 + 6 * HOUR)
        assert again.id != trade.id

    def test_basket_skips_already_requested_items(self, service):
        service.create_request("u1", "Raymond")
        created = service.create_requests("u1", ["Raymond", "Marshal", "Sherb", "Marshal"])
        assert [t.item_name for t in created] == ["Marshal", "Sherb"]

    def test_basket_applies_per_item_offers(self, service):
        created = service.create_requests(
            "u1",
            ["Marshal", "Sherb"],
            offers={"Sherb": TradeOffer(kind="nmt", amount=3)},
        )
        by_item = {t.item_name: t for t in created}
        assert by_item["Sherb"].offer_kind == "nmt"
        assert by_item["Sherb"].offer_amount == 3
        assert by_item["Marshal"].offer_kind == "none"

    def test_negative_offer_rejected(self, service, db):
        with pytest.raises(ValidationError) as exc_info:
            service.create_request("u1", "Raymond", offer=TradeOffer(kind="bells", amount=-1))
        assert exc_info.value.code == "E-2003"
        assert db.execute(select(TradeRequest)).first() is None

    def test_blank_item_rejected(self, service):
        with pytest.raises(ValidationError):
            service.create_request("u1", "   ")

    def test_restricted_user_cannot_create(self, service, db):
        db.get(UserProfile, "u1").trade_restricted = True
        db.commit()
        with pytest.raises(AuthorizationError) as exc_info:
            service.create_request("u1", "Raymond")
        assert exc_info.value.code == "E-5003"

    def test_unknown_requester_not_found(self, service):
        with pytest.raises(NotFoundError):
            service.create_request("ghost", "Raymond")


class TestAccept:
    """Accepting open requests."""

    def test_self_accept_rejected_and_trade_stays_open(self, service, db):
        trade = service.create_request("u1", "Raymond")
        with pytest.raises(AuthorizationError):
            service.accept(trade.id, "u1")
        db.refresh(trade)
        assert trade.status == TradeStatus.open.value
        assert trade.acceptor_id is None

    def test_second_accept_conflicts_and_acceptor_unchanged(self, service, db):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(ConflictError):
            service.accept(trade.id, "u3")
        db.refresh(trade)
        assert trade.acceptor_id == "u2"

    def test_banned_user_cannot_accept(self, service, db):
        trade = service.create_request("u1", "Raymond")
        db.get(UserProfile, "u2").banned = True
        db.commit()
        with pytest.raises(AuthorizationError):
            service.accept(trade.id, "u2")

    def test_accept_race_has_exactly_one_winner(self, file_based_db, make_profile, t0):
        """Two sessions both see the request open; only one accept lands."""
        engine = create_engine(file_based_db)
        make_session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        first, second = make_session(), make_session()
        try:
            make_profile(first, "u1")
            make_profile(first, "u2", owned=["Raymond"])
            make_profile(first, "u3", owned=["Raymond"])
            trade = TradeService(first).create_request("u1", "Raymond", now=t0)

            # Both actors load the open row before either writes
            assert TradeService(first).get_trade(trade.id).status == "open"
            assert TradeService(second).get_trade(trade.id).status == "open"

            TradeService(first).accept(trade.id, "u2", now=t0 + HOUR)
            with pytest.raises(ConflictError):
                TradeService(second).accept(trade.id, "u3", now=t0 + HOUR)

            second.expire_all()
            winner = TradeService(second).get_trade(trade.id)
            assert winner.acceptor_id == "u2"
            assert winner.status == TradeStatus.ongoing.value
        finally:
            first.close()
            second.close()
            engine.dispose()


class TestStepTransitions:
    """Role and step guards on box, plot and open gates."""

    def test_tradee_cannot_box(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(AuthorizationError):
            service.mark_boxed(trade.id, "u1")

    def test_bystander_cannot_box(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(AuthorizationError):
            service.mark_boxed(trade.id, "u3")

    def test_box_twice_conflicts(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        service.mark_boxed(trade.id, "u2")
        with pytest.raises(ConflictError):
            service.mark_boxed(trade.id, "u2")

    def test_open_gates_requires_plot(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        service.mark_boxed(trade.id, "u2")
        with pytest.raises(ConflictError):
            service.open_gates(trade.id, "u2", "ABCDE")

    @pytest.mark.parametrize("code", ["", "ABCD", "AB CDE", "abc-de", "A" * 33])
    def test_malformed_transfer_code_rejected(self, service, db, code):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        service.mark_boxed(trade.id, "u2")
        service.confirm_plot(trade.id, "u1")
        with pytest.raises(ValidationError) as exc_info:
            service.open_gates(trade.id, "u2", code)
        assert exc_info.value.code == "E-2001"
        db.refresh(trade)
        assert trade.step == 2
        assert trade.transfer_code == ""


class TestCompletionTiming:
    """Trader completes any time at step 3; tradee only after 24h."""

    def test_trader_completes_immediately(self, service, t0):
        trade = _at_step_three(service, t0)
        done = service.complete(trade.id, "u2", now=t0 + 4 * HOUR + timedelta(minutes=1))
        assert done.status == TradeStatus.completed.value

    def test_tradee_before_24h_rejected(self, service, db, t0):
        trade = _at_step_three(service, t0)
        with pytest.raises(ConflictError) as exc_info:
            service.complete(trade.id, "u1", now=t0 + 27 * HOUR)
        assert exc_info.value.code == "E-1003"
        db.refresh(trade)
        assert trade.status == TradeStatus.ongoing.value
        assert trade.step == 3

    def test_tradee_after_24h_accepted(self, service, t0):
        trade = _at_step_three(service, t0)
        done = service.complete(trade.id, "u1", now=t0 + 28 * HOUR)
        assert done.status == TradeStatus.completed.value
        assert done.step == 4

    def test_complete_before_step_three_conflicts(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(ConflictError):
            service.complete(trade.id, "u2")

    def test_completion_rolls_back_without_requester_profile(self, service, db, t0):
        """Trade row and profile credit commit together or not at all."""
        trade = _at_step_three(service, t0)
        db.delete(db.get(UserProfile, "u1"))
        db.commit()

        with pytest.raises(NotFoundError):
            service.complete(trade.id, "u2", now=t0 + 5 * HOUR)

        db.refresh(trade)
        assert trade.status == TradeStatus.ongoing.value
        assert trade.completed_at is None


class TestCancelAndExpire:
    """Recovery transitions reset to open and clear transfer artifacts."""

    @staticmethod
    def _drive_to(service: TradeService, t0, step: int) -> TradeRequest:
        """Raymond trade between u1 and u2 left at step 1, 2 (plot confirmed) or 3."""
        if step == 3:
            return _at_step_three(service, t0)
        trade = service.create_request("u1", "Raymond", now=t0)
        service.accept(trade.id, "u2", now=t0 + HOUR)
        if step == 2:
            service.mark_boxed(trade.id, "u2", now=t0 + 2 * HOUR)
            service.confirm_plot(trade.id, "u1", now=t0 + 3 * HOUR)
        return trade

    @pytest.mark.parametrize("step", [1, 2, 3])
    @pytest.mark.parametrize("action,actor", [("cancel", "u2"), ("expire", "u1")])
    def test_reset_clears_every_handoff_field(self, service, db, t0, step, action, actor):
        trade = self._drive_to(service, t0, step)
        assert trade.step == step
        if step >= 2:
            assert trade.plot_available is True

        getattr(service, action)(trade.id, actor, now=t0 + 52 * HOUR)

        db.expire_all()
        reset = service.get_trade(trade.id)
        assert reset.status == TradeStatus.open.value
        assert reset.acceptor_id is None
        assert reset.step == 1
        assert reset.plot_available is False
        assert reset.transfer_code == ""

    def test_cancel_at_step_one_resets(self, service, t0):
        trade = service.create_request("u1", "Raymond", now=t0)
        service.accept(trade.id, "u2", now=t0 + HOUR)
        reset = service.cancel(trade.id, "u1", now=t0 + 2 * HOUR)
        assert reset.status == TradeStatus.open.value
        assert reset.acceptor_id is None
        assert reset.step == 1

    def test_cancel_after_boxing_needs_inactivity(self, service, t0):
        trade = service.create_request("u1", "Raymond", now=t0)
        service.accept(trade.id, "u2", now=t0)
        service.mark_boxed(trade.id, "u2", now=t0 + HOUR)
        with pytest.raises(ConflictError) as exc_info:
            service.cancel(trade.id, "u2", now=t0 + 10 * HOUR)
        assert exc_info.value.code == "E-1004"

        reset = service.cancel(trade.id, "u2", now=t0 + 49 * HOUR)
        assert reset.status == TradeStatus.open.value

    def test_bystander_cannot_cancel(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(AuthorizationError):
            service.cancel(trade.id, "u3")

    def test_expire_before_48h_rejected(self, service, t0):
        trade = _at_step_three(service, t0)
        with pytest.raises(ConflictError) as exc_info:
            service.expire(trade.id, "u1", now=t0 + 4 * HOUR + 47 * HOUR)
        assert exc_info.value.code == "E-1004"

    def test_expire_after_48h_clears_step_three_fields(self, service, t0):
        trade = _at_step_three(service, t0)
        reset = service.expire(trade.id, "u1", now=t0 + 4 * HOUR + 48 * HOUR)
        assert reset.status == TradeStatus.open.value
        assert reset.acceptor_id is None
        assert reset.step == 1
        assert reset.plot_available is False
        assert reset.transfer_code == ""

    def test_reset_trade_can_be_accepted_by_someone_else(self, service, t0):
        trade = service.create_request("u1", "Raymond", now=t0)
        service.accept(trade.id, "u2", now=t0)
        service.cancel(trade.id, "u2", now=t0 + HOUR)
        service.accept(trade.id, "u3", now=t0 + 2 * HOUR)
        assert trade.acceptor_id == "u3"

    def test_sweep_resets_only_stale_trades(self, service, t0):
        stale = _at_step_three(service, t0)
        fresh = service.create_request("u1", "Marshal", now=t0)
        service.accept(fresh.id, "u2", now=t0 + 50 * HOUR)

        assert service.expire_stale_trades(now=t0 + 60 * HOUR) == 1
        assert service.get_trade(stale.id).status == TradeStatus.open.value
        assert service.get_trade(stale.id).transfer_code == ""
        assert service.get_trade(fresh.id).status == TradeStatus.ongoing.value


class TestWithdrawAndReport:
    """Hard delete of open requests and reporting of completed trades."""

    def test_requester_withdraws_open_request(self, service):
        trade = service.create_request("u1", "Raymond")
        trade_id = trade.id
        service.withdraw(trade_id, "u1")
        assert service.get_trade(trade_id) is None

    def test_other_user_cannot_withdraw(self, service):
        trade = service.create_request("u1", "Raymond")
        with pytest.raises(AuthorizationError):
            service.withdraw(trade.id, "u2")

    def test_withdraw_after_accept_conflicts(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(ConflictError):
            service.withdraw(trade.id, "u1")

    def test_report_completed_trade_once(self, service, t0):
        trade = _at_step_three(service, t0)
        service.complete(trade.id, "u2", now=t0 + 5 * HOUR)

        reported = service.report(trade.id, "u1", "Villager never moved in")
        assert reported.reported is True
        assert reported.reported_by == "u1"
        assert reported.status == TradeStatus.completed.value
        assert reported.step == 4

        with pytest.raises(ConflictError):
            service.report(trade.id, "u2", "Again")

    def test_report_requires_reason(self, service, t0):
        trade = _at_step_three(service, t0)
        service.complete(trade.id, "u2", now=t0 + 5 * HOUR)
        with pytest.raises(ValidationError):
            service.report(trade.id, "u1", "  ")

    def test_report_ongoing_trade_conflicts(self, service):
        trade = service.create_request("u1", "Raymond")
        service.accept(trade.id, "u2")
        with pytest.raises(ConflictError):
            service.report(trade.id, "u1", "Too slow")


class TestLegacyAcceptor:
    """Rows accepted before acceptor_id existed."""

    @pytest.fixture
    def legacy_trade(self, db, t0) -> TradeRequest:
        trade = TradeRequest(
            requester_id="u1",
            item_name="Marshal",
            status=TradeStatus.ongoing.value,
            step=1,
            created_at=to_iso(t0),
        )
        db.add(trade)
        db.commit()
        return trade

    def test_owner_acts_as_trader_and_acceptor_is_backfilled(self, service, legacy_trade):
        service.mark_boxed(legacy_trade.id, "u2")
        assert legacy_trade.step == 2
        assert legacy_trade.acceptor_id == "u2"

    def test_non_owner_is_not_trader(self, service, legacy_trade):
        with pytest.raises(AuthorizationError):
            service.mark_boxed(legacy_trade.id, "u3")

    def test_backfill_sets_single_owner(self, service, legacy_trade):
        assert service.backfill_acceptor_ids() == 1
        assert service.get_trade(legacy_trade.id).acceptor_id == "u2"

    def test_backfill_skips_ambiguous_rows(self, service, db, t0):
        trade = TradeRequest(
            requester_id="u1",
            item_name="Raymond",
            status=TradeStatus.ongoing.value,
            step=1,
            created_at=to_iso(t0),
        )
        db.add(trade)
        db.commit()
        # u2 and u3 both own Raymond
        assert service.backfill_acceptor_ids() == 0
        assert service.get_trade(trade.id).acceptor_id is None


class TestReadModels:
    """Available actions and list views."""

    def test_available_actions_follow_role_and_step(self, service, t0):
        trade = service.create_request("u1", "Raymond", now=t0)
        assert service.available_actions(trade, "u1", now=t0) == [TradeAction.withdraw]
        assert service.available_actions(trade, "u2", now=t0) == [TradeAction.accept]

        service.accept(trade.id, "u2", now=t0)
        assert service.available_actions(trade, "u2", now=t0) == [
            TradeAction.box,
            TradeAction.cancel,
        ]
        assert service.available_actions(trade, "u1", now=t0) == [TradeAction.cancel]
        assert service.available_actions(trade, "u3", now=t0) == []

        service.mark_boxed(trade.id, "u2", now=t0)
        assert service.available_actions(trade, "u1", now=t0) == [TradeAction.confirm_plot]
        assert service.available_actions(trade, "u2", now=t0) == []

    def test_available_actions_at_step_three(self, service, t0):
        trade = _at_step_three(service, t0)
        assert service.available_actions(trade, "u2", now=t0 + 5 * HOUR) == [
            TradeAction.complete
        ]
        assert service.available_actions(trade, "u1", now=t0 + 5 * HOUR) == []
        assert service.available_actions(trade, "u1", now=t0 + 28 * HOUR) == [
            TradeAction.complete
        ]
        assert service.available_actions(trade, "u1", now=t0 + 52 * HOUR) == [
            TradeAction.complete,
            TradeAction.cancel,
            TradeAction.expire,
        ]

    def test_incoming_lists_requests_for_owned_items(self, service):
        raymond = service.create_request("u1", "Raymond")
        service.create_request("u1", "Sherb")
        assert [t.id for t in service.list_incoming("u2")] == [raymond.id]
        assert service.list_incoming("u1") == []

    def test_my_open_and_ongoing(self, service):
        first = service.create_request("u1", "Raymond")
        second = service.create_request("u1", "Marshal")
        service.accept(second.id, "u2")
        assert [t.id for t in service.list_my_open("u1")] == [first.id]
        assert [t.id for t in service.list_ongoing("u1")] == [second.id]
        assert [t.id for t in service.list_ongoing("u2")] == [second.id]

    def test_history_hides_trades_older_than_28_days(self, service, t0):
        trade = _at_step_three(service, t0)
        service.complete(trade.id, "u2", now=t0 + 5 * HOUR)
        assert len(service.list_history("u1", now=t0 + timedelta(days=27))) == 1
        assert service.list_history("u1", now=t0 + timedelta(days=29)) == []
        assert service.get_trade(trade.id) is not None
