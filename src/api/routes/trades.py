"""API routes for trade requests and the handoff protocol.

All endpoints use the /api/v1/trades prefix and act on behalf of the user
in the X-User-Id header. Domain errors propagate to the application's
exception handlers (409 conflict, 403 forbidden, 400 invalid, 404 missing).
"""

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from src.api.middleware.auth import get_actor_id
from src.api.schemas import (
    OpenGatesRequest,
    ReasonRequest,
    TradeCreate,
    TradeDetailResponse,
    TradeListResponse,
    TradeResponse,
)
from src.db.connection import get_db
from src.db.models import TradeRequest
from src.services.trade_service import TradeOffer, TradeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trades", tags=["trades"])

TradeView = Literal["incoming", "mine", "ongoing", "history"]


def _get_service(db: Session = Depends(get_db)) -> TradeService:
    """Dependency injector for TradeService."""
    return TradeService(db)


def _detail(service: TradeService, trade: TradeRequest, actor_id: str) -> TradeDetailResponse:
    return TradeDetailResponse(
        trade=TradeResponse.model_validate(trade),
        role=service.role_for(trade, actor_id).value,
        available_actions=[a.value for a in service.available_actions(trade, actor_id)],
    )


@router.post("", response_model=list[TradeResponse], status_code=status.HTTP_201_CREATED)
def create_trades(
    payload: TradeCreate,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> list[TradeResponse]:
    """Create a request for one item, or one request per basket item.

    Args:
        payload: Items and offers.
        actor_id: Requesting user (injected).
        service: TradeService (injected).

    Returns:
        The created requests. Basket items that are already requested are
        skipped; a single already-requested item is a 409.
    """
    if len(payload.items) == 1:
        item = payload.items[0]
        offer_payload = payload.offers.get(item) or payload.offer
        offer = TradeOffer(**offer_payload.model_dump()) if offer_payload else None
        trades = [service.create_request(actor_id, item, offer)]
    else:
        offers = {name: TradeOffer(**o.model_dump()) for name, o in payload.offers.items()}
        if payload.offer is not None:
            default = TradeOffer(**payload.offer.model_dump())
            offers = {name: offers.get(name, default) for name in payload.items}
        trades = service.create_requests(actor_id, payload.items, offers)
    return [TradeResponse.model_validate(t) for t in trades]


@router.get("", response_model=TradeListResponse)
def list_trades(
    view: TradeView = "ongoing",
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeListResponse:
    """List trades for one of the user's views.

    Args:
        view: incoming (requests for items I own), mine (my open requests),
            ongoing (either side), or history (completed, last 28 days).
    """
    if view == "incoming":
        trades = service.list_incoming(actor_id)
    elif view == "mine":
        trades = service.list_my_open(actor_id)
    elif view == "history":
        trades = service.list_history(actor_id)
    else:
        trades = service.list_ongoing(actor_id)
    return TradeListResponse(
        trades=[TradeResponse.model_validate(t) for t in trades],
        total=len(trades),
    )


@router.get("/{trade_id}", response_model=TradeDetailResponse)
def get_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    """Get a trade with the caller's role and the actions they may take."""
    return _detail(service, service.require_trade(trade_id), actor_id)


@router.post("/{trade_id}/accept", response_model=TradeDetailResponse)
def accept_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    return _detail(service, service.accept(trade_id, actor_id), actor_id)


@router.post("/{trade_id}/box", response_model=TradeDetailResponse)
def box_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    return _detail(service, service.mark_boxed(trade_id, actor_id), actor_id)


@router.post("/{trade_id}/plot", response_model=TradeDetailResponse)
def confirm_plot(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    return _detail(service, service.confirm_plot(trade_id, actor_id), actor_id)


@router.post("/{trade_id}/open-gates", response_model=TradeDetailResponse)
def open_gates(
    trade_id: str,
    payload: OpenGatesRequest,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    """Share the transfer code with the tradee (trader only)."""
    trade = service.open_gates(trade_id, actor_id, payload.transfer_code)
    return _detail(service, trade, actor_id)


@router.post("/{trade_id}/complete", response_model=TradeDetailResponse)
def complete_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    return _detail(service, service.complete(trade_id, actor_id), actor_id)


@router.post("/{trade_id}/cancel", response_model=TradeDetailResponse)
def cancel_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    return _detail(service, service.cancel(trade_id, actor_id), actor_id)


@router.post("/{trade_id}/expire", response_model=TradeDetailResponse)
def expire_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    return _detail(service, service.expire(trade_id, actor_id), actor_id)


@router.post("/{trade_id}/report", response_model=TradeDetailResponse)
def report_trade(
    trade_id: str,
    payload: ReasonRequest,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> TradeDetailResponse:
    """Flag a completed trade for moderator review."""
    trade = service.report(trade_id, actor_id, payload.reason)
    return _detail(service, trade, actor_id)


@router.delete("/{trade_id}", status_code=status.HTTP_204_NO_CONTENT)
def withdraw_trade(
    trade_id: str,
    actor_id: str = Depends(get_actor_id),
    service: TradeService = Depends(_get_service),
) -> Response:
    """Withdraw (hard-delete) one of the caller's open requests."""
    service.withdraw(trade_id, actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
