"""API routes for privileged moderation.

Every endpoint requires the caller to hold a privileged rank; the service
layer checks this before any write and the handler maps refusals to 403.
All endpoints use the /api/v1/moderation prefix.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.middleware.auth import get_actor_id
from src.api.schemas import (
    FlaggedMessageResponse,
    ModerationLogEntryResponse,
    ReasonRequest,
    SanctionRequest,
    TicketResponse,
    TicketStatusUpdate,
    TradeResponse,
    UserReportResponse,
    UserReportStatusUpdate,
    VerifyRequest,
)
from src.db.connection import get_db
from src.db.models import TicketCategory, TicketStatus, UserReportStatus
from src.services.moderation_service import (
    DEFAULT_FLAGGED_LIMIT,
    DEFAULT_LOG_LIMIT,
    ModerationService,
)
from src.services.ticket_service import TicketService

router = APIRouter(prefix="/moderation", tags=["moderation"])


def _get_service(db: Session = Depends(get_db)) -> ModerationService:
    """Dependency injector for ModerationService."""
    return ModerationService(db)


@router.get("/log", response_model=list[ModerationLogEntryResponse])
def get_log(
    limit: int = DEFAULT_LOG_LIMIT,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> list[ModerationLogEntryResponse]:
    """Most recent moderation decisions, newest first."""
    service.require_privileged(actor_id)
    return [ModerationLogEntryResponse.model_validate(e) for e in service.list_log(limit)]


@router.post("/users/{user_id}/sanctions", response_model=ModerationLogEntryResponse)
def sanction_user(
    user_id: str,
    payload: SanctionRequest,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> ModerationLogEntryResponse:
    """Restrict, unrestrict, ban, unban or warn a user."""
    handler = {
        "restrict": service.restrict,
        "unrestrict": service.unrestrict,
        "ban": service.ban,
        "unban": service.unban,
        "warn": service.warn,
    }[payload.action]
    entry = handler(user_id, actor_id, reason=payload.reason)
    return ModerationLogEntryResponse.model_validate(entry)


@router.get("/trades/reported", response_model=list[TradeResponse])
def list_reported_trades(
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> list[TradeResponse]:
    service.require_privileged(actor_id)
    return [TradeResponse.model_validate(t) for t in service.list_reported_trades()]


@router.post("/trades/{trade_id}/dismiss-report", response_model=TradeResponse)
def dismiss_trade_report(
    trade_id: str,
    payload: ReasonRequest,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> TradeResponse:
    trade = service.dismiss_trade_report(trade_id, actor_id, reason=payload.reason)
    return TradeResponse.model_validate(trade)


@router.post("/trades/{trade_id}/verify", response_model=TradeResponse)
def verify_trade(
    trade_id: str,
    payload: VerifyRequest,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> TradeResponse:
    """Record the ownership verification result for a completed trade."""
    trade = service.verify_completion(
        trade_id, actor_id, passed=payload.passed, reason=payload.reason
    )
    return TradeResponse.model_validate(trade)


@router.get("/messages/flagged", response_model=list[FlaggedMessageResponse])
def list_flagged_messages(
    conversation_id: str | None = None,
    limit: int = DEFAULT_FLAGGED_LIMIT,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> list[FlaggedMessageResponse]:
    """Decrypted messages flagged by message reports, grouped by conversation."""
    messages = service.list_flagged_messages(
        actor_id, conversation_id=conversation_id, limit=limit
    )
    return [FlaggedMessageResponse.model_validate(m) for m in messages]


@router.get("/user-reports", response_model=list[UserReportResponse])
def list_user_reports(
    status: UserReportStatus | None = None,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> list[UserReportResponse]:
    service.require_privileged(actor_id)
    return [UserReportResponse.model_validate(r) for r in service.list_user_reports(status)]


@router.patch("/user-reports/{report_id}", response_model=UserReportResponse)
def update_user_report(
    report_id: str,
    payload: UserReportStatusUpdate,
    actor_id: str = Depends(get_actor_id),
    service: ModerationService = Depends(_get_service),
) -> UserReportResponse:
    report = service.set_user_report_status(
        report_id, actor_id, payload.status, reason=payload.reason
    )
    return UserReportResponse.model_validate(report)


@router.get("/tickets", response_model=list[TicketResponse])
def list_tickets(
    category: TicketCategory | None = None,
    status: TicketStatus | None = None,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> list[TicketResponse]:
    ModerationService(db).require_privileged(actor_id)
    tickets = TicketService(db).list_tickets(category=category, status=status)
    return [TicketResponse.model_validate(t) for t in tickets]


@router.patch("/tickets/{ticket_id}", response_model=TicketResponse)
def update_ticket_status(
    ticket_id: str,
    payload: TicketStatusUpdate,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> TicketResponse:
    """Move a ticket along its category's workflow."""
    ticket = TicketService(db).set_ticket_status(ticket_id, actor_id, payload.status)
    return TicketResponse.model_validate(ticket)
