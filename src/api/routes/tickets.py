"""API routes for feedback and help tickets.

Users open tickets and list their own. The ticket conversation is served by
the conversations routes under "ticket:<id>". Status changes are
privileged and live in the moderation routes.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from src.api.middleware.auth import get_actor_id
from src.api.schemas import TicketCreate, TicketResponse
from src.db.connection import get_db
from src.errors.domain import AuthorizationError
from src.services.profile_service import ProfileService
from src.services.ticket_service import TicketService

router = APIRouter(prefix="/tickets", tags=["tickets"])


def _get_service(db: Session = Depends(get_db)) -> TicketService:
    """Dependency injector for TicketService."""
    return TicketService(db)


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED)
def create_ticket(
    payload: TicketCreate,
    actor_id: str = Depends(get_actor_id),
    service: TicketService = Depends(_get_service),
) -> TicketResponse:
    """Open a ticket with its first message to the moderators."""
    ticket = service.create_ticket(actor_id, payload.category, payload.topic, payload.message)
    return TicketResponse.model_validate(ticket)


@router.get("", response_model=list[TicketResponse])
def list_my_tickets(
    actor_id: str = Depends(get_actor_id),
    service: TicketService = Depends(_get_service),
) -> list[TicketResponse]:
    return [TicketResponse.model_validate(t) for t in service.list_tickets(user_id=actor_id)]


@router.get("/{ticket_id}", response_model=TicketResponse)
def get_ticket(
    ticket_id: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> TicketResponse:
    """Get one ticket; visible to its owner and to moderators."""
    ticket = TicketService(db).get_ticket(ticket_id)
    if ticket.user_id != actor_id and not ProfileService(db).is_privileged(actor_id):
        raise AuthorizationError.from_code(
            "E-5001", actor_id=actor_id, action=f"view ticket {ticket_id}"
        )
    return TicketResponse.model_validate(ticket)
