"""API routes for encrypted conversations.

Conversation ids are "trade:<id>", "ticket:<id>" or "direct:<a>:<b>"; the
counterpart is derived from the id and the acting user. Message text is
encrypted before it is stored and decrypted on read; undecryptable
messages come back as "[encrypted]".
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from src.api.middleware.auth import get_actor_id
from src.api.schemas import (
    ChatMessageResponse,
    ConversationHistoryResponse,
    MarkReadRequest,
    MessageSend,
    ReasonRequest,
    ReportedMessagesResponse,
    ReportMessagesRequest,
    UnreadCountsResponse,
    UserReportResponse,
)
from src.db.connection import get_db
from src.services.chat_service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _get_service(db: Session = Depends(get_db)) -> ChatService:
    """Dependency injector for ChatService."""
    return ChatService(db)


@router.get("/unread", response_model=UnreadCountsResponse)
def unread_counts(
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> UnreadCountsResponse:
    """Unread message counts per conversation for the caller."""
    return UnreadCountsResponse(counts=service.unread_counts(actor_id))


@router.get("/{conversation_id}/messages", response_model=ConversationHistoryResponse)
def get_history(
    conversation_id: str,
    limit: int | None = None,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> ConversationHistoryResponse:
    """Decrypted messages in creation order.

    Args:
        conversation_id: Conversation to read.
        limit: Only the most recent N messages, still oldest first.
    """
    chat = service.open_for_actor(conversation_id, actor_id)
    return ConversationHistoryResponse(
        conversation_id=conversation_id,
        messages=[ChatMessageResponse.model_validate(m) for m in chat.history(limit=limit)],
        unread=chat.unread_count(),
    )


@router.post(
    "/{conversation_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: str,
    payload: MessageSend,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> ChatMessageResponse:
    chat = service.open_for_actor(conversation_id, actor_id)
    return ChatMessageResponse.model_validate(chat.send(payload.text))


@router.post("/{conversation_id}/read")
def mark_read(
    conversation_id: str,
    payload: MarkReadRequest,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> dict:
    """Mark messages addressed to the caller as read."""
    chat = service.open_for_actor(conversation_id, actor_id)
    return {"marked": chat.mark_read(payload.message_ids)}


@router.post("/{conversation_id}/typing", status_code=status.HTTP_204_NO_CONTENT)
def typing(
    conversation_id: str,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> Response:
    """Keystroke signal; refreshes the caller's presence."""
    service.open_for_actor(conversation_id, actor_id).on_keystroke()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/reports/messages", response_model=ReportedMessagesResponse)
def report_messages(
    conversation_id: str,
    payload: ReportMessagesRequest,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> ReportedMessagesResponse:
    """Flag a message and the messages leading up to it."""
    chat = service.open_for_actor(conversation_id, actor_id)
    flagged = chat.report_messages(payload.message_id, payload.reason)
    return ReportedMessagesResponse(flagged_message_ids=flagged)


@router.post(
    "/{conversation_id}/reports",
    response_model=UserReportResponse,
    status_code=status.HTTP_201_CREATED,
)
def report_conversation(
    conversation_id: str,
    payload: ReasonRequest,
    actor_id: str = Depends(get_actor_id),
    service: ChatService = Depends(_get_service),
) -> UserReportResponse:
    """Report the other participant of a conversation."""
    chat = service.open_for_actor(conversation_id, actor_id)
    return UserReportResponse.model_validate(chat.report_conversation(payload.reason))
