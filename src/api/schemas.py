"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the Dreamie Exchange REST API.
Text length and format rules live in the service layer so that violations
surface as registry-coded 400 responses rather than 422s.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from src.db.models import (
    OfferKind,
    TicketCategory,
    TicketStatus,
    UserReportStatus,
)

# Trades


class OfferPayload(BaseModel):
    """What the requester offers in return."""

    kind: OfferKind = OfferKind.none
    amount: int | None = None
    text: str = ""


class TradeCreate(BaseModel):
    """Request body for creating one or many trade requests.

    A single item raises a conflict when already requested; a basket of
    several items skips those silently.
    """

    items: list[str] = Field(..., min_length=1)
    offer: OfferPayload | None = None
    offers: dict[str, OfferPayload] = Field(default_factory=dict)


class OpenGatesRequest(BaseModel):
    transfer_code: str


class ReasonRequest(BaseModel):
    """Request body carrying a free-text reason."""

    reason: str = ""


class TradeResponse(BaseModel):
    """Trade row as returned by the API."""

    id: str
    requester_id: str
    acceptor_id: str | None = None
    item_name: str
    offer_text: str
    offer_kind: str
    offer_amount: int | None = None
    status: str
    step: int
    plot_available: bool
    transfer_code: str
    completed_at: str | None = None
    reported: bool
    report_reason: str | None = None
    reported_by: str | None = None
    trader_verified: bool | None = None
    created_at: str
    updated_at: str | None = None

    model_config = ConfigDict(from_attributes=True)


class TradeDetailResponse(BaseModel):
    """A trade plus the caller's role and currently permitted actions."""

    trade: TradeResponse
    role: str
    available_actions: list[str]


class TradeListResponse(BaseModel):
    trades: list[TradeResponse]
    total: int


# Conversations


class MessageSend(BaseModel):
    text: str


class MarkReadRequest(BaseModel):
    """Ids to mark read; omit to mark the whole conversation read."""

    message_ids: list[str] | None = None


class ReportMessagesRequest(BaseModel):
    message_id: str
    reason: str = ""


class ChatMessageResponse(BaseModel):
    """Decrypted chat message."""

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at: str
    read_at: str | None = None
    report_flagged: bool = False

    model_config = ConfigDict(from_attributes=True)


class ConversationHistoryResponse(BaseModel):
    conversation_id: str
    messages: list[ChatMessageResponse]
    unread: int


class ReportedMessagesResponse(BaseModel):
    flagged_message_ids: list[str]


class FlaggedMessageResponse(BaseModel):
    """Reported message as shown to moderators."""

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at: str
    report_reason: str | None = None
    reported_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PresenceResponse(BaseModel):
    user_id: str
    online: bool
    typing: bool
    last_seen_at: str | None = None

    model_config = ConfigDict(from_attributes=True)


class HeartbeatResponse(BaseModel):
    last_seen_at: str


class UnreadCountsResponse(BaseModel):
    counts: dict[str, int]


# Moderation and reports


class UserReportResponse(BaseModel):
    id: str
    reporter_id: str
    reported_id: str
    conversation_id: str | None = None
    reason: str
    status: str
    created_at: str
    updated_at: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ModerationLogEntryResponse(BaseModel):
    id: str
    moderator_id: str
    target_user_id: str | None = None
    action: str
    title: str
    reason: str | None = None
    meta: dict = Field(default_factory=dict)
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class SanctionRequest(BaseModel):
    """Body for restrict/unrestrict/ban/unban/warn."""

    action: Literal["restrict", "unrestrict", "ban", "unban", "warn"]
    reason: str | None = None


class VerifyRequest(BaseModel):
    passed: bool
    reason: str | None = None


class UserReportStatusUpdate(BaseModel):
    status: UserReportStatus
    reason: str | None = None


# Tickets


class TicketCreate(BaseModel):
    category: TicketCategory
    topic: str
    message: str


class TicketStatusUpdate(BaseModel):
    status: TicketStatus


class TicketResponse(BaseModel):
    id: str
    user_id: str
    category: str
    topic: str
    status: str
    conversation_id: str
    created_at: str
    updated_at: str | None = None
    resolved_by: str | None = None

    model_config = ConfigDict(from_attributes=True)


# Profiles


class ItemToggleRequest(BaseModel):
    item_name: str


class ProfileResponse(BaseModel):
    id: str
    user_number: int | None = None
    username: str | None = None
    rank: int | None = None
    owned: list[str]
    wishlist: list[str]
    favourites: list[str]
    verified: list[str]
    last_seen_at: str | None = None
    trade_restricted: bool
    banned: bool

    model_config = ConfigDict(from_attributes=True)


class ErrorResponse(BaseModel):
    """Standard error response for registry-coded failures."""

    error_code: str
    message: str
    remediation: str | None = None
