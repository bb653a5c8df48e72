"""Database module for Dreamie Exchange state management and persistence."""

from src.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from src.db.models import (
    Message,
    ModerationAction,
    ModerationLogEntry,
    OfferKind,
    Ticket,
    TicketCategory,
    TicketStatus,
    TradeRequest,
    TradeStatus,
    TradeStep,
    UserProfile,
    UserReport,
    UserReportStatus,
)

__all__ = [
    # Models
    "TradeRequest",
    "Message",
    "ModerationLogEntry",
    "UserProfile",
    "UserReport",
    "Ticket",
    # Enums
    "TradeStatus",
    "TradeStep",
    "OfferKind",
    "ModerationAction",
    "UserReportStatus",
    "TicketCategory",
    "TicketStatus",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
