"""Service layer for Dreamie Exchange.

Provides the trade lifecycle, encrypted chat, presence, moderation and
ticket workflows over the SQLAlchemy session.
"""

from src.services.chat_service import ChatService, Conversation
from src.services.moderation_service import ModerationService
from src.services.profile_service import ProfileService
from src.services.role_resolver import TradeRole, resolve_role
from src.services.ticket_service import TicketService
from src.services.trade_service import TradeAction, TradeOffer, TradeService

__all__ = [
    "TradeService",
    "TradeAction",
    "TradeOffer",
    "TradeRole",
    "resolve_role",
    "ChatService",
    "Conversation",
    "ProfileService",
    "ModerationService",
    "TicketService",
]
