"""Trader/tradee role resolution for a trade and an acting user.

The trader owns the item and accepted the request; the tradee requested it.
Rows accepted before acceptor_id existed have no acceptor; for those the
acting user counts as trader when they own the traded item. That fallback
is migration debt: TradeService.backfill_acceptor_ids() fills the column so
the branch stops firing.
"""

from collections.abc import Collection
from enum import Enum

from src.db.models import TradeRequest


class TradeRole(str, Enum):
    """Role of a user relative to one trade."""

    TRADER = "trader"
    TRADEE = "tradee"
    NONE = "none"


def is_legacy_acceptor(
    trade: TradeRequest,
    owned_items: Collection[str] = (),
) -> bool:
    """True when the trader role comes only from the ownership fallback."""
    return (
        not trade.acceptor_id
        and trade.status != "open"
        and trade.item_name in owned_items
    )


def resolve_role(
    trade: TradeRequest,
    user_id: str,
    owned_items: Collection[str] = (),
) -> TradeRole:
    """Resolve the acting user's role on a trade.

    Exactly one role is returned; a user who would match both sides is the
    trader.

    Args:
        trade: The trade row.
        user_id: Acting user id.
        owned_items: The acting user's owned item names (only consulted
            when the trade has no acceptor_id).

    Returns:
        TradeRole.TRADER, TradeRole.TRADEE or TradeRole.NONE.
    """
    if trade.acceptor_id and trade.acceptor_id == user_id:
        return TradeRole.TRADER
    if is_legacy_acceptor(trade, owned_items):
        return TradeRole.TRADER
    if trade.requester_id == user_id:
        return TradeRole.TRADEE
    return TradeRole.NONE
