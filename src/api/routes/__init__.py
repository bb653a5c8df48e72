"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from src.api.routes import conversations, feed, moderation, profiles, tickets, trades

__all__ = [
    "conversations",
    "feed",
    "moderation",
    "profiles",
    "tickets",
    "trades",
]
