"""Profile reads and inventory toggles over the identity store.

The store row is the single source of truth. Display reads go through a
small process-global snapshot cache. Entries expire after
PROFILE_CACHE_TTL_SECONDS and every successful write in this process
invalidates the affected user's entry after commit. Authorization decisions
(privilege, bans, restrictions, owned items for the legacy role fallback)
never use the cache; they re-read the row from the store.

Example:
    svc = ProfileService(db)
    svc.toggle_owned("u1", "Raymond")
    snapshot = svc.get_profile("u1")
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from src.db.models import UserProfile, to_iso
from src.errors.domain import NotFoundError
from src.utils.text import MAX_ITEM_NAME_LENGTH, require_text

logger = logging.getLogger(__name__)

_DEFAULT_PRIVILEGED_RANKS = frozenset({0, 2})

# Bounds how long a write made outside this process stays invisible to display reads
PROFILE_CACHE_TTL_SECONDS = 30.0

_clock = time.monotonic
_lock = threading.Lock()
_cache: dict[str, tuple["ProfileSnapshot", float]] = {}
# Bumped on every invalidation; a read that raced one is not cached
_generation = 0


@dataclass(frozen=True)
class ProfileSnapshot:
    """Immutable read model of a profile row."""

    id: str
    user_number: int | None
    username: str | None
    rank: int | None
    owned: tuple[str, ...]
    wishlist: tuple[str, ...]
    favourites: tuple[str, ...]
    verified: tuple[str, ...]
    last_seen_at: str | None
    trade_restricted: bool
    banned: bool

    @classmethod
    def from_row(cls, row: UserProfile) -> "ProfileSnapshot":
        return cls(
            id=row.id,
            user_number=row.user_number,
            username=row.username,
            rank=row.rank,
            owned=tuple(row.owned_list),
            wishlist=tuple(row.wishlist_list),
            favourites=tuple(row.favourites_list),
            verified=tuple(row.verified_list),
            last_seen_at=row.last_seen_at,
            trade_restricted=bool(row.trade_restricted),
            banned=bool(row.banned),
        )


def privileged_ranks() -> frozenset[int]:
    """Ranks with full moderation privilege (DREAMIE_PRIVILEGED_RANKS, default 0,2)."""
    raw = os.environ.get("DREAMIE_PRIVILEGED_RANKS", "").strip()
    if not raw:
        return _DEFAULT_PRIVILEGED_RANKS
    ranks: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ranks.add(int(part))
        except ValueError:
            logger.warning("Ignoring non-numeric privileged rank %r", part)
    return frozenset(ranks)


def invalidate_profile(*user_ids: str | None) -> None:
    """Drop cached snapshots. Call after every committed profile write."""
    global _generation
    with _lock:
        _generation += 1
        for user_id in user_ids:
            if user_id:
                _cache.pop(user_id, None)


def clear_profile_cache() -> None:
    """Reset the snapshot cache. Used by tests."""
    global _generation
    with _lock:
        _generation += 1
        _cache.clear()


def add_item(items: list[str], item_name: str) -> list[str]:
    """Return items with item_name appended once."""
    return items if item_name in items else [*items, item_name]


def remove_item(items: list[str], item_name: str) -> list[str]:
    return [i for i in items if i != item_name]


class ProfileService:
    """Profile reads, privilege checks and list toggles.

    Toggle methods commit; they are complete units of work.
    """

    def __init__(self, db: Session) -> None:
        """Initialize with a SQLAlchemy session.

        Args:
            db: Active database session.
        """
        self.db = db

    def get_row(self, user_id: str) -> UserProfile | None:
        """Load the live profile row (uncached, for use inside transactions)."""
        return self.db.get(UserProfile, user_id)

    def require_row(self, user_id: str) -> UserProfile:
        row = self.get_row(user_id)
        if row is None:
            raise NotFoundError("Profile", user_id)
        return row

    def load_current(self, user_id: str) -> UserProfile | None:
        """Re-read the row from the store, replacing any state the session holds.

        Used for authorization checks, which must see rank and sanction
        changes made by other processes.
        """
        return self.db.get(UserProfile, user_id, populate_existing=True)

    def get_profile(self, user_id: str) -> ProfileSnapshot | None:
        """Read-through cached profile snapshot for display.

        Args:
            user_id: Profile id.

        Returns:
            ProfileSnapshot, or None if the user has no profile row.
        """
        with _lock:
            cached = _cache.get(user_id)
            generation = _generation
        if cached is not None:
            snapshot, expires_at = cached
            if _clock() < expires_at:
                return snapshot

        row = self.get_row(user_id)
        if row is None:
            return None
        snapshot = ProfileSnapshot.from_row(row)
        with _lock:
            if generation == _generation:
                _cache[user_id] = (snapshot, _clock() + PROFILE_CACHE_TTL_SECONDS)
        return snapshot

    def owned_items(self, user_id: str) -> tuple[str, ...]:
        row = self.load_current(user_id)
        return tuple(row.owned_list) if row else ()

    def is_banned(self, user_id: str) -> bool:
        row = self.load_current(user_id)
        return bool(row and row.banned)

    def can_trade(self, user_id: str) -> bool:
        """False for unknown, banned or trade-restricted users."""
        row = self.load_current(user_id)
        return row is not None and not (row.banned or row.trade_restricted)

    def is_privileged(self, user_id: str) -> bool:
        """True when the user's current rank grants full moderation privilege."""
        row = self.load_current(user_id)
        if row is None or row.rank is None:
            return False
        return row.rank in privileged_ranks()

    def toggle_owned(self, user_id: str, item_name: str) -> ProfileSnapshot:
        """Add item_name to the owned list, or remove it if present."""
        return self._toggle(user_id, item_name, "owned_list")

    def toggle_wishlist(self, user_id: str, item_name: str) -> ProfileSnapshot:
        return self._toggle(user_id, item_name, "wishlist_list")

    def toggle_favourite(self, user_id: str, item_name: str) -> ProfileSnapshot:
        return self._toggle(user_id, item_name, "favourites_list")

    def touch_last_seen(self, user_id: str, now: datetime | None = None) -> str:
        """Refresh last_seen_at (heartbeat and keystroke presence signal).

        Returns:
            The stored ISO8601 timestamp.
        """
        row = self.require_row(user_id)
        stamp = to_iso(now or datetime.now(UTC))
        row.last_seen_at = stamp
        self.db.commit()
        invalidate_profile(user_id)
        return stamp

    def _toggle(self, user_id: str, item_name: str, attr: str) -> ProfileSnapshot:
        item_name = require_text(item_name, "Item name", MAX_ITEM_NAME_LENGTH)
        row = self.require_row(user_id)
        items = getattr(row, attr)
        if item_name in items:
            setattr(row, attr, remove_item(items, item_name))
        else:
            setattr(row, attr, add_item(items, item_name))
        self.db.commit()
        invalidate_profile(user_id)
        self.db.refresh(row)
        return ProfileSnapshot.from_row(row)
