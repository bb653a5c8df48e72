"""Online and typing presence approximated from a single timestamp.

There is no presence channel. Each client refreshes its profile's
last_seen_at on a heartbeat and on every keystroke in a chat input; peers
derive both states from how recent that timestamp is.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from src.db.models import from_iso
from src.services.profile_service import ProfileService

ONLINE_WINDOW = timedelta(minutes=3)
TYPING_WINDOW = timedelta(seconds=8)
HEARTBEAT_INTERVAL = timedelta(minutes=2)

# A heartbeat slower than the online window would make idle users flicker offline
if HEARTBEAT_INTERVAL > ONLINE_WINDOW:
    raise ValueError("HEARTBEAT_INTERVAL must not exceed ONLINE_WINDOW")


def _age(last_seen_at: str | None, now: datetime) -> timedelta | None:
    seen = from_iso(last_seen_at)
    if seen is None:
        return None
    return now - seen


def is_online(last_seen_at: str | None, now: datetime | None = None) -> bool:
    """True when last_seen_at is less than ONLINE_WINDOW old."""
    age = _age(last_seen_at, now or datetime.now(UTC))
    return age is not None and age < ONLINE_WINDOW


def is_typing(last_seen_at: str | None, now: datetime | None = None) -> bool:
    """True when last_seen_at is less than TYPING_WINDOW old.

    Typing implies online since TYPING_WINDOW is shorter. A heartbeat landing
    inside the window is indistinguishable from a keystroke; that false
    positive is accepted.
    """
    age = _age(last_seen_at, now or datetime.now(UTC))
    return age is not None and age < TYPING_WINDOW


@dataclass(frozen=True)
class PresenceState:
    """Presence of one user as seen by a peer."""

    user_id: str
    online: bool
    typing: bool
    last_seen_at: str | None


class PresenceService:
    """Heartbeat writes and peer presence reads."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self.profiles = ProfileService(db)

    def heartbeat(self, user_id: str, now: datetime | None = None) -> str:
        """Record that the user is active. Returns the stored timestamp."""
        return self.profiles.touch_last_seen(user_id, now=now)

    def touch(self, user_id: str, now: datetime | None = None) -> str:
        """Keystroke signal; same write as a heartbeat."""
        return self.profiles.touch_last_seen(user_id, now=now)

    def peer_presence(self, user_id: str, now: datetime | None = None) -> PresenceState:
        """Derive a peer's online/typing state from their last_seen_at.

        Unknown users are reported offline.
        """
        now = now or datetime.now(UTC)
        profile = self.profiles.get_profile(user_id)
        last_seen = profile.last_seen_at if profile else None
        return PresenceState(
            user_id=user_id,
            online=is_online(last_seen, now),
            typing=is_typing(last_seen, now),
            last_seen_at=last_seen,
        )
