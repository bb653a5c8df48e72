"""API routes for the caller's profile lists and presence.

Uses the /api/v1/profiles prefix. Toggles write through to the identity
store and invalidate the cached profile.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.api.middleware.auth import get_actor_id
from src.api.schemas import (
    HeartbeatResponse,
    ItemToggleRequest,
    PresenceResponse,
    ProfileResponse,
)
from src.db.connection import get_db
from src.errors.domain import NotFoundError
from src.services.presence import PresenceService
from src.services.profile_service import ProfileService

router = APIRouter(prefix="/profiles", tags=["profiles"])


def _get_service(db: Session = Depends(get_db)) -> ProfileService:
    """Dependency injector for ProfileService."""
    return ProfileService(db)


def _get_presence(db: Session = Depends(get_db)) -> PresenceService:
    return PresenceService(db)


@router.get("/me", response_model=ProfileResponse)
def get_my_profile(
    actor_id: str = Depends(get_actor_id),
    service: ProfileService = Depends(_get_service),
) -> ProfileResponse:
    profile = service.get_profile(actor_id)
    if profile is None:
        raise NotFoundError("Profile", actor_id)
    return ProfileResponse.model_validate(profile)


@router.post("/me/owned", response_model=ProfileResponse)
def toggle_owned(
    payload: ItemToggleRequest,
    actor_id: str = Depends(get_actor_id),
    service: ProfileService = Depends(_get_service),
) -> ProfileResponse:
    """Add the item to the owned list, or remove it if already there."""
    return ProfileResponse.model_validate(service.toggle_owned(actor_id, payload.item_name))


@router.post("/me/wishlist", response_model=ProfileResponse)
def toggle_wishlist(
    payload: ItemToggleRequest,
    actor_id: str = Depends(get_actor_id),
    service: ProfileService = Depends(_get_service),
) -> ProfileResponse:
    return ProfileResponse.model_validate(service.toggle_wishlist(actor_id, payload.item_name))


@router.post("/me/favourites", response_model=ProfileResponse)
def toggle_favourite(
    payload: ItemToggleRequest,
    actor_id: str = Depends(get_actor_id),
    service: ProfileService = Depends(_get_service),
) -> ProfileResponse:
    return ProfileResponse.model_validate(service.toggle_favourite(actor_id, payload.item_name))


@router.post("/me/heartbeat", response_model=HeartbeatResponse)
def heartbeat(
    actor_id: str = Depends(get_actor_id),
    presence: PresenceService = Depends(_get_presence),
) -> HeartbeatResponse:
    """Presence heartbeat; clients call this every two minutes."""
    return HeartbeatResponse(last_seen_at=presence.heartbeat(actor_id))


@router.get("/{user_id}/presence", response_model=PresenceResponse)
def get_presence(
    user_id: str,
    actor_id: str = Depends(get_actor_id),
    presence: PresenceService = Depends(_get_presence),
) -> PresenceResponse:
    """Online/typing state of another user."""
    return PresenceResponse.model_validate(presence.peer_presence(user_id))
