"""FastAPI routes for the live-update feed.

Provides a Server-Sent Events stream per topic. Events only name what
changed; clients reload the affected view through the REST routes.
"""

import asyncio
import json
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from src.api.middleware.auth import get_actor_id
from src.db.connection import get_db
from src.errors.domain import AuthorizationError, ValidationError
from src.services.change_feed import change_feed
from src.services.chat_service import ChatService
from src.services.role_resolver import TradeRole
from src.services.trade_service import TradeService

router = APIRouter(prefix="/feed", tags=["feed"])

PING_INTERVAL_SECONDS = 15.0


def authorize_topic(db: Session, topic: str, actor_id: str) -> None:
    """Check the actor may watch a topic.

    Raises:
        ValidationError: Unknown topic kind.
        AuthorizationError: The actor is not a participant.
        NotFoundError: The trade or conversation does not exist.
    """
    kind, _, key = topic.partition(":")
    if kind == "user":
        if key != actor_id:
            raise AuthorizationError.from_code(
                "E-5001", actor_id=actor_id, action=f"watch {topic}"
            )
    elif kind == "trade":
        service = TradeService(db)
        if service.role_for(service.require_trade(key), actor_id) == TradeRole.NONE:
            raise AuthorizationError.from_code(
                "E-5001", actor_id=actor_id, action=f"watch {topic}"
            )
    elif kind == "conversation":
        ChatService(db).open_for_actor(key, actor_id)
    else:
        raise ValidationError(f"Unknown feed topic '{topic}'")


def watched_topic(
    topic: str,
    actor_id: str = Depends(get_actor_id),
    db: Session = Depends(get_db),
) -> str:
    """Dependency returning the topic query parameter once access is checked.

    Sync, so FastAPI runs the store lookups in its threadpool rather than on
    the event loop.
    """
    authorize_topic(db, topic, actor_id)
    return topic


async def _event_generator(
    request: Request,
    topic: str,
    queue: asyncio.Queue,
) -> AsyncGenerator[dict, None]:
    """Generate SSE events from the topic's queue.

    Sends a ping when nothing arrives for PING_INTERVAL_SECONDS so proxies
    keep the connection open.

    Yields:
        Event dictionaries with a JSON 'data' payload.
    """
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL_SECONDS)
                yield {"data": json.dumps({"event": event["event"], "data": event["data"]})}
            except asyncio.TimeoutError:
                yield {"data": json.dumps({"event": "ping"})}
    finally:
        change_feed.unsubscribe(topic, queue)


@router.get("/stream")
async def stream_feed(
    request: Request,
    topic: str = Depends(watched_topic),
) -> EventSourceResponse:
    """Stream invalidation events for one topic via Server-Sent Events.

    Args:
        request: FastAPI request object.
        topic: user:<id>, trade:<id> or conversation:<conversation id>,
            already authorized for the caller.

    Returns:
        EventSourceResponse streaming change events.
    """
    queue = change_feed.subscribe(topic)
    return EventSourceResponse(
        _event_generator(request, topic, queue),
        media_type="text/event-stream",
    )
