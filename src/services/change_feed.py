"""Live-update feed for trade, message and ticket changes.

Subscribers receive invalidation events keyed by topic:
    user:<user_id>             trades and tickets affecting a user
    trade:<trade_id>           one trade row
    conversation:<conv_id>     messages in one conversation

An event only says *what* changed ({"event": "trade_changed", "data":
{"trade_id": ...}}); subscribers reload their view from the store instead of
trusting the payload. Services publish after commit from worker threads, so
delivery hops onto each subscriber's event loop with call_soon_threadsafe.
"""

import asyncio
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


def trade_topic(trade_id: str) -> str:
    return f"trade:{trade_id}"


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class ChangeFeed:
    """Publish/subscribe hub bridging store writes to SSE connections.

    Maintains one asyncio.Queue per subscription. Several subscriptions
    may share a topic (multiple tabs, both trade parties).
    """

    def __init__(self) -> None:
        """Initialize feed with an empty subscription map."""
        self._subscribers: dict[
            str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue[dict[str, Any]]]]
        ] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str) -> asyncio.Queue[dict[str, Any]]:
        """Create a queue receiving events for a topic.

        Must be called from a running event loop.

        Args:
            topic: Topic string, e.g. "conversation:trade:123".

        Returns:
            asyncio.Queue of event dicts.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        with self._lock:
            self._subscribers.setdefault(topic, []).append((loop, queue))
        logger.debug("Subscribed to %s", topic)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        """Remove one subscription. No-op if it is already gone."""
        with self._lock:
            entries = self._subscribers.get(topic, [])
            remaining = [(lp, q) for lp, q in entries if q is not queue]
            if remaining:
                self._subscribers[topic] = remaining
            else:
                self._subscribers.pop(topic, None)
        logger.debug("Unsubscribed from %s", topic)

    def has_subscribers(self, topic: str) -> bool:
        with self._lock:
            return bool(self._subscribers.get(topic))

    def publish(self, topic: str, event: str, data: dict[str, Any]) -> int:
        """Deliver an event to every subscriber of a topic.

        Safe to call from any thread. Subscribers whose loop has closed are
        dropped.

        Args:
            topic: Target topic.
            event: Event name (trade_changed, message_created, ...).
            data: Identifiers of what changed.

        Returns:
            Number of subscriptions the event was delivered to.
        """
        with self._lock:
            entries = list(self._subscribers.get(topic, []))

        payload = {"event": event, "data": data}
        delivered = 0
        for loop, queue in entries:
            if loop.is_closed():
                self.unsubscribe(topic, queue)
                continue
            loop.call_soon_threadsafe(queue.put_nowait, payload)
            delivered += 1
        return delivered


# Process-wide feed shared by services and the SSE route
change_feed = ChangeFeed()
