"""Tests for the live-update pub/sub feed."""

import asyncio
import threading

from src.services.change_feed import ChangeFeed, trade_topic, user_topic


def test_topic_names():
    assert user_topic("u1") == "user:u1"
    assert trade_topic("t1") == "trade:t1"


def test_publish_without_subscribers_is_noop():
    assert ChangeFeed().publish("user:u1", "trade_changed", {}) == 0


def test_subscriber_receives_event():
    async def scenario():
        feed = ChangeFeed()
        queue = feed.subscribe("trade:t1")
        assert feed.publish("trade:t1", "trade_changed", {"trade_id": "t1"}) == 1
        return await asyncio.wait_for(queue.get(), timeout=1)

    event = asyncio.run(scenario())
    assert event == {"event": "trade_changed", "data": {"trade_id": "t1"}}


def test_publish_from_worker_thread():
    async def scenario():
        feed = ChangeFeed()
        queue = feed.subscribe("user:u1")
        worker = threading.Thread(
            target=feed.publish, args=("user:u1", "message_created", {"message_id": "m1"})
        )
        worker.start()
        worker.join()
        return await asyncio.wait_for(queue.get(), timeout=1)

    event = asyncio.run(scenario())
    assert event["data"] == {"message_id": "m1"}


def test_unsubscribe_stops_delivery():
    async def scenario():
        feed = ChangeFeed()
        first = feed.subscribe("user:u1")
        second = feed.subscribe("user:u1")
        feed.unsubscribe("user:u1", first)
        assert feed.publish("user:u1", "trade_changed", {}) == 1
        await asyncio.wait_for(second.get(), timeout=1)
        assert first.empty()
        feed.unsubscribe("user:u1", second)
        return feed.has_subscribers("user:u1")

    assert asyncio.run(scenario()) is False
