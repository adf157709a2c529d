"""Subscriber registry and non-blocking fan-out."""

from __future__ import annotations

import gc

import pytest

from remotectl.adapters.broadcaster import (
    EventBroadcaster,
    QueueChannel,
    SubscriberChannel,
    orchestration_key,
    planning_key,
)
from remotectl.adapters.events import StatusChange


class _ListChannel(SubscriberChannel):
    def __init__(self) -> None:
        super().__init__()
        self.received: list[dict] = []

    def deliver(self, payload):
        self.received.append(payload)
        return True


class _BrokenChannel(SubscriberChannel):
    def deliver(self, payload):
        raise RuntimeError("socket gone")


def test_keys():
    assert orchestration_key("o1") == "orchestration:o1"
    assert planning_key("s1") == "planning:s1"


def test_publish_reaches_every_subscriber_of_key():
    b = EventBroadcaster()
    a, c = _ListChannel(), _ListChannel()
    b.subscribe("api", a)
    b.subscribe("api", c)
    b.subscribe("other", _ListChannel())

    assert b.publish("api", StatusChange(orchestration_id="o1", status="executing")) == 2
    assert a.received == [{"type": "status-change", "orchestrationId": "o1", "status": "executing"}]
    assert c.received == a.received


def test_publish_without_subscribers_is_a_noop():
    assert EventBroadcaster().publish("nobody", {"type": "x"}) == 0


def test_publish_many_delivers_once_per_channel():
    b = EventBroadcaster()
    ch = _ListChannel()
    b.subscribe("api", ch)
    b.subscribe(orchestration_key("o1"), ch)
    assert b.publish_many(["api", orchestration_key("o1")], {"type": "message"}) == 1
    assert len(ch.received) == 1


def test_close_removes_channel_from_every_key():
    b = EventBroadcaster()
    ch = _ListChannel()
    b.subscribe("api", ch)
    b.subscribe(orchestration_key("o1"), ch)
    ch.close()
    assert b.subscriber_count("api") == 0
    assert b.keys() == []


def test_closed_channel_is_skipped_and_not_subscribed():
    b = EventBroadcaster()
    ch = _ListChannel()
    ch.close()
    b.subscribe("api", ch)
    assert b.subscriber_count("api") == 0
    assert b.publish("api", {"type": "x"}) == 0


def test_failing_channel_does_not_stop_delivery():
    b = EventBroadcaster()
    good, broken = _ListChannel(), _BrokenChannel()
    b.subscribe("api", broken)
    b.subscribe("api", good)
    assert b.publish("api", {"type": "x"}) == 1
    assert good.received == [{"type": "x"}]


def test_dropped_channels_are_garbage_collected():
    b = EventBroadcaster()
    b.subscribe("api", _ListChannel())
    gc.collect()
    assert b.subscriber_count("api") == 0


def test_unsubscribe_drops_empty_key():
    b = EventBroadcaster()
    ch = _ListChannel()
    b.subscribe("api", ch)
    b.unsubscribe("api", ch)
    assert "api" not in b.keys()
    b.unsubscribe("missing", ch)


def test_queue_channel_drops_when_full():
    ch = QueueChannel(maxsize=2)
    assert ch.deliver({"type": "a"})
    assert ch.deliver({"type": "b"})
    assert ch.deliver({"type": "c"}) is False
    assert ch.pending() == 2


@pytest.mark.asyncio
async def test_queue_channel_consume_ends_after_close():
    ch = QueueChannel()
    ch.deliver({"type": "a"})
    ch.deliver({"type": "b"})
    ch.close()
    assert ch.deliver({"type": "late"}) is False
    received = [item async for item in ch.consume()]
    assert [r["type"] for r in received] == ["a", "b"]


@pytest.mark.asyncio
async def test_queue_channel_close_when_full_still_ends_consumer():
    ch = QueueChannel(maxsize=1)
    ch.deliver({"type": "a"})
    ch.close()
    received = [item async for item in ch.consume()]
    assert [r["type"] for r in received] == ["a"]
