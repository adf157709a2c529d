"""Fan-out of engine and planner events to subscriber channels.

Subscribers register a channel under one or more keys (a project id,
``orchestration:<id>`` or ``planning:<id>``). Publishing never awaits:
each live channel gets the event via a non-blocking ``deliver`` and
closed channels are skipped. A channel that closes removes itself
from every key it was subscribed to, and empty keys are dropped.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import weakref
from collections.abc import AsyncIterator
from typing import Any, Callable

from .events import RemoteEvent, event_to_dict

logger = logging.getLogger(__name__)


def orchestration_key(orchestration_id: str) -> str:
    return f"orchestration:{orchestration_id}"


def planning_key(session_id: str) -> str:
    return f"planning:{session_id}"


class SubscriberChannel(abc.ABC):
    """One subscriber endpoint. Receives one JSON-ready dict per publish."""

    def __init__(self) -> None:
        self._closed = False
        self._close_listeners: list[Callable[[SubscriberChannel], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @abc.abstractmethod
    def deliver(self, payload: dict[str, Any]) -> bool:
        """Hand *payload* to the subscriber without blocking.

        Returns False when the payload was dropped.
        """

    def on_close(self, listener: Callable[[SubscriberChannel], None]) -> None:
        self._close_listeners.append(listener)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        listeners, self._close_listeners = self._close_listeners, []
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Channel close listener failed")


class QueueChannel(SubscriberChannel):
    """Channel backed by a bounded asyncio.Queue.

    ``consume()`` yields payloads until the channel is closed and the
    queue has drained.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        super().__init__()
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(
            maxsize=maxsize
        )

    def deliver(self, payload: dict[str, Any]) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(
                "Subscriber queue full, dropping %s event", payload.get("type"),
            )
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        super().close()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass  # consumer sees closed on its next get

    def pending(self) -> int:
        return self._queue.qsize()

    async def consume(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            if self._closed and self._queue.empty():
                return
            item = await self._queue.get()
            if item is None:
                return
            yield item


class EventBroadcaster:
    """Key → set-of-channels registry with non-blocking publish."""

    def __init__(self) -> None:
        self._subscribers: dict[str, weakref.WeakSet[SubscriberChannel]] = {}
        self._tracked: weakref.WeakSet[SubscriberChannel] = weakref.WeakSet()

    def subscribe(self, key: str, channel: SubscriberChannel) -> None:
        if channel.closed:
            logger.debug("Ignoring subscribe of closed channel to %s", key)
            return
        self._subscribers.setdefault(key, weakref.WeakSet()).add(channel)
        if channel not in self._tracked:
            self._tracked.add(channel)
            channel.on_close(self.disconnect)
        logger.debug("Subscribed channel to %s (%d total)", key, len(self._subscribers[key]))

    def unsubscribe(self, key: str, channel: SubscriberChannel) -> None:
        channels = self._subscribers.get(key)
        if channels is None:
            return
        channels.discard(channel)
        if not channels:
            del self._subscribers[key]

    def disconnect(self, channel: SubscriberChannel) -> None:
        """Remove *channel* from every key it belongs to."""
        for key in list(self._subscribers):
            self.unsubscribe(key, channel)
        self._tracked.discard(channel)

    def publish(self, key: str, event: RemoteEvent | dict[str, Any]) -> int:
        """Deliver *event* to every live channel under *key*.

        Returns the number of channels that accepted it.
        """
        return self.publish_many([key], event)

    def publish_many(self, keys: list[str], event: RemoteEvent | dict[str, Any]) -> int:
        """Publish under several keys, delivering at most once per channel."""
        targets: list[SubscriberChannel] = []
        seen: set[int] = set()
        for key in keys:
            for channel in list(self._subscribers.get(key, ())):
                if id(channel) not in seen:
                    seen.add(id(channel))
                    targets.append(channel)
        if not targets:
            return 0
        payload = event_to_dict(event) if isinstance(event, RemoteEvent) else dict(event)
        delivered = 0
        for channel in targets:
            if channel.closed:
                continue
            try:
                if channel.deliver(payload):
                    delivered += 1
            except Exception:
                logger.exception("Delivery to subscriber failed for %s", ", ".join(keys))
        return delivered

    def subscriber_count(self, key: str) -> int:
        channels = self._subscribers.get(key)
        return len(channels) if channels else 0

    def keys(self) -> list[str]:
        return [key for key, channels in self._subscribers.items() if channels]
