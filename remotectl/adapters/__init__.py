"""Adapters package - fan-out of engine and planner events to subscribers."""
from __future__ import annotations

__all__ = [
    "EventBroadcaster",
    "QueueChannel",
    "SubscriberChannel",
    "event_to_dict",
    "dict_to_event",
]

from remotectl.adapters.broadcaster import EventBroadcaster, QueueChannel, SubscriberChannel
from remotectl.adapters.events import dict_to_event, event_to_dict
