"""Explicit event channel passed into the engine by its owner."""

from .bus import CONVERSATION_CREATED, MESSAGES_CHANGED, Event, EventBus

__all__ = [
    "EventBus",
    "Event",
    "MESSAGES_CHANGED",
    "CONVERSATION_CREATED",
]
