"""Explicit publish/subscribe channel owned by each engine instance.

Usage:
    bus = EventBus()

    async def on_messages_changed(event):
        render(event.data["messages"])

    bus.subscribe(MESSAGES_CHANGED, on_messages_changed)
    await bus.publish(MESSAGES_CHANGED, {"messages": merged})

There is deliberately no module-level bus: owners pass one in.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any

LOGGER = logging.getLogger(__name__)

MESSAGES_CHANGED = "messages.changed"
CONVERSATION_CREATED = "conversation.created"


@dataclass
class Event:
    """Event data container."""

    name: str
    data: dict[str, Any]
    source: str | None = None


class EventBus:
    """Deliver engine events to subscribers registered by the owner."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable]] = {}

    def subscribe(self, event_name: str, handler: Callable) -> None:
        """Subscribe a sync or async handler to ``event_name``."""
        self._subscribers.setdefault(event_name, []).append(handler)
        LOGGER.debug("bus.subscribed", extra={"event": "bus.subscribed", "name": event_name})

    def unsubscribe(self, event_name: str, handler: Callable) -> None:
        handlers = self._subscribers.get(event_name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def has_subscribers(self, event_name: str) -> bool:
        return bool(self._subscribers.get(event_name))

    async def publish(
        self, event_name: str, data: dict[str, Any], source: str | None = None
    ) -> None:
        """Publish an event to all subscribers.

        A failing handler is logged and does not stop delivery to the rest.
        """
        event = Event(name=event_name, data=data, source=source)
        for handler in list(self._subscribers.get(event_name, [])):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as exc:
                LOGGER.error(
                    "bus.handler.failed",
                    extra={
                        "event": "bus.handler.failed",
                        "name": event_name,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    def clear(self, event_name: str | None = None) -> None:
        if event_name:
            self._subscribers.pop(event_name, None)
        else:
            self._subscribers.clear()
