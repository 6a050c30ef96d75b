"""Push channel between the owner's live query and the engine."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .models import Conversation, Message


class _Marker:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


#: The authoritative list has not loaded yet.
LOADING = _Marker("LOADING")
#: No conversation id is set, so there is nothing to query.
SKIP = _Marker("SKIP")

SnapshotValue = Conversation | list[Message] | _Marker


@dataclass(frozen=True)
class Snapshot:
    """The latest state observed for one conversation id."""

    conversation_id: str | None = None
    messages: list[Message] | None = None
    is_streaming: bool = False
    skipped: bool = True
    title: str | None = None

    @property
    def is_loading(self) -> bool:
        return not self.skipped and self.messages is None


SnapshotListener = Callable[[Snapshot], Awaitable[None] | None]


class MessageSubscription:
    """Hold the latest snapshot and fan it out to listeners.

    The owner publishes every update from its data source; a ``LOADING``
    value means "not yet loaded" and ``SKIP`` means there is no id to watch.
    """

    def __init__(self) -> None:
        self._latest = Snapshot()
        self._listeners: list[SnapshotListener] = []

    @property
    def latest(self) -> Snapshot:
        return self._latest

    def listen(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unlisten() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unlisten

    async def publish(self, conversation_id: str | None, value: SnapshotValue) -> Snapshot:
        """Record a new value for ``conversation_id`` and notify listeners."""
        snapshot = self._to_snapshot(conversation_id, value)
        self._latest = snapshot
        for listener in list(self._listeners):
            outcome = listener(snapshot)
            if asyncio.iscoroutine(outcome):
                await outcome
        return snapshot

    @staticmethod
    def _to_snapshot(conversation_id: str | None, value: SnapshotValue) -> Snapshot:
        if value is SKIP or not conversation_id:
            return Snapshot(conversation_id=None, skipped=True)
        if value is LOADING:
            return Snapshot(conversation_id=conversation_id, skipped=False)
        if isinstance(value, Conversation):
            return Snapshot(
                conversation_id=conversation_id,
                messages=list(value.messages),
                is_streaming=value.is_streaming,
                skipped=False,
                title=value.title,
            )
        return Snapshot(conversation_id=conversation_id, messages=list(value), skipped=False)
