"""Optimistic and authoritative message merging with streaming detection."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
import logging

from .models import Message

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_PENDING_MESSAGES = 50


def is_streaming_message(message: Message) -> bool:
    """Return True for an assistant message with no finish reason that was not stopped."""
    return message.is_streaming


def find_streaming_message(messages: Iterable[Message] | None) -> Message | None:
    """Return the first streaming assistant message, if any."""
    if not messages:
        return None
    for message in messages:
        if is_streaming_message(message):
            return message
    return None


def is_visible_message(message: Message) -> bool:
    """System messages and empty assistant placeholders are never shown."""
    if message.role == "system":
        return False
    if message.role == "assistant" and not message.content and not message.reasoning:
        return False
    return True


def visible_messages(messages: Iterable[Message]) -> list[Message]:
    return [message for message in messages if is_visible_message(message)]


def _sorted_by_creation(messages: list[Message]) -> list[Message]:
    # sorted() is stable, so equal timestamps keep insertion order.
    return sorted(messages, key=lambda message: message.created_at)


def merge_messages(
    authoritative: list[Message] | None,
    pending: Mapping[str, Message],
) -> list[Message]:
    """Merge confirmed messages with still-unconfirmed optimistic ones.

    ``None`` means the authoritative list has not loaded yet, in which
    case only pending messages are returned. A pending entry is dropped as
    soon as a confirmed message with the same ``role:content`` signature
    exists.
    """
    if authoritative is None:
        return _sorted_by_creation(list(pending.values()))
    confirmed = {message.signature for message in authoritative}
    survivors = [
        message for message in pending.values() if message.signature not in confirmed
    ]
    return _sorted_by_creation(list(authoritative) + survivors)


class ConversationMessageStore:
    """Own the pending map of one conversation view and expose the merged list.

    Pending entries are never mutated, only added or dropped. The map is
    bounded; when full, the oldest entry is evicted.
    """

    def __init__(self, max_pending_messages: int = DEFAULT_MAX_PENDING_MESSAGES) -> None:
        self.max_pending_messages = max(1, max_pending_messages)
        self._pending: dict[str, Message] = {}
        self._authoritative: list[Message] | None = None

    @property
    def authoritative(self) -> list[Message] | None:
        return None if self._authoritative is None else list(self._authoritative)

    @property
    def is_loaded(self) -> bool:
        return self._authoritative is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def merge(
        self,
        authoritative: list[Message] | None,
        pending: Mapping[str, Message] | None = None,
    ) -> list[Message]:
        """Merge ``authoritative`` with ``pending`` (defaults to this store's map)."""
        return merge_messages(authoritative, self._pending if pending is None else pending)

    def update_authoritative(self, authoritative: list[Message] | None) -> list[Message]:
        """Record the latest snapshot, retire confirmed pending entries, return the merge."""
        self._authoritative = None if authoritative is None else list(authoritative)
        if self._authoritative is not None and self._pending:
            confirmed = {message.signature for message in self._authoritative}
            retired = [
                message_id
                for message_id, message in self._pending.items()
                if message.signature in confirmed
            ]
            for message_id in retired:
                del self._pending[message_id]
        return self.messages

    @property
    def messages(self) -> list[Message]:
        return merge_messages(self._authoritative, self._pending)

    def add_optimistic(self, message: Message) -> None:
        """Insert a locally synthesized message keyed by its client id."""
        self._pending[message.id] = message
        while len(self._pending) > self.max_pending_messages:
            self._evict_oldest()

    def remove_optimistic(self, message_id: str) -> bool:
        return self._pending.pop(message_id, None) is not None

    def clear_optimistic(self) -> None:
        self._pending.clear()

    def reset(self) -> None:
        """Forget both the snapshot and the pending map, e.g. on conversation switch."""
        self._authoritative = None
        self._pending.clear()

    def find_streaming_message(self) -> Message | None:
        return find_streaming_message(self._authoritative)

    def is_message_streaming(self, message_id: str, is_generating: bool) -> bool:
        """Combine the backend's view of a message with the caller's generating intent."""
        if not is_generating:
            return False
        streaming = self.find_streaming_message()
        if streaming is not None and streaming.id == message_id:
            return True
        for message in self._authoritative or ():
            if message.id == message_id:
                return is_streaming_message(message)
        return False

    def _evict_oldest(self) -> None:
        oldest_id = min(
            self._pending,
            key=lambda message_id: self._pending[message_id].created_at,
        )
        evicted = self._pending.pop(oldest_id)
        LOGGER.warning(
            "store.pending.evicted",
            extra={
                "event": "store.pending.evicted",
                "message_id": oldest_id,
                "role": evicted.role,
                "max_pending_messages": self.max_pending_messages,
            },
        )
