"""Shared surface of the chat strategies and the error channel they report through."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
import logging
from typing import TypeVar

from ..exceptions import ChatSyncError, map_backend_error
from ..interfaces import Notifier
from ..models import ModelOptions, SendMessageParams

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
ErrorCallback = Callable[[ChatSyncError], None]
FlagListener = Callable[[bool], None]


class StrategyKind(str, Enum):
    PERSISTED = "persisted"
    EPHEMERAL = "ephemeral"
    UNUSABLE = "unusable"


class ErrorChannel:
    """Report a failure once: a user-facing toast plus the owner's ``on_error`` hook."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._notifier = notifier
        self._on_error = on_error

    def report(self, error: ChatSyncError, title: str) -> None:
        LOGGER.warning(
            "strategy.error.reported",
            extra={
                "event": "strategy.error.reported",
                "title": title,
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )
        if self._notifier is not None:
            self._notifier.error(title, str(error))
        if self._on_error is not None:
            self._on_error(error)

    async def guard(self, title: str, call: Awaitable[T]) -> T:
        """Await a backend call, mapping and reporting any failure before re-raising it."""
        try:
            return await call
        except ChatSyncError as exc:
            self.report(exc, title)
            raise
        except Exception as exc:  # noqa: BLE001 - backend failures arrive untyped.
            error = map_backend_error(exc)
            self.report(error, title)
            raise error from exc


class GeneratingFlag:
    """Observable "assistant is generating" bit owned by the engine."""

    def __init__(self, value: bool = False) -> None:
        self._value = value
        self._listeners: list[FlagListener] = []

    @property
    def value(self) -> bool:
        return self._value

    def __bool__(self) -> bool:
        return self._value

    def set(self, value: bool) -> None:
        if value == self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            listener(value)

    def subscribe(self, listener: FlagListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe


class ChatStrategy(ABC):
    """How send/edit/retry/delete/stop/save are carried out for one mode."""

    kind: StrategyKind

    @abstractmethod
    async def send_message(
        self, params: SendMessageParams, options: ModelOptions | None = None
    ) -> None: ...

    @abstractmethod
    async def edit_message(
        self, message_id: str, content: str, options: ModelOptions | None = None
    ) -> None: ...

    @abstractmethod
    async def retry_from_message(
        self, message_id: str, options: ModelOptions | None = None
    ) -> None: ...

    @abstractmethod
    async def delete_message(self, message_id: str) -> None: ...

    @abstractmethod
    def stop_generation(self) -> None:
        """Stop the active generation. Takes effect before any network round-trip."""

    async def save_conversation(self, title: str | None = None) -> str | None:
        """Promote the conversation to durable storage; only ephemeral mode does work here."""
        return None

    async def resume(self) -> None:
        """Re-trigger generation for an interrupted conversation."""
        return None
