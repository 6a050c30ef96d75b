"""Generation lifecycle state machine and debounced transition flags."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
import logging

LOGGER = logging.getLogger(__name__)

DEFAULT_TRANSITION_DELAY_SECONDS = 0.3


class GenerationStatus(str, Enum):
    """Finite states of a single send/generate cycle."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    STOPPED = "stopped"
    COMPLETE = "complete"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({GenerationStatus.SENDING, GenerationStatus.STREAMING})
TERMINAL_STATUSES = frozenset(
    {GenerationStatus.STOPPED, GenerationStatus.COMPLETE, GenerationStatus.ERROR}
)


@dataclass(frozen=True)
class GenerationState:
    """Immutable snapshot of the current generation cycle."""

    status: GenerationStatus = GenerationStatus.IDLE
    current_message_id: str | None = None
    stream_content: str = ""
    error: BaseException | None = None
    can_retry: bool = False


StateListener = Callable[[GenerationState], None]


class MessageStateMachine:
    """Track the lifecycle of the active generation for UI feedback and cancellation.

    Transitions are synchronous so a stop intent takes effect immediately,
    independent of any in-flight network round-trip.
    """

    def __init__(self) -> None:
        self._state = GenerationState()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> GenerationState:
        return self._state

    @property
    def status(self) -> GenerationStatus:
        return self._state.status

    @property
    def current_message_id(self) -> str | None:
        return self._state.current_message_id

    @property
    def stream_content(self) -> str:
        return self._state.stream_content

    @property
    def error(self) -> BaseException | None:
        return self._state.error

    @property
    def can_retry(self) -> bool:
        return self._state.can_retry

    @property
    def is_idle(self) -> bool:
        return self._state.status is GenerationStatus.IDLE

    @property
    def is_sending(self) -> bool:
        return self._state.status is GenerationStatus.SENDING

    @property
    def is_streaming(self) -> bool:
        return self._state.status is GenerationStatus.STREAMING

    @property
    def is_stopped(self) -> bool:
        return self._state.status is GenerationStatus.STOPPED

    @property
    def is_complete(self) -> bool:
        return self._state.status is GenerationStatus.COMPLETE

    @property
    def has_error(self) -> bool:
        return self._state.status is GenerationStatus.ERROR

    @property
    def is_active(self) -> bool:
        return self._state.status in ACTIVE_STATUSES

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a listener called after every transition; returns an unsubscribe hook."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def send_message(self, message_id: str) -> bool:
        """Enter ``sending`` for a new cycle.

        Returns False without changing state when a generation is already
        active; that indicates a caller bug and is logged as such.
        """
        if self.is_active:
            LOGGER.warning(
                "state.send.rejected",
                extra={
                    "event": "state.send.rejected",
                    "status": self._state.status.value,
                    "active_message_id": self._state.current_message_id,
                    "requested_message_id": message_id,
                },
            )
            return False
        self._set(
            GenerationState(
                status=GenerationStatus.SENDING, current_message_id=message_id
            )
        )
        return True

    def start_streaming(self, message_id: str) -> bool:
        """Move from ``sending`` to ``streaming`` for the given message."""
        if self._state.status is not GenerationStatus.SENDING:
            LOGGER.debug(
                "state.stream.ignored",
                extra={
                    "event": "state.stream.ignored",
                    "status": self._state.status.value,
                },
            )
            return False
        self._set(
            replace(
                self._state,
                status=GenerationStatus.STREAMING,
                current_message_id=message_id,
            )
        )
        return True

    def add_stream_chunk(self, text: str) -> None:
        """Append streamed text; ignored outside ``streaming``."""
        if self._state.status is not GenerationStatus.STREAMING or not text:
            return
        self._set(replace(self._state, stream_content=self._state.stream_content + text))

    def stop_generation(self) -> bool:
        """Stop the active cycle. Idempotent; valid from sending or streaming."""
        if self._state.status is GenerationStatus.STOPPED:
            return True
        if not self.is_active:
            return False
        self._set(replace(self._state, status=GenerationStatus.STOPPED))
        return True

    def finish(self) -> bool:
        """Complete a streaming cycle."""
        if self._state.status is not GenerationStatus.STREAMING:
            return False
        self._set(replace(self._state, status=GenerationStatus.COMPLETE))
        return True

    def end_cycle(self) -> None:
        """Close whatever cycle is open once the owning operation returns.

        A cycle that never reached ``streaming`` is completed directly;
        stopped and errored cycles are left as they are.
        """
        if self._state.status is GenerationStatus.SENDING:
            self._set(replace(self._state, status=GenerationStatus.COMPLETE))
        elif self._state.status is GenerationStatus.STREAMING:
            self.finish()

    def set_error(self, error: BaseException, can_retry: bool = True) -> None:
        """Enter ``error`` from any state."""
        self._set(
            replace(
                self._state,
                status=GenerationStatus.ERROR,
                error=error,
                can_retry=can_retry,
            )
        )

    def reset(self) -> None:
        """Return to ``idle`` and drop the cycle's data."""
        self._set(GenerationState())

    def _set(self, new_state: GenerationState) -> None:
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)


class TransitionFlag:
    """Cosmetic boolean that clears itself after a short fixed delay."""

    def __init__(self, delay_seconds: float = DEFAULT_TRANSITION_DELAY_SECONDS) -> None:
        self.delay_seconds = delay_seconds
        self._value = False
        self._handle: asyncio.TimerHandle | None = None

    @property
    def value(self) -> bool:
        return self._value

    def __bool__(self) -> bool:
        return self._value

    def trigger(self) -> None:
        """Raise the flag and (re)arm its self-clearing timer."""
        self._value = True
        if self._handle is not None:
            self._handle.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to schedule on; the flag is purely cosmetic.
            self._value = False
            return
        self._handle = loop.call_later(self.delay_seconds, self.clear)

    def clear(self) -> None:
        self._value = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
