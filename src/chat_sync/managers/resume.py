"""Exactly-once recovery of conversations left mid-generation."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging

from ..exceptions import ResumeFailedError
from ..models import Message
from ..task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

ResumeAction = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[BaseException], None]


def needs_resume(messages: list[Message], is_streaming_hint: bool = False) -> bool:
    """Return True when the conversation ended on an unanswered user turn.

    An explicit streaming hint from the backend counts as well.
    """
    if is_streaming_hint:
        return True
    if not messages:
        return False
    return messages[-1].role == "user"


class ResumeCoordinator:
    """Trigger at most one resume per conversation id for the engine's lifetime.

    A failed attempt clears the id so a later snapshot can try again; a
    successful one stays marked while the resumed stream completes.
    """

    def __init__(
        self,
        resume: ResumeAction,
        task_manager: TaskManager | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._resume = resume
        self._tasks = task_manager or TaskManager()
        self._on_error = on_error
        self._attempted: dict[str, bool] = {}

    def has_attempted(self, conversation_id: str) -> bool:
        return self._attempted.get(conversation_id, False)

    def observe(
        self,
        conversation_id: str | None,
        messages: list[Message] | None,
        is_streaming_hint: bool = False,
        *,
        is_generating: bool = False,
    ) -> bool:
        """Inspect an authoritative snapshot; schedule a resume when one is due.

        Returns True only when this call scheduled a resume.
        """
        if not conversation_id or messages is None or is_generating:
            return False
        if self.has_attempted(conversation_id):
            return False
        if not needs_resume(messages, is_streaming_hint):
            return False

        self._attempted[conversation_id] = True
        LOGGER.info(
            "resume.scheduled",
            extra={"event": "resume.scheduled", "conversation_id": conversation_id},
        )
        self._tasks.spawn(self.run(conversation_id), name=f"resume:{conversation_id}")
        return True

    async def run(self, conversation_id: str) -> None:
        """Invoke the resume action, rolling back the attempted flag on failure."""
        try:
            await self._resume(conversation_id)
        except Exception as exc:  # noqa: BLE001 - any failure must re-arm the trigger.
            self._attempted.pop(conversation_id, None)
            LOGGER.warning(
                "resume.failed",
                extra={
                    "event": "resume.failed",
                    "conversation_id": conversation_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            if self._on_error is not None:
                error = ResumeFailedError(f"Failed to resume conversation: {exc}")
                error.__cause__ = exc
                self._on_error(error)

    def forget(self, conversation_id: str) -> None:
        self._attempted.pop(conversation_id, None)

    async def wait(self) -> None:
        """Await scheduled resume attempts."""
        await self._tasks.await_all()
