"""Strategy for conversations that live in durable storage."""

from __future__ import annotations

from collections.abc import Callable
import logging

from ..exceptions import EmptyMessageError, ModelNotSelectedError, map_backend_error
from ..interfaces import ConversationBackend, Navigator
from ..managers.attachment import AttachmentMode, AttachmentPipeline
from ..message_store import visible_messages
from ..models import Message, ModelOptions, SendMessageParams
from ..task_manager import TaskManager
from .base import ChatStrategy, ErrorChannel, GeneratingFlag, StrategyKind

LOGGER = logging.getLogger(__name__)

MessagesSource = Callable[[], list[Message]]


class PersistedStrategy(ChatStrategy):
    """Forward every intent to the backend write path.

    Writes are fire-and-forget for the UI. Failures are reported once
    through the error channel and re-raised so the engine can record them.
    """

    kind = StrategyKind.PERSISTED

    def __init__(
        self,
        conversation_id: str,
        backend: ConversationBackend,
        messages: MessagesSource,
        errors: ErrorChannel,
        generating: GeneratingFlag,
        task_manager: TaskManager,
        navigator: Navigator | None = None,
        pipeline: AttachmentPipeline | None = None,
        default_options: ModelOptions | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self._backend = backend
        self._messages = messages
        self._errors = errors
        self._generating = generating
        self._tasks = task_manager
        self._navigator = navigator
        self._pipeline = pipeline
        self._default_options = default_options or ModelOptions()

    def _resolve_options(self, options: ModelOptions | None) -> ModelOptions:
        """Merge per-call overrides and require a selected model."""
        resolved = self._default_options.merged(options)
        if not resolved.has_model:
            error = ModelNotSelectedError("Select a model before sending a message.")
            self._errors.report(error, "No model selected")
            raise error
        return resolved

    async def send_message(
        self, params: SendMessageParams, options: ModelOptions | None = None
    ) -> None:
        if params.is_empty:
            error = EmptyMessageError("Message is empty.")
            self._errors.report(error, "Nothing to send")
            raise error
        resolved = self._resolve_options(options)

        attachments = params.attachments
        if attachments and self._pipeline is not None:
            attachments = await self._errors.guard(
                "Failed to upload attachment",
                self._pipeline.materialize(attachments, AttachmentMode.DURABLE),
            )
        await self._errors.guard(
            "Failed to send message",
            self._backend.send_follow_up(
                self.conversation_id,
                params.content,
                [attachment.for_persistence() for attachment in attachments],
                resolved,
                persona_id=params.persona_id,
                reasoning_config=params.reasoning_config,
                use_web_search=params.use_web_search,
            ),
        )

    async def edit_message(
        self, message_id: str, content: str, options: ModelOptions | None = None
    ) -> None:
        if not content.strip():
            error = EmptyMessageError("Edited message is empty.")
            self._errors.report(error, "Nothing to send")
            raise error
        resolved = self._resolve_options(options)
        await self._errors.guard(
            "Failed to edit message",
            self._backend.edit_message(self.conversation_id, message_id, content, resolved),
        )

    async def retry_from_message(
        self, message_id: str, options: ModelOptions | None = None
    ) -> None:
        resolved = self._resolve_options(options)
        target = next((m for m in self._messages() if m.id == message_id), None)
        retry_type = "assistant" if target is not None and target.role == "assistant" else "user"
        await self._errors.guard(
            "Failed to retry message",
            self._backend.retry_from_message(
                self.conversation_id, message_id, retry_type, resolved
            ),
        )

    async def delete_message(self, message_id: str) -> None:
        """Delete one message, or the whole conversation when it is the last one shown."""
        visible = visible_messages(self._messages())
        if len(visible) == 1 and visible[0].id == message_id:
            # Leave the view first so it never renders a missing conversation.
            if self._navigator is not None:
                self._navigator.navigate_home()
            LOGGER.info(
                "strategy.delete.conversation",
                extra={
                    "event": "strategy.delete.conversation",
                    "conversation_id": self.conversation_id,
                },
            )
            await self._errors.guard(
                "Failed to delete conversation",
                self._backend.delete_conversation(self.conversation_id),
            )
            return
        await self._errors.guard(
            "Failed to delete message", self._backend.delete_message(message_id)
        )

    def stop_generation(self) -> None:
        """Flip to non-generating now and confirm with the backend in the background."""
        self._generating.set(False)
        self._tasks.spawn(self._confirm_stop())

    async def _confirm_stop(self) -> None:
        try:
            await self._backend.stop_generation(self.conversation_id)
        except Exception as exc:  # noqa: BLE001 - any failure undoes the optimistic stop.
            self._generating.set(True)
            LOGGER.warning(
                "strategy.stop.rollback",
                extra={
                    "event": "strategy.stop.rollback",
                    "conversation_id": self.conversation_id,
                    "error": str(exc),
                },
            )
            self._errors.report(map_backend_error(exc), "Failed to stop generation")

    async def save_conversation(self, title: str | None = None) -> str | None:
        return self.conversation_id

    async def resume(self) -> None:
        try:
            await self._backend.resume_conversation(self.conversation_id)
        except Exception as exc:
            raise map_backend_error(exc, "Resume failed") from exc
