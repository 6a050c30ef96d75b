"""Strategy for conversations held only in memory until saved."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
import time
from typing import Any

from ..exceptions import (
    ChatSyncError,
    EmptyMessageError,
    ModelClientError,
    ModelNotSelectedError,
    WriteFailedError,
)
from ..interfaces import ConversationBackend, CredentialResolver, ModelClient
from ..managers.attachment import AttachmentMode, AttachmentPipeline, build_message_content
from ..models import Message, ModelDescriptor, ModelOptions, SendMessageParams
from ..task_manager import TaskManager
from .base import ChatStrategy, ErrorChannel, GeneratingFlag, StrategyKind

LOGGER = logging.getLogger(__name__)

STREAM_TASK_NAME = "ephemeral-stream"

MessagesListener = Callable[[list[Message]], None]
StreamStartListener = Callable[[str], None]
StreamChunkListener = Callable[[str], None]


def to_model_messages(
    messages: list[Message], persona_prompt: str | None = None
) -> list[dict[str, Any]]:
    """Convert local history into the model client's message format.

    Context messages and empty assistant placeholders are not sent. A
    persona prompt goes first as a system message.
    """
    payload: list[dict[str, Any]] = []
    if persona_prompt and persona_prompt.strip():
        payload.append({"role": "system", "content": persona_prompt.strip()})
    for message in messages:
        if message.role == "context":
            continue
        if message.role == "assistant" and not message.content:
            continue
        content = build_message_content(message.content, message.attachments)
        for attachment in message.attachments:
            if attachment.type == "pdf" and attachment.extracted_text:
                content += f"\n\n--- Content from {attachment.name} ---\n{attachment.extracted_text}"
        entry: dict[str, Any] = {"role": message.role, "content": content}
        images = [
            attachment.content
            for attachment in message.attachments
            if attachment.type == "image" and attachment.content
        ]
        if images:
            entry["images"] = images
        payload.append(entry)
    return payload


class EphemeralStrategy(ChatStrategy):
    """Run the conversation against the model client directly.

    Only ``save_conversation`` reaches durable storage. Stopping cancels
    the stream task and marks the partial reply as stopped.
    """

    kind = StrategyKind.EPHEMERAL

    def __init__(
        self,
        model: ModelDescriptor,
        model_client: ModelClient,
        credentials: CredentialResolver,
        errors: ErrorChannel,
        generating: GeneratingFlag,
        task_manager: TaskManager,
        backend: ConversationBackend | None = None,
        pipeline: AttachmentPipeline | None = None,
        default_options: ModelOptions | None = None,
        on_messages_change: MessagesListener | None = None,
        on_stream_start: StreamStartListener | None = None,
        on_stream_chunk: StreamChunkListener | None = None,
    ) -> None:
        self.model = model
        self._client = model_client
        self._credentials = credentials
        self._errors = errors
        self._generating = generating
        self._tasks = task_manager
        self._backend = backend
        self._pipeline = pipeline
        self._default_options = default_options or ModelOptions()
        self._on_messages_change = on_messages_change
        self._on_stream_start = on_stream_start
        self._on_stream_chunk = on_stream_chunk
        self._messages: list[Message] = []
        self._stop_requested = False
        self._persona_prompt: str | None = None

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def _notify(self) -> None:
        if self._on_messages_change is not None:
            self._on_messages_change(self.messages)

    def _index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        raise WriteFailedError(f"Message {message_id} not found.")

    def _require_index(self, message_id: str, title: str) -> int:
        try:
            return self._index_of(message_id)
        except WriteFailedError as exc:
            self._errors.report(exc, title)
            raise

    def _update(self, message_id: str, **updates: Any) -> None:
        index = self._index_of(message_id)
        self._messages[index] = self._messages[index].model_copy(update=updates)

    def _update_metadata(self, message_id: str, **updates: Any) -> None:
        current = self._messages[self._index_of(message_id)].metadata
        self._update(message_id, metadata=current.model_copy(update=updates))

    def _check_model(self) -> None:
        if not self.model.is_fully_described:
            error = ModelNotSelectedError("Select a model before sending a message.")
            self._errors.report(error, "No model selected")
            raise error

    def clear(self) -> None:
        self._messages = []
        self._notify()

    async def send_message(
        self, params: SendMessageParams, options: ModelOptions | None = None
    ) -> None:
        if params.is_empty:
            error = EmptyMessageError("Message is empty.")
            self._errors.report(error, "Nothing to send")
            raise error
        self._check_model()

        attachments = params.attachments
        if attachments and self._pipeline is not None:
            attachments = await self._errors.guard(
                "Failed to attach files",
                self._pipeline.materialize(attachments, AttachmentMode.INLINE),
            )
        self._persona_prompt = params.persona_prompt
        self._messages.append(
            Message(role="user", content=params.content, attachments=attachments)
        )
        call_options = options
        if params.reasoning_config is not None:
            call_options = ModelOptions(reasoning_config=params.reasoning_config).merged(options)
        await self._generate(call_options)

    async def edit_message(
        self, message_id: str, content: str, options: ModelOptions | None = None
    ) -> None:
        """Replace a message's content and drop everything after it.

        Editing a user message regenerates the reply.
        """
        index = self._require_index(message_id, "Failed to edit message")
        self._messages[index] = self._messages[index].model_copy(update={"content": content})
        del self._messages[index + 1 :]
        if self._messages[index].role != "user":
            self._notify()
            return
        self._check_model()
        await self._generate(options)

    async def retry_from_message(
        self, message_id: str, options: ModelOptions | None = None
    ) -> None:
        """Regenerate from a user message, or replace an assistant reply."""
        index = self._require_index(message_id, "Failed to retry message")
        if self._messages[index].role == "assistant":
            previous_user = next(
                (i for i in range(index - 1, -1, -1) if self._messages[i].role == "user"),
                None,
            )
            keep = 0 if previous_user is None else previous_user + 1
        else:
            keep = index + 1
        del self._messages[keep:]
        self._check_model()
        await self._generate(options)

    async def delete_message(self, message_id: str) -> None:
        del self._messages[self._require_index(message_id, "Failed to delete message")]
        self._notify()

    def stop_generation(self) -> None:
        self._stop_requested = True
        self._generating.set(False)
        self._tasks.cancel_nowait(STREAM_TASK_NAME)

    async def save_conversation(self, title: str | None = None) -> str | None:
        """Persist the in-memory history in one step and clear it on success."""
        if self._backend is None:
            raise WriteFailedError("No backend available to save the conversation.")
        if not self._messages:
            return None
        payload = [
            message.for_persistence()
            for message in self._messages
            if not (message.role == "assistant" and not message.content)
        ]
        conversation_id = await self._errors.guard(
            "Failed to save conversation",
            self._backend.save_conversation(payload, title),
        )
        LOGGER.info(
            "strategy.ephemeral.saved",
            extra={
                "event": "strategy.ephemeral.saved",
                "conversation_id": conversation_id,
                "message_count": len(payload),
            },
        )
        self.clear()
        return conversation_id

    async def _generate(self, options: ModelOptions | None) -> None:
        """Append an assistant placeholder and stream the reply into it."""
        history = to_model_messages(self._messages, self._persona_prompt)
        assistant = Message(
            role="assistant",
            content="",
            model=self.model.model_id,
            provider=self.model.provider,
        )
        self._messages.append(assistant)
        self._notify()

        api_key = await self._credentials.get_decrypted_key(
            self.model.provider, self.model.model_id
        )
        if not api_key:
            self._discard(assistant.id)
            error = WriteFailedError(f"No API key configured for {self.model.provider}.")
            self._errors.report(error, "Missing API key")
            raise error

        self._stop_requested = False
        self._generating.set(True)
        task = self._tasks.spawn(
            self._stream_reply(assistant.id, history, api_key, options),
            name=STREAM_TASK_NAME,
        )
        try:
            await task
        except asyncio.CancelledError:
            self._mark_stopped(assistant.id)
            if not (task.cancelled() and self._stop_requested):
                raise
            LOGGER.info(
                "strategy.ephemeral.stopped",
                extra={"event": "strategy.ephemeral.stopped", "message_id": assistant.id},
            )
        except Exception as exc:  # noqa: BLE001 - model clients fail in many ways.
            error = exc if isinstance(exc, ChatSyncError) else ModelClientError(str(exc))
            self._errors.report(error, "Failed to generate a reply")
            if error is exc:
                raise
            raise error from exc
        finally:
            self._generating.set(False)

    async def _stream_reply(
        self,
        message_id: str,
        history: list[dict[str, Any]],
        api_key: str,
        options: ModelOptions | None,
    ) -> None:
        started = time.monotonic()
        resolved = self._default_options.merged(options)
        if self._on_stream_start is not None:
            self._on_stream_start(message_id)
        try:
            async for chunk in self._client.stream_chat(self.model, history, api_key, resolved):
                current = self._messages[self._index_of(message_id)]
                if chunk.kind == "content":
                    self._update(message_id, content=current.content + chunk.text)
                    if self._on_stream_chunk is not None:
                        self._on_stream_chunk(chunk.text)
                elif chunk.kind == "reasoning":
                    self._update(message_id, reasoning=(current.reasoning or "") + chunk.text)
                elif chunk.kind == "done":
                    self._update_metadata(
                        message_id,
                        finish_reason=chunk.finish_reason or "stop",
                        token_count=chunk.token_count,
                        duration=time.monotonic() - started,
                        status="done",
                    )
                self._notify()
        except asyncio.CancelledError:
            raise
        except Exception:
            self._discard(message_id)
            raise

    def _mark_stopped(self, message_id: str) -> None:
        """Close a cancelled reply, even one whose stream never started."""
        if not any(message.id == message_id for message in self._messages):
            return
        self._update_metadata(message_id, finish_reason="stop", stopped=True)
        self._notify()

    def _discard(self, message_id: str) -> None:
        self._messages = [m for m in self._messages if m.id != message_id]
        self._notify()
