"""Collaborator protocols the engine consumes but never implements."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from .models import Attachment, Message, ModelDescriptor, ModelOptions

if TYPE_CHECKING:
    from .chat import ChatChunk

RetryType = Literal["user", "assistant"]


@runtime_checkable
class ConversationBackend(Protocol):
    """Write path of the durable store. Every call raises on failure."""

    async def send_follow_up(
        self,
        conversation_id: str,
        content: str,
        attachments: list[Attachment],
        options: ModelOptions,
        **extra: Any,
    ) -> None: ...

    async def edit_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str,
        options: ModelOptions,
    ) -> None: ...

    async def retry_from_message(
        self,
        conversation_id: str,
        message_id: str,
        retry_type: RetryType,
        options: ModelOptions,
    ) -> None: ...

    async def delete_message(self, message_id: str) -> None: ...

    async def delete_messages(self, message_ids: list[str]) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def stop_generation(self, conversation_id: str) -> None: ...

    async def resume_conversation(self, conversation_id: str) -> None: ...

    async def create_conversation(
        self,
        content: str,
        attachments: list[Attachment],
        options: ModelOptions,
        **extra: Any,
    ) -> str:
        """Create a persisted conversation seeded with a first message; return its id."""
        ...

    async def save_conversation(
        self, messages: list[dict[str, Any]], title: str | None = None
    ) -> str:
        """Persist a full message list as a new conversation; return its id."""
        ...


@runtime_checkable
class FileUploader(Protocol):
    async def upload(self, attachment: Attachment) -> Attachment:
        """Store the attachment durably and return it with ``storage_id`` set."""
        ...


@runtime_checkable
class CredentialResolver(Protocol):
    async def get_decrypted_key(self, provider: str, model_id: str) -> str | None: ...


@runtime_checkable
class ModelProvider(Protocol):
    def current_model(self) -> ModelDescriptor | None: ...


@runtime_checkable
class Navigator(Protocol):
    def navigate_home(self) -> None: ...

    def navigate_to_conversation(self, conversation_id: str) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    def error(self, title: str, description: str = "") -> None: ...

    def success(self, title: str, description: str = "") -> None: ...


@runtime_checkable
class ModelClient(Protocol):
    def stream_chat(
        self,
        model: ModelDescriptor,
        messages: list[dict[str, Any]],
        api_key: str | None = None,
        options: ModelOptions | None = None,
    ) -> AsyncIterator[ChatChunk]: ...


@runtime_checkable
class SummaryGenerator(Protocol):
    async def summarize(self, messages: list[Message]) -> str: ...
