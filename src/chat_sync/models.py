"""Message, attachment, and conversation records shared by every engine component."""

from __future__ import annotations

import time
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant", "system", "context"]
AttachmentType = Literal["text", "image", "pdf"]
MessageStatus = Literal["pending", "error", "done"]


def now_ms() -> float:
    """Return the current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


def new_message_id() -> str:
    """Return a client-generated message identifier."""
    return f"msg_{uuid4().hex}"


class MessageMetadata(BaseModel):
    """Generation metadata attached to a message."""

    model_config = ConfigDict(extra="allow")

    finish_reason: str | None = None
    stopped: bool = False
    token_count: int | None = None
    reasoning_token_count: int | None = None
    duration: float | None = None
    status: MessageStatus | None = None


class Citation(BaseModel):
    """A web-search citation rendered under an assistant reply."""

    url: str
    title: str = ""
    snippet: str = ""


class Attachment(BaseModel):
    """A file attached to a message, either inline or durably stored."""

    type: AttachmentType
    name: str
    size: int = Field(default=0, ge=0)
    content: str | None = None
    mime_type: str | None = None
    url: str = ""
    storage_id: str | None = None
    extracted_text: str | None = None
    thumbnail: str | None = None

    @property
    def is_durable(self) -> bool:
        return bool(self.storage_id)

    @property
    def has_inline_content(self) -> bool:
        return bool(self.content) and not self.is_durable

    def data_uri(self) -> str:
        """Build a ``data:`` URI from the inline content."""
        mime = self.mime_type or "application/octet-stream"
        return f"data:{mime};base64,{self.content or ''}"

    def for_persistence(self) -> Attachment:
        """Return a copy safe to send to the write path.

        Durable attachments never carry their inline content to storage.
        """
        if self.is_durable and self.content is not None:
            return self.model_copy(update={"content": None})
        return self


class ReasoningConfig(BaseModel):
    """Reasoning effort settings forwarded to the model."""

    enabled: bool = False
    effort: Literal["low", "medium", "high"] = "medium"
    max_tokens: int | None = None


class Message(BaseModel):
    """A single chat message, authoritative or optimistic."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    reasoning: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    created_at: float = Field(default_factory=now_ms)
    parent_id: str | None = None
    is_main_branch: bool = True
    model: str | None = None
    provider: str | None = None
    conversation_id: str | None = None
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, value: Any) -> Any:
        # Malformed metadata from the backend is treated as absent.
        if value is None or not isinstance(value, (dict, MessageMetadata)):
            return MessageMetadata()
        return value

    @property
    def signature(self) -> str:
        """Content signature used to retire optimistic entries."""
        return f"{self.role}:{self.content}"

    @property
    def is_streaming(self) -> bool:
        return (
            self.role == "assistant"
            and not self.metadata.finish_reason
            and not self.metadata.stopped
        )

    def for_persistence(self) -> dict[str, Any]:
        """Serialize for a save call, dropping content of durable attachments."""
        payload = self.model_dump(exclude={"id", "conversation_id"}, exclude_none=True)
        payload["attachments"] = [
            att.for_persistence().model_dump(exclude_none=True)
            for att in self.attachments
        ]
        return payload


class Conversation(BaseModel):
    """A conversation snapshot as observed by the engine."""

    id: str | None = None
    title: str | None = None
    is_streaming: bool = False
    messages: list[Message] = Field(default_factory=list)


class ModelDescriptor(BaseModel):
    """Capability description of the currently selected model."""

    model_id: str = ""
    provider: str = ""
    name: str = ""
    context_length: int | None = None
    input_modalities: list[str] = Field(default_factory=lambda: ["text"])
    supports_reasoning: bool = False
    free: bool = False

    @property
    def is_fully_described(self) -> bool:
        return bool(self.model_id.strip() and self.provider.strip())

    @property
    def supports_images(self) -> bool:
        return "image" in self.input_modalities

    @property
    def supports_files(self) -> bool:
        return "file" in self.input_modalities


class ModelOptions(BaseModel):
    """Per-call model overrides merged on top of the engine defaults."""

    model: str | None = None
    provider: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    reasoning_config: ReasoningConfig | None = None

    def merged(self, override: ModelOptions | None) -> ModelOptions:
        """Return these options with every non-None field of ``override`` applied."""
        if override is None:
            return self
        updates = override.model_dump(exclude_none=True)
        if "reasoning_config" in updates:
            updates["reasoning_config"] = override.reasoning_config
        return self.model_copy(update=updates)

    @property
    def has_model(self) -> bool:
        return bool(self.model and self.provider)


class SendMessageParams(BaseModel):
    """Arguments for a send intent."""

    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    persona_id: str | None = None
    persona_prompt: str | None = None
    reasoning_config: ReasoningConfig | None = None
    use_web_search: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.content.strip() and not self.attachments
