"""Domain exception hierarchy for the chat synchronization engine."""

from __future__ import annotations

import re

DEFAULT_MESSAGE_LIMIT = 500

_LIMIT_PATTERNS = (
    re.compile(r"\((\d+) messages\)"),
    re.compile(r"limit of (\d+)"),
    re.compile(r"all (\d+) free messages"),
)


class ChatSyncError(RuntimeError):
    """Base class for all domain-level engine errors."""

    #: Whether the user may retry the failed operation as-is.
    retryable: bool = True


class ModelNotSelectedError(ChatSyncError):
    """Raised when an operation needs a model and none is selected."""


class ModelNotLoadedError(ChatSyncError):
    """Raised by the unusable strategy when no usable chat mode exists."""


class ConversationNotFoundError(ChatSyncError):
    """Raised when the backing store has no record of the conversation."""


class EmptyMessageError(ChatSyncError):
    """Raised when a send carries neither content nor attachments."""


class MessageLimitReachedError(ChatSyncError):
    """Raised when the anonymous or monthly message quota is exhausted."""

    retryable = False

    def __init__(self, message: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> None:
        super().__init__(message)
        self.limit = limit


class UploadFailedError(ChatSyncError):
    """Raised when an attachment cannot be stored durably.

    ``fatal`` is True when the file is too large to fall back to inline
    content, so the message cannot be sent with it.
    """

    def __init__(self, message: str, *, name: str = "", fatal: bool = True) -> None:
        super().__init__(message)
        self.name = name
        self.fatal = fatal


class WriteFailedError(ChatSyncError):
    """Raised when the backend rejects a write operation."""


class ResumeFailedError(ChatSyncError):
    """Raised when resuming an interrupted generation fails."""


class ModelClientError(ChatSyncError):
    """Raised when the model client cannot stream a reply."""


class ModelConnectionError(ModelClientError):
    """Raised when the model host cannot be reached."""


class ConfigValidationError(ChatSyncError):
    """Raised when configuration cannot be validated safely."""


def parse_message_limit(message: str) -> int:
    """Extract the numeric quota from a backend limit message."""
    for pattern in _LIMIT_PATTERNS:
        match = pattern.search(message)
        if match:
            return int(match.group(1))
    return DEFAULT_MESSAGE_LIMIT


def map_backend_error(exc: BaseException, fallback: str = "Write failed") -> ChatSyncError:
    """Convert a raw backend failure into the engine error taxonomy."""
    if isinstance(exc, ChatSyncError):
        return exc

    text = str(exc) or fallback
    lower = text.lower()
    if "limit reached" in lower or ("reached your" in lower and "limit" in lower):
        return MessageLimitReachedError(text, limit=parse_message_limit(text))
    if "conversation" in lower and "not found" in lower:
        return ConversationNotFoundError(text)
    if "no model selected" in lower or "model and provider are required" in lower:
        return ModelNotSelectedError(text)
    return WriteFailedError(text)
