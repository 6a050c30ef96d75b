"""Top-level package for the chat synchronization engine."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .chat import ChatChunk, OllamaModelClient
    from .config import EngineSettings, load_config
    from .engine import ChatEngine
    from .events import Event, EventBus
    from .exceptions import (
        ChatSyncError,
        ConfigValidationError,
        ConversationNotFoundError,
        MessageLimitReachedError,
        ModelNotLoadedError,
        ModelNotSelectedError,
        ResumeFailedError,
        UploadFailedError,
        WriteFailedError,
    )
    from .managers import AttachmentPipeline, ResumeCoordinator
    from .message_store import ConversationMessageStore
    from .models import Attachment, Conversation, Message, ModelDescriptor
    from .state import GenerationStatus, MessageStateMachine
    from .strategies import StrategyKind, select_strategy
    from .subscription import LOADING, SKIP, MessageSubscription

# Public name -> defining submodule. Imported on first access only.
_EXPORTS: dict[str, str] = {
    "ChatEngine": ".engine",
    "ChatChunk": ".chat",
    "OllamaModelClient": ".chat",
    "EngineSettings": ".config",
    "load_config": ".config",
    "Event": ".events",
    "EventBus": ".events",
    "ChatSyncError": ".exceptions",
    "ConfigValidationError": ".exceptions",
    "ConversationNotFoundError": ".exceptions",
    "MessageLimitReachedError": ".exceptions",
    "ModelNotLoadedError": ".exceptions",
    "ModelNotSelectedError": ".exceptions",
    "ResumeFailedError": ".exceptions",
    "UploadFailedError": ".exceptions",
    "WriteFailedError": ".exceptions",
    "AttachmentPipeline": ".managers",
    "ResumeCoordinator": ".managers",
    "ConversationMessageStore": ".message_store",
    "Attachment": ".models",
    "Conversation": ".models",
    "Message": ".models",
    "ModelDescriptor": ".models",
    "GenerationStatus": ".state",
    "MessageStateMachine": ".state",
    "StrategyKind": ".strategies",
    "select_strategy": ".strategies",
    "LOADING": ".subscription",
    "SKIP": ".subscription",
    "MessageSubscription": ".subscription",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so importing the package stays cheap."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module_name, __name__), name)
