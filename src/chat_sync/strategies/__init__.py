"""Chat strategies: persisted, ephemeral, and the explicit unusable variant."""

from __future__ import annotations

from ..models import ModelDescriptor
from .base import ChatStrategy, ErrorChannel, GeneratingFlag, StrategyKind
from .ephemeral import EphemeralStrategy, to_model_messages
from .persisted import PersistedStrategy
from .unusable import UnusableStrategy


def select_strategy(
    conversation_id: str | None, model: ModelDescriptor | None
) -> StrategyKind:
    """Pick the strategy kind for the current conversation and model.

    An existing conversation id always wins; otherwise a fully described
    model allows an ephemeral chat.
    """
    if conversation_id:
        return StrategyKind.PERSISTED
    if model is not None and model.is_fully_described:
        return StrategyKind.EPHEMERAL
    return StrategyKind.UNUSABLE


__all__ = [
    "ChatStrategy",
    "ErrorChannel",
    "GeneratingFlag",
    "StrategyKind",
    "PersistedStrategy",
    "EphemeralStrategy",
    "UnusableStrategy",
    "select_strategy",
    "to_model_messages",
]
