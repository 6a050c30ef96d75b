"""Strategy used when neither a conversation nor a usable model exists."""

from __future__ import annotations

from ..exceptions import ModelNotLoadedError
from ..models import ModelOptions, SendMessageParams
from .base import ChatStrategy, StrategyKind

_MESSAGE = "No model is loaded. Select a model to start chatting."


class UnusableStrategy(ChatStrategy):
    """Reject every operation, stop included, with ``ModelNotLoadedError``."""

    kind = StrategyKind.UNUSABLE

    async def send_message(
        self, params: SendMessageParams, options: ModelOptions | None = None
    ) -> None:
        raise ModelNotLoadedError(_MESSAGE)

    async def edit_message(
        self, message_id: str, content: str, options: ModelOptions | None = None
    ) -> None:
        raise ModelNotLoadedError(_MESSAGE)

    async def retry_from_message(
        self, message_id: str, options: ModelOptions | None = None
    ) -> None:
        raise ModelNotLoadedError(_MESSAGE)

    async def delete_message(self, message_id: str) -> None:
        raise ModelNotLoadedError(_MESSAGE)

    def stop_generation(self) -> None:
        raise ModelNotLoadedError(_MESSAGE)

    async def save_conversation(self, title: str | None = None) -> str | None:
        raise ModelNotLoadedError(_MESSAGE)

    async def resume(self) -> None:
        raise ModelNotLoadedError(_MESSAGE)
