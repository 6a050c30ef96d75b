"""Chat engine: the public surface one conversation view talks to.

The engine owns the pending-message map, the generation state machine,
and the resume bookkeeping. Callers interact only through its methods;
the merged message list is republished on the engine's event bus after
every change.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import Any

from .config import EngineSettings
from .events import CONVERSATION_CREATED, MESSAGES_CHANGED, EventBus
from .exceptions import (
    ChatSyncError,
    EmptyMessageError,
    MessageLimitReachedError,
    ModelNotSelectedError,
)
from .interfaces import (
    ConversationBackend,
    CredentialResolver,
    FileUploader,
    ModelClient,
    ModelProvider,
    Navigator,
    Notifier,
    SummaryGenerator,
)
from .managers.attachment import AttachmentMode, AttachmentPipeline
from .managers.resume import ResumeCoordinator
from .message_store import ConversationMessageStore, find_streaming_message
from .models import (
    Attachment,
    Message,
    MessageMetadata,
    ModelDescriptor,
    ModelOptions,
    ReasoningConfig,
    SendMessageParams,
    new_message_id,
)
from .state import MessageStateMachine, TransitionFlag
from .strategies import (
    ChatStrategy,
    EphemeralStrategy,
    ErrorChannel,
    GeneratingFlag,
    PersistedStrategy,
    StrategyKind,
    UnusableStrategy,
    select_strategy,
)
from .subscription import MessageSubscription, Snapshot
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

ErrorCallback = Callable[[ChatSyncError], None]
ConversationCallback = Callable[[str], None]
QuotaCheck = Callable[[], bool]


class ChatEngine:
    """Keep one conversation view's messages consistent while replies generate."""

    def __init__(
        self,
        *,
        backend: ConversationBackend,
        subscription: MessageSubscription,
        model_provider: ModelProvider,
        model_client: ModelClient | None = None,
        credentials: CredentialResolver | None = None,
        uploader: FileUploader | None = None,
        navigator: Navigator | None = None,
        notifier: Notifier | None = None,
        summary_generator: SummaryGenerator | None = None,
        settings: EngineSettings | None = None,
        default_options: ModelOptions | None = None,
        on_error: ErrorCallback | None = None,
        on_conversation_create: ConversationCallback | None = None,
        can_send_message: QuotaCheck | None = None,
        event_bus: EventBus | None = None,
        task_manager: TaskManager | None = None,
        conversation_id: str | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.events = event_bus or EventBus()
        self.generation = MessageStateMachine()
        self.transitioning = TransitionFlag(self.settings.transition_delay_seconds)
        self.generating = GeneratingFlag()
        self.store = ConversationMessageStore(self.settings.max_pending_messages)
        self.pipeline = AttachmentPipeline(self.settings, uploader)

        self._backend = backend
        self._subscription = subscription
        self._model_provider = model_provider
        self._model_client = model_client
        self._credentials = credentials
        self._navigator = navigator
        self._notifier = notifier
        self._summary_generator = summary_generator
        self._default_options = default_options or ModelOptions()
        self._on_error = on_error
        self._on_conversation_create = on_conversation_create
        self._can_send_message = can_send_message
        self._tasks = task_manager or TaskManager()
        self._conversation_id = conversation_id

        self.errors = ErrorChannel(notifier, self._forward_error)
        self.resume = ResumeCoordinator(
            self._resume_conversation, self._tasks, on_error=self._forward_error
        )
        self._ephemeral: EphemeralStrategy | None = None
        self._stopped_streaming_id: str | None = None
        # Set when a stop lands before the reply placeholder exists.
        self._stop_pending = False
        self._unlisten = subscription.listen(self._on_snapshot)
        self.generating.subscribe(self._on_generating_changed)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def model(self) -> ModelDescriptor | None:
        return self._model_provider.current_model()

    @property
    def messages(self) -> list[Message]:
        if self._conversation_id is None and self._ephemeral is not None:
            return self.store.merge(self._ephemeral.messages)
        return self.store.messages

    @property
    def is_loading_messages(self) -> bool:
        return self._conversation_id is not None and not self.store.is_loaded

    @property
    def is_streaming(self) -> bool:
        return self.generating.value

    def is_message_streaming(self, message_id: str) -> bool:
        if self._conversation_id is None and self._ephemeral is not None:
            for message in self._ephemeral.messages:
                if message.id == message_id:
                    return self.generating.value and message.is_streaming
            return False
        return self.store.is_message_streaming(message_id, self.generating.value)

    # ------------------------------------------------------------------
    # Strategy selection
    # ------------------------------------------------------------------

    @property
    def strategy(self) -> ChatStrategy:
        model = self.model
        conversation_id = self._conversation_id
        kind = select_strategy(conversation_id, model)
        if kind is StrategyKind.PERSISTED and conversation_id:
            return self._persisted(conversation_id)
        client, credentials = self._model_client, self._credentials
        if (
            kind is StrategyKind.EPHEMERAL
            and model is not None
            and client is not None
            and credentials is not None
        ):
            return self._ephemeral_for(model, client, credentials)
        return UnusableStrategy()

    def _persisted(self, conversation_id: str) -> PersistedStrategy:
        return PersistedStrategy(
            conversation_id,
            self._backend,
            lambda: self.store.messages,
            self.errors,
            self.generating,
            self._tasks,
            navigator=self._navigator,
            pipeline=self.pipeline,
            default_options=self._options_for(self.model),
        )

    def _ephemeral_for(
        self, model: ModelDescriptor, client: ModelClient, credentials: CredentialResolver
    ) -> EphemeralStrategy:
        if self._ephemeral is None:
            self._ephemeral = EphemeralStrategy(
                model,
                client,
                credentials,
                self.errors,
                self.generating,
                self._tasks,
                backend=self._backend,
                pipeline=self.pipeline,
                default_options=self._options_for(model),
                on_messages_change=self._on_ephemeral_messages,
                on_stream_start=self.generation.start_streaming,
                on_stream_chunk=self.generation.add_stream_chunk,
            )
        else:
            self._ephemeral.model = model
        return self._ephemeral

    def _options_for(self, model: ModelDescriptor | None) -> ModelOptions:
        if model is None:
            return self._default_options
        selected = ModelOptions(model=model.model_id or None, provider=model.provider or None)
        return selected.merged(self._default_options)

    # ------------------------------------------------------------------
    # Error plumbing
    # ------------------------------------------------------------------

    def _forward_error(self, error: BaseException) -> None:
        if self._on_error is not None and isinstance(error, ChatSyncError):
            self._on_error(error)

    def _record_failure(self, strategy: ChatStrategy, error: ChatSyncError) -> None:
        """Record a failed cycle; strategies other than unusable have already reported it."""
        if strategy.kind is StrategyKind.UNUSABLE:
            self.errors.report(error, "Model not loaded")
        self.generation.set_error(error, can_retry=error.retryable)

    def _check_quota(self) -> bool:
        if self._can_send_message is None or self._can_send_message():
            return True
        error = MessageLimitReachedError("You have reached your message limit.")
        self.errors.report(error, "Message limit reached")
        return False

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        attachments: list[Attachment] | None = None,
        *,
        persona_id: str | None = None,
        persona_prompt: str | None = None,
        reasoning_config: ReasoningConfig | None = None,
        use_web_search: bool = False,
        options: ModelOptions | None = None,
    ) -> bool:
        """Send a user message through the current strategy.

        Returns False when the send was rejected or failed; failures have
        been reported through the error channel by then.
        """
        params = SendMessageParams(
            content=content,
            attachments=attachments or [],
            persona_id=persona_id,
            persona_prompt=persona_prompt,
            reasoning_config=reasoning_config,
            use_web_search=use_web_search,
        )
        if not self._check_quota():
            return False

        strategy = self.strategy
        optimistic_id = new_message_id()
        if not self.generation.send_message(optimistic_id):
            return False
        self.transitioning.trigger()

        persisted = strategy.kind is StrategyKind.PERSISTED
        if persisted and not params.is_empty:
            self.store.add_optimistic(
                Message(
                    id=optimistic_id,
                    role="user",
                    content=params.content,
                    attachments=params.attachments,
                    conversation_id=self._conversation_id,
                    metadata=MessageMetadata(status="pending"),
                )
            )
            self.generating.set(True)
            await self._publish_messages()

        try:
            await strategy.send_message(params, options)
        except ChatSyncError as exc:
            if persisted:
                self.store.remove_optimistic(optimistic_id)
                self.generating.set(False)
                await self._publish_messages()
            self._record_failure(strategy, exc)
            return False
        self.generation.end_cycle()
        return True

    async def _run_cycle(
        self, message_id: str, operation: Callable[[ChatStrategy], Awaitable[None]]
    ) -> bool:
        if not self._check_quota():
            return False
        strategy = self.strategy
        if not self.generation.send_message(message_id):
            return False
        self.transitioning.trigger()
        if strategy.kind is StrategyKind.PERSISTED:
            self.generating.set(True)
        try:
            await operation(strategy)
        except ChatSyncError as exc:
            if strategy.kind is StrategyKind.PERSISTED:
                self.generating.set(False)
            self._record_failure(strategy, exc)
            return False
        self.generation.end_cycle()
        return True

    async def edit_message(
        self, message_id: str, content: str, options: ModelOptions | None = None
    ) -> bool:
        return await self._run_cycle(
            message_id, lambda strategy: strategy.edit_message(message_id, content, options)
        )

    async def retry_user_message(
        self, message_id: str, options: ModelOptions | None = None
    ) -> bool:
        return await self._run_cycle(
            message_id, lambda strategy: strategy.retry_from_message(message_id, options)
        )

    async def retry_assistant_message(
        self, message_id: str, options: ModelOptions | None = None
    ) -> bool:
        return await self._run_cycle(
            message_id, lambda strategy: strategy.retry_from_message(message_id, options)
        )

    async def delete_message(self, message_id: str) -> bool:
        strategy = self.strategy
        try:
            await strategy.delete_message(message_id)
        except ChatSyncError as exc:
            if strategy.kind is StrategyKind.UNUSABLE:
                self.errors.report(exc, "Model not loaded")
            return False
        return True

    def stop_generation(self) -> None:
        """Stop the active reply immediately; backend confirmation follows asynchronously."""
        strategy = self.strategy
        if strategy.kind is StrategyKind.UNUSABLE:
            try:
                strategy.stop_generation()
            except ChatSyncError as exc:
                self.errors.report(exc, "Model not loaded")
            return
        streaming = self.store.find_streaming_message()
        self._stopped_streaming_id = streaming.id if streaming is not None else None
        self._stop_pending = streaming is None and self.generation.is_active
        self.generation.stop_generation()
        self.transitioning.trigger()
        strategy.stop_generation()

    async def save_conversation(self, title: str | None = None) -> str | None:
        """Promote an ephemeral conversation to durable storage."""
        strategy = self.strategy
        try:
            conversation_id = await strategy.save_conversation(title)
        except ChatSyncError as exc:
            if strategy.kind is StrategyKind.UNUSABLE:
                self.errors.report(exc, "Model not loaded")
            return None
        if conversation_id and strategy.kind is StrategyKind.EPHEMERAL:
            await self._adopt_new_conversation(conversation_id)
        return conversation_id

    async def create_conversation(
        self,
        content: str,
        attachments: list[Attachment] | None = None,
        *,
        options: ModelOptions | None = None,
        **extra: Any,
    ) -> str | None:
        """Create a persisted conversation seeded with ``content`` and switch to it."""
        params = SendMessageParams(content=content, attachments=attachments or [])
        if params.is_empty:
            self.errors.report(EmptyMessageError("Message is empty."), "Nothing to send")
            return None
        resolved = self._options_for(self.model).merged(options)
        if not resolved.has_model:
            self.errors.report(
                ModelNotSelectedError("Select a model before sending a message."),
                "No model selected",
            )
            return None
        if not self._check_quota():
            return None
        try:
            stored = params.attachments
            if stored:
                stored = await self.errors.guard(
                    "Failed to upload attachment",
                    self.pipeline.materialize(stored, AttachmentMode.DURABLE),
                )
            conversation_id = await self.errors.guard(
                "Failed to create conversation",
                self._backend.create_conversation(
                    params.content,
                    [attachment.for_persistence() for attachment in stored],
                    resolved,
                    **extra,
                ),
            )
        except ChatSyncError:
            return None
        await self._adopt_new_conversation(conversation_id)
        return conversation_id

    async def send_message_to_new_conversation(
        self,
        content: str,
        attachments: list[Attachment] | None = None,
        *,
        context_summary_source: list[Message] | None = None,
        options: ModelOptions | None = None,
    ) -> str | None:
        """Branch into a fresh conversation, carrying a summary of the old one when possible."""
        summary: str | None = None
        if context_summary_source and self._summary_generator is not None:
            try:
                summary = await self._summary_generator.summarize(context_summary_source)
            except Exception as exc:  # noqa: BLE001 - the summary is optional context.
                LOGGER.warning(
                    "engine.summary.failed",
                    extra={
                        "event": "engine.summary.failed",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
        extra: dict[str, Any] = {}
        if summary:
            extra["context_summary"] = summary
        return await self.create_conversation(content, attachments, options=options, **extra)

    def add_optimistic_message(self, message: Message) -> None:
        self.store.add_optimistic(message)

    def clear_optimistic_messages(self) -> None:
        self.store.clear_optimistic()

    def set_conversation(self, conversation_id: str | None) -> None:
        """Point the engine at another conversation, dropping state tied to the old one."""
        if conversation_id == self._conversation_id:
            return
        LOGGER.info(
            "engine.conversation.switched",
            extra={
                "event": "engine.conversation.switched",
                "from": self._conversation_id,
                "to": conversation_id,
            },
        )
        self._conversation_id = conversation_id
        self.store.reset()
        self._stopped_streaming_id = None
        self._stop_pending = False
        self.generating.set(False)
        self.generation.reset()

    async def close(self) -> None:
        self._unlisten()
        await self._tasks.cancel_all()

    # ------------------------------------------------------------------
    # Snapshots, resume, and publication
    # ------------------------------------------------------------------

    async def _on_snapshot(self, snapshot: Snapshot) -> None:
        if snapshot.skipped or snapshot.conversation_id != self._conversation_id:
            return
        merged = self.store.update_authoritative(snapshot.messages)
        if snapshot.messages is not None:
            # Gate on what the engine knew before this snapshot, otherwise the
            # unfinished reply in it would mask the backend's streaming hint.
            self.resume.observe(
                snapshot.conversation_id,
                snapshot.messages,
                snapshot.is_streaming,
                is_generating=self.generating.value or self.generation.is_active,
            )
            self._sync_generation(snapshot.messages)
        await self._publish_messages(merged)

    def _sync_generation(self, messages: list[Message]) -> None:
        """Derive the generating flag and stream progress from the backend's view."""
        streaming = find_streaming_message(messages)
        if streaming is None:
            if not self.generation.is_sending:
                self.generating.set(False)
            self.generation.finish()
            return
        if self._stop_pending:
            self._stopped_streaming_id = streaming.id
            self._stop_pending = False
        if streaming.id == self._stopped_streaming_id:
            return
        self.generating.set(True)
        if self.generation.is_sending:
            self.generation.start_streaming(streaming.id)
        if self.generation.is_streaming:
            seen = self.generation.stream_content
            if streaming.content.startswith(seen):
                self.generation.add_stream_chunk(streaming.content[len(seen) :])

    def _on_generating_changed(self, value: bool) -> None:
        # A rolled-back stop re-arms detection for the same message.
        if value:
            self._stopped_streaming_id = None
            self._stop_pending = False

    async def _resume_conversation(self, conversation_id: str) -> None:
        await self._persisted(conversation_id).resume()

    def _on_ephemeral_messages(self, messages: list[Message]) -> None:
        self._tasks.spawn(self._publish_messages(self.store.merge(messages)))

    async def _publish_messages(self, messages: list[Message] | None = None) -> None:
        await self.events.publish(
            MESSAGES_CHANGED,
            {
                "conversation_id": self._conversation_id,
                "messages": self.messages if messages is None else messages,
                "is_loading": self.is_loading_messages,
                "is_streaming": self.is_streaming,
            },
            source="engine",
        )

    async def _adopt_new_conversation(self, conversation_id: str) -> None:
        self.set_conversation(conversation_id)
        if self._on_conversation_create is not None:
            self._on_conversation_create(conversation_id)
        if self._navigator is not None:
            self._navigator.navigate_to_conversation(conversation_id)
        await self.events.publish(
            CONVERSATION_CREATED, {"conversation_id": conversation_id}, source="engine"
        )
