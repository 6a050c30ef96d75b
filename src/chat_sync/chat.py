"""Async Ollama model client used by ephemeral conversations."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Any, Literal

import httpx
from ollama import AsyncClient, ResponseError

from .exceptions import ChatSyncError, ModelClientError, ModelConnectionError
from .models import ModelDescriptor, ModelOptions

if TYPE_CHECKING:
    from .config import EngineSettings

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[..., Any]


@dataclass
class ChatChunk:
    """A single typed chunk yielded while streaming an assistant reply."""

    kind: Literal["reasoning", "content", "done"]
    text: str = ""
    finish_reason: str | None = None
    token_count: int | None = None


class OllamaModelClient:
    """Stream chat completions from an Ollama host.

    A client is built per call so each request carries the credential
    resolved for it. Transient failures are retried only until the first
    chunk has been yielded; after that a failure is surfaced as-is so
    already-delivered text is never duplicated.
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        timeout: int = 120,
        retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self.host = host
        self.timeout = timeout
        self.retries = max(0, retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._client_factory = client_factory or AsyncClient

    @classmethod
    def from_settings(
        cls, settings: EngineSettings, client_factory: ClientFactory | None = None
    ) -> OllamaModelClient:
        """Build a client from the ``[model]`` section of the engine settings."""
        return cls(
            host=settings.model_host,
            timeout=settings.model_timeout,
            retries=settings.model_max_retries,
            retry_backoff_seconds=settings.model_retry_backoff_seconds,
            client_factory=client_factory,
        )

    def _build_client(self, api_key: str | None) -> Any:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else None
        return self._client_factory(host=self.host, timeout=self.timeout, headers=headers)

    @staticmethod
    def _build_request(
        model: ModelDescriptor,
        messages: list[dict[str, Any]],
        options: ModelOptions | None,
    ) -> dict[str, Any]:
        opts = options or ModelOptions()
        request_options: dict[str, Any] = {}
        if opts.temperature is not None:
            request_options["temperature"] = opts.temperature
        if opts.top_p is not None:
            request_options["top_p"] = opts.top_p
        if opts.max_tokens is not None:
            request_options["num_predict"] = opts.max_tokens
        if model.context_length:
            request_options["num_ctx"] = model.context_length

        kwargs: dict[str, Any] = {
            "model": opts.model or model.model_id,
            "messages": messages,
            "stream": True,
        }
        if request_options:
            kwargs["options"] = request_options
        reasoning = opts.reasoning_config
        if reasoning is not None and reasoning.enabled and model.supports_reasoning:
            kwargs["think"] = reasoning.effort
        return kwargs

    @staticmethod
    def _extract_from_chunk(chunk: Any, field: str) -> Any:
        """Read ``message.<field>`` from an SDK chunk or dict, falling back to top level."""
        message_obj = getattr(chunk, "message", None)
        if message_obj is not None and not isinstance(chunk, dict):
            value = getattr(message_obj, field, None)
            if value is not None:
                return value
            value = getattr(chunk, field, None)
            if value is not None:
                return value

        if hasattr(chunk, "model_dump"):
            chunk = chunk.model_dump()

        if isinstance(chunk, dict):
            message = chunk.get("message")
            if isinstance(message, dict):
                value = message.get(field)
                if value is not None:
                    return value
            return chunk.get(field)
        return None

    @classmethod
    def _chunks_from_payload(cls, payload: Any) -> list[ChatChunk]:
        chunks: list[ChatChunk] = []
        thinking = cls._extract_from_chunk(payload, "thinking")
        if isinstance(thinking, str) and thinking:
            chunks.append(ChatChunk(kind="reasoning", text=thinking))
        content = cls._extract_from_chunk(payload, "content")
        if isinstance(content, str) and content:
            chunks.append(ChatChunk(kind="content", text=content))
        if cls._extract_from_chunk(payload, "done"):
            reason = cls._extract_from_chunk(payload, "done_reason") or "stop"
            eval_count = cls._extract_from_chunk(payload, "eval_count")
            chunks.append(
                ChatChunk(
                    kind="done",
                    finish_reason=str(reason),
                    token_count=eval_count if isinstance(eval_count, int) else None,
                )
            )
        return chunks

    def _map_exception(self, exc: Exception) -> ChatSyncError:
        if isinstance(exc, ChatSyncError):
            return exc
        if isinstance(
            exc,
            (httpx.ConnectError, httpx.ConnectTimeout, httpx.ReadTimeout, httpx.NetworkError),
        ):
            return ModelConnectionError(f"Unable to connect to model host {self.host}.")
        if isinstance(exc, ResponseError):
            return ModelClientError(f"Model host rejected the request: {exc.error}")
        return ModelClientError(f"Failed to stream response from {self.host}: {exc}")

    async def stream_chat(
        self,
        model: ModelDescriptor,
        messages: list[dict[str, Any]],
        api_key: str | None = None,
        options: ModelOptions | None = None,
    ) -> AsyncIterator[ChatChunk]:
        """Stream the assistant reply for ``messages`` as typed chunks.

        Always finishes with a ``done`` chunk, synthesizing one when the
        host closes the stream without reporting completion.
        """
        client = self._build_client(api_key)
        request = self._build_request(model, messages, options)

        for attempt in range(self.retries + 1):
            yielded = False
            finished = False
            try:
                stream = await client.chat(**request)
                async for payload in stream:
                    for chunk in self._chunks_from_payload(payload):
                        yielded = True
                        finished = finished or chunk.kind == "done"
                        yield chunk
                if not finished:
                    yield ChatChunk(kind="done", finish_reason="stop")
                return
            except asyncio.CancelledError:
                LOGGER.info("chat.request.cancelled", extra={"event": "chat.request.cancelled"})
                raise
            except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
                mapped = self._map_exception(exc)
                LOGGER.warning(
                    "chat.request.retry",
                    extra={
                        "event": "chat.request.retry",
                        "attempt": attempt + 1,
                        "error_type": type(mapped).__name__,
                        "partial": yielded,
                    },
                )
                if yielded or attempt >= self.retries:
                    raise mapped from exc
                await asyncio.sleep(self.retry_backoff_seconds * (attempt + 1))
