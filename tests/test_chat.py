"""Tests for OllamaModelClient streaming, retries, request building, and error mapping."""

from __future__ import annotations

from collections.abc import AsyncGenerator
import unittest

import httpx

from chat_sync.chat import ChatChunk, OllamaModelClient
from chat_sync.config import EngineSettings
from chat_sync.exceptions import ModelClientError, ModelConnectionError
from chat_sync.models import ModelDescriptor, ModelOptions, ReasoningConfig

MODEL = ModelDescriptor(model_id="llama3.2", provider="ollama")


async def _chunk_stream(chunks: list[dict]) -> AsyncGenerator[dict, None]:
    for chunk in chunks:
        yield chunk


async def _broken_stream(chunks: list[dict]) -> AsyncGenerator[dict, None]:
    for chunk in chunks:
        yield chunk
    raise RuntimeError("stream interrupted")


def _content_chunk(text: str) -> dict:
    return {"message": {"content": text, "thinking": None}}


def _thinking_chunk(text: str) -> dict:
    return {"message": {"content": None, "thinking": text}}


def _done_chunk(reason: str = "stop", eval_count: int | None = None) -> dict:
    chunk: dict = {"message": {"content": ""}, "done": True, "done_reason": reason}
    if eval_count is not None:
        chunk["eval_count"] = eval_count
    return chunk


class FakeClient:
    """Simple fake Ollama client for deterministic tests."""

    def __init__(
        self,
        responses: list[list[dict]],
        fail_calls: dict[int, Exception] | None = None,
        broken_calls: set[int] | None = None,
    ) -> None:
        self.responses = responses
        self.fail_calls = fail_calls or {}
        self.broken_calls = broken_calls or set()
        self.calls = 0
        self.kwargs_per_call: list[dict] = []
        self.init_kwargs: dict = {}

    def __call__(self, **kwargs) -> FakeClient:
        self.init_kwargs = kwargs
        return self

    async def chat(self, **kwargs) -> AsyncGenerator[dict, None]:
        self.calls += 1
        self.kwargs_per_call.append(kwargs)
        if self.calls in self.fail_calls:
            raise self.fail_calls[self.calls]
        payload = self.responses[min(self.calls - 1, len(self.responses) - 1)]
        if self.calls in self.broken_calls:
            return _broken_stream(payload)
        return _chunk_stream(payload)


async def _collect(client: OllamaModelClient, **kwargs) -> list[ChatChunk]:
    return [
        chunk
        async for chunk in client.stream_chat(
            kwargs.pop("model", MODEL), [{"role": "user", "content": "hi"}], **kwargs
        )
    ]


class StreamChatTests(unittest.IsolatedAsyncioTestCase):
    """Validate chunk typing and completion reporting."""

    async def test_content_and_done_chunks(self) -> None:
        fake = FakeClient([[_content_chunk("Hel"), _content_chunk("lo"), _done_chunk("stop", 7)]])
        chunks = await _collect(OllamaModelClient(client_factory=fake))

        self.assertEqual([c.kind for c in chunks], ["content", "content", "done"])
        self.assertEqual("".join(c.text for c in chunks), "Hello")
        self.assertEqual(chunks[-1].finish_reason, "stop")
        self.assertEqual(chunks[-1].token_count, 7)

    async def test_thinking_becomes_reasoning_chunk(self) -> None:
        fake = FakeClient([[_thinking_chunk("hmm"), _content_chunk("ok"), _done_chunk()]])
        chunks = await _collect(OllamaModelClient(client_factory=fake))
        self.assertEqual(
            [(c.kind, c.text) for c in chunks[:2]], [("reasoning", "hmm"), ("content", "ok")]
        )

    async def test_missing_done_is_synthesized(self) -> None:
        fake = FakeClient([[_content_chunk("partial")]])
        chunks = await _collect(OllamaModelClient(client_factory=fake))
        self.assertEqual(chunks[-1], ChatChunk(kind="done", finish_reason="stop"))

    async def test_api_key_is_sent_as_bearer_header(self) -> None:
        fake = FakeClient([[_done_chunk()]])
        await _collect(
            OllamaModelClient(host="http://gpu:11434", client_factory=fake), api_key="k-1"
        )
        self.assertEqual(fake.init_kwargs["headers"], {"Authorization": "Bearer k-1"})
        self.assertEqual(fake.init_kwargs["host"], "http://gpu:11434")

        await _collect(OllamaModelClient(client_factory=fake))
        self.assertIsNone(fake.init_kwargs["headers"])

    async def test_from_settings_uses_model_section(self) -> None:
        settings = EngineSettings.from_config(
            {"model": {"host": "http://gpu:11434", "timeout": 30, "max_retries": 0}}
        )
        fake = FakeClient([[_done_chunk()]], fail_calls={1: httpx.ReadTimeout("slow")})
        client = OllamaModelClient.from_settings(settings, client_factory=fake)

        self.assertEqual(client.retries, 0)
        with self.assertRaises(ModelClientError):
            await _collect(client)
        self.assertEqual(fake.init_kwargs["host"], "http://gpu:11434")
        self.assertEqual(fake.init_kwargs["timeout"], 30)


class RequestBuildingTests(unittest.IsolatedAsyncioTestCase):
    async def test_options_are_translated_for_ollama(self) -> None:
        fake = FakeClient([[_done_chunk()]])
        model = ModelDescriptor(
            model_id="qwen3", provider="ollama", context_length=32768, supports_reasoning=True
        )
        await _collect(
            OllamaModelClient(client_factory=fake),
            model=model,
            options=ModelOptions(
                temperature=0.3,
                max_tokens=256,
                reasoning_config=ReasoningConfig(enabled=True, effort="high"),
            ),
        )
        request = fake.kwargs_per_call[0]
        self.assertEqual(request["model"], "qwen3")
        self.assertTrue(request["stream"])
        self.assertEqual(
            request["options"], {"temperature": 0.3, "num_predict": 256, "num_ctx": 32768}
        )
        self.assertEqual(request["think"], "high")

    async def test_reasoning_ignored_for_models_without_support(self) -> None:
        fake = FakeClient([[_done_chunk()]])
        await _collect(
            OllamaModelClient(client_factory=fake),
            options=ModelOptions(reasoning_config=ReasoningConfig(enabled=True)),
        )
        self.assertNotIn("think", fake.kwargs_per_call[0])
        self.assertNotIn("options", fake.kwargs_per_call[0])


class RetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_failure_before_first_chunk_is_retried(self) -> None:
        fake = FakeClient(
            [[_content_chunk("ok"), _done_chunk()]],
            fail_calls={1: RuntimeError("temporary failure")},
        )
        client = OllamaModelClient(retries=1, retry_backoff_seconds=0.0, client_factory=fake)

        with self.assertLogs("chat_sync.chat", level="WARNING") as logs:
            chunks = await _collect(client)

        self.assertEqual(fake.calls, 2)
        self.assertEqual(chunks[0].text, "ok")
        self.assertTrue(any("chat.request.retry" in line for line in logs.output))

    async def test_failure_after_first_chunk_is_not_retried(self) -> None:
        fake = FakeClient([[_content_chunk("half")]], broken_calls={1})
        client = OllamaModelClient(retries=3, retry_backoff_seconds=0.0, client_factory=fake)

        received: list[ChatChunk] = []
        with self.assertRaises(ModelClientError):
            async for chunk in client.stream_chat(MODEL, []):
                received.append(chunk)

        self.assertEqual(fake.calls, 1)
        self.assertEqual([c.text for c in received], ["half"])

    async def test_connection_errors_map_to_connection_error(self) -> None:
        fake = FakeClient([[]], fail_calls={1: httpx.ConnectError("refused")})
        client = OllamaModelClient(retries=0, client_factory=fake)
        with self.assertRaises(ModelConnectionError):
            await _collect(client)


if __name__ == "__main__":
    unittest.main()
