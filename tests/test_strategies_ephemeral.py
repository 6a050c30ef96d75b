"""Tests for the in-memory strategy: streaming, stop, retry truncation, and save."""

from __future__ import annotations

import asyncio
import unittest

from fakes import FakeBackend, FakeCredentials, FakeModelClient, FakeNotifier

from chat_sync.chat import ChatChunk
from chat_sync.exceptions import (
    ChatSyncError,
    ModelClientError,
    ModelNotLoadedError,
    WriteFailedError,
)
from chat_sync.models import Attachment, Message, ModelDescriptor, SendMessageParams
from chat_sync.strategies import (
    EphemeralStrategy,
    ErrorChannel,
    GeneratingFlag,
    StrategyKind,
    UnusableStrategy,
    select_strategy,
    to_model_messages,
)
from chat_sync.task_manager import TaskManager

MODEL = ModelDescriptor(model_id="llama3.2", provider="ollama")


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class EphemeralStrategyTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.notifier = FakeNotifier()
        self.reported: list[ChatSyncError] = []
        self.generating = GeneratingFlag()
        self.tasks = TaskManager()
        self.backend = FakeBackend()
        self.client = FakeModelClient()
        self.credentials = FakeCredentials()
        self.snapshots: list[list[Message]] = []
        self.chunks: list[str] = []
        self.strategy = self._build()

    def _build(self, **overrides) -> EphemeralStrategy:
        kwargs = {
            "model": MODEL,
            "model_client": self.client,
            "credentials": self.credentials,
            "errors": ErrorChannel(self.notifier, self.reported.append),
            "generating": self.generating,
            "task_manager": self.tasks,
            "backend": self.backend,
            "on_messages_change": self.snapshots.append,
            "on_stream_chunk": self.chunks.append,
        }
        kwargs.update(overrides)
        return EphemeralStrategy(**kwargs)

    async def asyncTearDown(self) -> None:
        await self.tasks.cancel_all()


class StreamingTests(EphemeralStrategyTestCase):
    async def test_reply_streams_into_assistant_placeholder(self) -> None:
        await self.strategy.send_message(SendMessageParams(content="hi"))

        user, reply = self.strategy.messages
        self.assertEqual((user.role, user.content), ("user", "hi"))
        self.assertEqual(reply.role, "assistant")
        self.assertEqual(reply.content, "Hello World")
        self.assertEqual(reply.metadata.finish_reason, "stop")
        self.assertEqual(reply.metadata.token_count, 2)
        self.assertEqual(reply.metadata.status, "done")
        self.assertEqual(self.chunks, ["Hello", " World"])
        self.assertFalse(self.generating.value)

        history, api_key, _ = self.client.requests[0]
        self.assertEqual(history, [{"role": "user", "content": "hi"}])
        self.assertEqual(api_key, "secret")
        self.assertEqual(self.credentials.requests, [("ollama", "llama3.2")])

    async def test_reasoning_chunks_accumulate_separately(self) -> None:
        self.client.chunks = [
            ChatChunk(kind="reasoning", text="think "),
            ChatChunk(kind="reasoning", text="hard"),
            ChatChunk(kind="content", text="42"),
            ChatChunk(kind="done", finish_reason="stop"),
        ]
        await self.strategy.send_message(SendMessageParams(content="answer?"))
        reply = self.strategy.messages[-1]
        self.assertEqual(reply.reasoning, "think hard")
        self.assertEqual(reply.content, "42")

    async def test_generating_flag_is_set_while_streaming(self) -> None:
        hold = asyncio.Event()
        self.client.hold = hold
        send = asyncio.create_task(self.strategy.send_message(SendMessageParams(content="hi")))
        await _wait_for(lambda: self.generating.value)
        hold.set()
        await send
        self.assertFalse(self.generating.value)

    async def test_stop_marks_partial_reply_stopped(self) -> None:
        self.client.hold = asyncio.Event()
        send = asyncio.create_task(self.strategy.send_message(SendMessageParams(content="hi")))
        await _wait_for(
            lambda: bool(self.strategy.messages)
            and self.strategy.messages[-1].content == "Hello World"
        )

        self.strategy.stop_generation()
        self.assertFalse(self.generating.value)
        await send

        reply = self.strategy.messages[-1]
        self.assertEqual(reply.content, "Hello World")
        self.assertTrue(reply.metadata.stopped)
        self.assertEqual(reply.metadata.finish_reason, "stop")
        self.assertEqual(self.notifier.errors, [])

    async def test_missing_key_discards_placeholder_and_reports(self) -> None:
        self.credentials.key = None
        with self.assertRaises(WriteFailedError):
            await self.strategy.send_message(SendMessageParams(content="hi"))

        self.assertEqual([m.role for m in self.strategy.messages], ["user"])
        self.assertEqual(self.notifier.errors[0][0], "Missing API key")
        self.assertEqual(self.client.requests, [])

    async def test_model_failure_discards_partial_reply(self) -> None:
        self.client.fail_with = RuntimeError("connection reset")
        with self.assertRaises(ModelClientError):
            await self.strategy.send_message(SendMessageParams(content="hi"))

        self.assertEqual([m.role for m in self.strategy.messages], ["user"])
        self.assertEqual(len(self.reported), 1)
        self.assertFalse(self.generating.value)

    async def test_persona_prompt_is_sent_as_system_message(self) -> None:
        await self.strategy.send_message(
            SendMessageParams(content="hi", persona_prompt="You are terse.")
        )
        history = self.client.requests[0][0]
        self.assertEqual(history[0], {"role": "system", "content": "You are terse."})


class HistoryRewriteTests(EphemeralStrategyTestCase):
    async def asyncSetUp(self) -> None:
        await self.strategy.send_message(SendMessageParams(content="one"))
        await self.strategy.send_message(SendMessageParams(content="two"))
        self.u1, self.a1, self.u2, self.a2 = self.strategy.messages

    async def test_retry_assistant_truncates_to_preceding_user_turn(self) -> None:
        await self.strategy.retry_from_message(self.a1.id)

        messages = self.strategy.messages
        self.assertEqual(len(messages), 2)
        self.assertEqual(messages[0].id, self.u1.id)
        self.assertNotEqual(messages[1].id, self.a1.id)
        self.assertEqual(self.client.requests[-1][0], [{"role": "user", "content": "one"}])

    async def test_retry_user_keeps_it_and_regenerates(self) -> None:
        await self.strategy.retry_from_message(self.u2.id)
        ids = [m.id for m in self.strategy.messages]
        self.assertEqual(ids[:3], [self.u1.id, self.a1.id, self.u2.id])
        self.assertEqual(len(ids), 4)

    async def test_edit_user_message_regenerates(self) -> None:
        await self.strategy.edit_message(self.u1.id, "uno")
        messages = self.strategy.messages
        self.assertEqual([m.role for m in messages], ["user", "assistant"])
        self.assertEqual(messages[0].content, "uno")
        self.assertEqual(messages[1].content, "Hello World")

    async def test_edit_assistant_message_only_truncates(self) -> None:
        requests_before = len(self.client.requests)
        await self.strategy.edit_message(self.a1.id, "rewritten")
        messages = self.strategy.messages
        self.assertEqual([m.id for m in messages], [self.u1.id, self.a1.id])
        self.assertEqual(messages[1].content, "rewritten")
        self.assertEqual(len(self.client.requests), requests_before)

    async def test_delete_removes_locally(self) -> None:
        await self.strategy.delete_message(self.a2.id)
        self.assertNotIn(self.a2.id, [m.id for m in self.strategy.messages])
        self.assertEqual(self.backend.calls, [])

    async def test_unknown_message_is_reported(self) -> None:
        with self.assertRaises(WriteFailedError):
            await self.strategy.delete_message("missing")
        self.assertEqual(self.notifier.errors[-1][0], "Failed to delete message")

    async def test_save_persists_history_and_clears_it(self) -> None:
        conversation_id = await self.strategy.save_conversation("Counting")

        self.assertEqual(conversation_id, "conv-new")
        payload, title = self.backend.saved[0]
        self.assertEqual(title, "Counting")
        self.assertEqual([m["role"] for m in payload], ["user", "assistant"] * 2)
        self.assertNotIn("id", payload[0])
        self.assertEqual(self.strategy.messages, [])
        self.assertEqual(self.snapshots[-1], [])

    async def test_failed_save_keeps_history(self) -> None:
        self.backend.failures["save_conversation"] = RuntimeError("disk full")
        with self.assertRaises(WriteFailedError):
            await self.strategy.save_conversation()
        self.assertEqual(len(self.strategy.messages), 4)


class SaveWithoutBackendTests(EphemeralStrategyTestCase):
    async def test_save_requires_backend(self) -> None:
        strategy = self._build(backend=None)
        with self.assertRaises(WriteFailedError):
            await strategy.save_conversation()


class ToModelMessagesTests(unittest.TestCase):
    def test_context_and_empty_assistant_messages_are_skipped(self) -> None:
        messages = [
            Message(role="context", content="summary of an older chat"),
            Message(role="user", content="hi"),
            Message(role="assistant", content=""),
        ]
        self.assertEqual(to_model_messages(messages), [{"role": "user", "content": "hi"}])

    def test_attachments_are_folded_for_the_model(self) -> None:
        message = Message(
            role="user",
            content="look",
            attachments=[
                Attachment(type="text", name="a.json", size=2, content="{}"),
                Attachment(type="pdf", name="d.pdf", size=2, extracted_text="page one"),
                Attachment(type="image", name="p.webp", size=2, content="QUJD"),
            ],
        )
        (entry,) = to_model_messages([message])
        self.assertEqual(
            entry["content"],
            "look\n\n--- Content from a.json ---\n```json\n{}\n```"
            "\n\n--- Content from d.pdf ---\npage one",
        )
        self.assertEqual(entry["images"], ["QUJD"])


class SelectionTests(unittest.TestCase):
    def test_conversation_id_wins(self) -> None:
        self.assertIs(select_strategy("c1", None), StrategyKind.PERSISTED)
        self.assertIs(select_strategy("c1", MODEL), StrategyKind.PERSISTED)

    def test_fully_described_model_allows_ephemeral(self) -> None:
        self.assertIs(select_strategy(None, MODEL), StrategyKind.EPHEMERAL)
        self.assertIs(select_strategy("", MODEL), StrategyKind.EPHEMERAL)

    def test_otherwise_unusable(self) -> None:
        self.assertIs(select_strategy(None, None), StrategyKind.UNUSABLE)
        partial = ModelDescriptor(model_id="llama3.2", provider=" ")
        self.assertIs(select_strategy(None, partial), StrategyKind.UNUSABLE)


class UnusableStrategyTests(unittest.IsolatedAsyncioTestCase):
    async def test_every_operation_fails_with_model_not_loaded(self) -> None:
        strategy = UnusableStrategy()
        operations = [
            strategy.send_message(SendMessageParams(content="hi")),
            strategy.edit_message("m", "x"),
            strategy.retry_from_message("m"),
            strategy.delete_message("m"),
            strategy.save_conversation(),
            strategy.resume(),
        ]
        for operation in operations:
            with self.assertRaises(ModelNotLoadedError):
                await operation
        with self.assertRaises(ModelNotLoadedError):
            strategy.stop_generation()


if __name__ == "__main__":
    unittest.main()
