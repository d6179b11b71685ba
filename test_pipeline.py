import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from geminibot.config.settings import PipelineSettings
from geminibot.domain import Author, Candidate, ConversationHistory, Mention, Message, ModelResponse
from geminibot.guilds import GuildConfigResolver, InMemoryGuildConfigStore
from geminibot.llm.errors import (
    LLMTimeoutError,
    RepositoryError,
    RetriesExhaustedError,
    SafetyBlockedError,
)
from geminibot.llm.resilient_client import ResilientModelClient, RetryPolicy
from geminibot.pipeline import PromptOrchestrator


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
ALICE = Author(id="1", display_name="Alice")


def history_of(*contents: str) -> ConversationHistory:
    return ConversationHistory(
        Message(id=str(i), author=ALICE, content=c, timestamp=T0 + timedelta(seconds=i))
        for i, c in enumerate(contents)
    )


class FakeRepository:
    def __init__(self, history=None, error=None, delay=0.0):
        self.history = history or ConversationHistory()
        self.error = error
        self.delay = delay
        self.calls = []

    async def _answer(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.history

    async def get_messages_before(self, channel_id, message_id, limit):
        self.calls.append(("before", channel_id, message_id, limit))
        return await self._answer()

    async def get_thread_messages(self, thread_id):
        self.calls.append(("thread", thread_id))
        return await self._answer()


class FakeModelAPI:
    def __init__(self, response=None, delay=0.0):
        self.response = response or ModelResponse(candidates=(Candidate("STOP", ("the answer",)),))
        self.delay = delay
        self.calls = []

    async def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.response


def mention(content="what is up?", guild_id="g1", is_thread=False, message_id="99") -> Mention:
    return Mention(
        message_id=message_id,
        channel_id="c1",
        guild_id=guild_id,
        author=ALICE,
        content=content,
        is_thread=is_thread,
    )


class TestPromptOrchestrator(unittest.IsolatedAsyncioTestCase):
    def build(self, repo=None, api=None, **settings_overrides):
        settings = PipelineSettings(
            default_api_key="default-key-0000",
            default_model="gemini-2.5-pro",
            system_prompt="You are helpful.",
            max_history_messages=7,
            retry_base_delay=0.0,
            **settings_overrides,
        )
        self.repo = repo or FakeRepository()
        self.api = api or FakeModelAPI()
        self.resolver = GuildConfigResolver(
            InMemoryGuildConfigStore(), settings.default_api_key, settings.default_model
        )
        client = ResilientModelClient(
            self.api, RetryPolicy(settings.max_retries, settings.retry_base_delay)
        )
        return PromptOrchestrator(settings, self.repo, self.resolver, client)

    async def test_channel_mention_fetches_messages_before_it(self):
        orch = self.build(repo=FakeRepository(history_of("hello", "how are you")))
        self.assertEqual(await orch.handle_mention(mention()), "the answer")
        self.assertEqual(self.repo.calls, [("before", "c1", "99", 7)])

        parts = [p["text"] for p in self.api.calls[0]["contents"][0]["parts"]]
        self.assertIn("what is up?", parts[1])
        self.assertIn("Alice: hello", parts[2])
        self.assertIn("Alice: how are you", parts[2])
        self.assertEqual(self.api.calls[0]["system_instruction"], "You are helpful.")

    async def test_thread_mention_fetches_thread(self):
        orch = self.build()
        await orch.handle_mention(mention(is_thread=True))
        self.assertEqual(self.repo.calls, [("thread", "c1")])

    async def test_mention_message_is_not_repeated_in_history(self):
        history = ConversationHistory([
            Message(id="98", author=ALICE, content="earlier", timestamp=T0),
            Message(id="99", author=ALICE, content="what is up?", timestamp=T0 + timedelta(seconds=1)),
        ])
        orch = self.build(repo=FakeRepository(history))
        await orch.handle_mention(mention(is_thread=True))
        history_text = self.api.calls[0]["contents"][0]["parts"][2]["text"]
        self.assertIn("earlier", history_text)
        self.assertNotIn("what is up?", history_text)

    async def test_channel_history_keeps_all_requested_messages(self):
        contents = [f"note {i}" for i in range(7)]
        orch = self.build(repo=FakeRepository(history_of(*contents)))
        await orch.handle_mention(mention())
        history_text = self.api.calls[0]["contents"][0]["parts"][2]["text"]
        for content in contents:
            self.assertIn(f"Alice: {content}", history_text)

    async def test_history_is_truncated_to_budget(self):
        contents = [f"message number {i} " + "x" * 40 for i in range(20)]
        orch = self.build(
            repo=FakeRepository(history_of(*contents)),
            max_context_chars=1000,
            max_history_chars=200,
        )
        await orch.handle_mention(mention())
        history_text = self.api.calls[0]["contents"][0]["parts"][2]["text"]
        self.assertIn("message number 19 ", history_text)
        self.assertNotIn("message number 0 ", history_text)
        kept = [line for line in history_text.splitlines() if line.startswith("Alice: ")]
        self.assertLessEqual(sum(len(line) + 1 for line in kept), 200)

    async def test_question_is_clamped(self):
        orch = self.build(max_context_chars=50, max_history_chars=20)
        await orch.handle_mention(mention(content="q" * 500))
        question_part = self.api.calls[0]["contents"][0]["parts"][1]["text"]
        self.assertTrue(question_part.endswith("q" * 50))
        self.assertNotIn("q" * 51, question_part)

    async def test_uses_guild_credentials(self):
        orch = self.build()
        self.resolver.set_api_key("g1", "guild-key-123456", "admin")
        self.resolver.set_model("g1", "gemini-2.0-flash")
        await orch.handle_mention(mention())
        self.assertEqual(self.api.calls[0]["api_key"], "guild-key-123456")
        self.assertEqual(self.api.calls[0]["model"], "gemini-2.0-flash")

    async def test_model_override_without_key_uses_default_key(self):
        orch = self.build()
        self.resolver.set_model("g1", "gemini-2.0-flash")
        await orch.handle_mention(mention())
        self.assertEqual(self.api.calls[0]["api_key"], "default-key-0000")
        self.assertEqual(self.api.calls[0]["model"], "gemini-2.0-flash")

    async def test_dm_uses_defaults(self):
        orch = self.build()
        await orch.handle_mention(mention(guild_id=None))
        self.assertEqual(self.api.calls[0]["api_key"], "default-key-0000")
        self.assertEqual(self.api.calls[0]["model"], "gemini-2.5-pro")

    async def test_repository_failure_is_classified(self):
        orch = self.build(repo=FakeRepository(error=ConnectionResetError("gateway gone")))
        with self.assertRaises(RepositoryError) as cm:
            await orch.handle_mention(mention())
        self.assertIsInstance(cm.exception.__cause__, ConnectionResetError)
        self.assertEqual(self.api.calls, [])

    async def test_slow_repository_becomes_timeout(self):
        orch = self.build(repo=FakeRepository(delay=5.0), request_timeout=0.05)
        with self.assertRaises(LLMTimeoutError):
            await orch.handle_mention(mention())

    async def test_repository_timeout_error_becomes_timeout(self):
        orch = self.build(repo=FakeRepository(error=asyncio.TimeoutError()))
        with self.assertRaises(LLMTimeoutError):
            await orch.handle_mention(mention())

    async def test_slow_model_becomes_timeout(self):
        orch = self.build(api=FakeModelAPI(delay=5.0), request_timeout=0.05)
        with self.assertRaises(LLMTimeoutError):
            await orch.handle_mention(mention())

    async def test_classified_errors_propagate(self):
        blocked = ModelResponse(candidates=(Candidate("SAFETY"),))
        orch = self.build(api=FakeModelAPI(blocked))
        with self.assertRaises(SafetyBlockedError):
            await orch.handle_mention(mention())
        self.assertEqual(len(self.api.calls), 1)

        orch = self.build(api=FakeModelAPI(ModelResponse()), max_retries=1)
        with self.assertRaises(RetriesExhaustedError):
            await orch.handle_mention(mention())
        self.assertEqual(len(self.api.calls), 2)


if __name__ == "__main__":
    unittest.main()
