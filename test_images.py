import asyncio
import unittest

from geminibot.domain import Candidate, InlineImage, ModelResponse
from geminibot.guilds import GuildConfigResolver, InMemoryGuildConfigStore
from geminibot.images import (
    MAX_IMAGE_PROMPT_CHARS,
    ImageGenerator,
    ImageOptions,
    build_image_prompt,
    classify_image_response,
    validate_image_prompt,
)
from geminibot.llm.errors import (
    EmptyResponseError,
    LLMAuthError,
    LLMTimeoutError,
    RecitationBlockedError,
    RetriesExhaustedError,
    SafetyBlockedError,
    ValidationError,
)
from geminibot.llm.resilient_client import ResilientModelClient, RetryPolicy


PNG = InlineImage(b"\x89PNG fake")
PICTURE = ModelResponse(candidates=(Candidate("STOP", ("Here is your image",), images=(PNG,)),))
TEXT_ONLY = ModelResponse(candidates=(Candidate("STOP", ("I can't draw that",)),))


class FakeModelAPI:
    def __init__(self, *script, delay=0.0):
        self.script = list(script)
        self.delay = delay
        self.calls = []

    async def generate_content(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


async def no_sleep(delay):
    return None


class TestImagePrompt(unittest.TestCase):
    def test_validation(self):
        self.assertEqual(validate_image_prompt("  a red fox  "), "a red fox")
        for bad in ("", "   ", "ab", "x" * (MAX_IMAGE_PROMPT_CHARS + 1)):
            with self.subTest(length=len(bad)):
                with self.assertRaises(ValidationError):
                    validate_image_prompt(bad)

    def test_unknown_options_fall_back_to_defaults(self):
        self.assertEqual(ImageOptions("neon", "ultra").normalized(), ImageOptions())
        self.assertEqual(ImageOptions("anime", "high").normalized(), ImageOptions("anime", "high"))

    def test_prompt_names_style_and_quality(self):
        text = build_image_prompt("a red fox", ImageOptions("oil_painting", "high"))
        self.assertTrue(text.startswith("Generate an image of: a red fox"))
        self.assertIn("Style: oil painting.", text)
        self.assertIn("highly detailed", text)


class TestClassifyImageResponse(unittest.TestCase):
    def test_images_are_returned(self):
        self.assertEqual(classify_image_response(PICTURE), [PNG])

    def test_failures(self):
        cases = [
            (ModelResponse(candidates=()), EmptyResponseError),
            (ModelResponse(candidates=(), block_reason="SAFETY"), SafetyBlockedError),
            (ModelResponse(candidates=(Candidate("IMAGE_SAFETY"),)), SafetyBlockedError),
            (ModelResponse(candidates=(Candidate("PROHIBITED_CONTENT"),)), SafetyBlockedError),
            (ModelResponse(candidates=(Candidate("RECITATION"),)), RecitationBlockedError),
            (TEXT_ONLY, EmptyResponseError),
        ]
        for response, expected in cases:
            with self.subTest(expected=expected.__name__):
                with self.assertRaises(expected):
                    classify_image_response(response)


class TestImageGenerator(unittest.IsolatedAsyncioTestCase):
    def build(self, api, timeout=5.0, max_retries=2):
        self.api = api
        self.resolver = GuildConfigResolver(InMemoryGuildConfigStore(), "default-key-0000", "gemini-2.5-pro")
        client = ResilientModelClient(api, RetryPolicy(max_retries, 0.0), sleep=no_sleep)
        return ImageGenerator(api, self.resolver, client, model="gemini-image-test", timeout=timeout)

    async def test_uses_guild_key_and_image_model(self):
        generator = self.build(FakeModelAPI(PICTURE))
        self.resolver.set_api_key("g1", "guild-key-000000", "42")
        self.resolver.set_model("g1", "gemini-2.5-flash", "42")

        images = await generator.generate("g1", "a red fox", ImageOptions("anime"))

        self.assertEqual(images, [PNG])
        call = self.api.calls[0]
        self.assertEqual(call["api_key"], "guild-key-000000")
        self.assertEqual(call["model"], "gemini-image-test")
        self.assertEqual(call["generation_config"].as_payload()["responseModalities"], ["TEXT", "IMAGE"])
        self.assertIn("Style: anime.", call["contents"][0]["parts"][0]["text"])

    async def test_dm_uses_default_key(self):
        generator = self.build(FakeModelAPI(PICTURE))
        await generator.generate(None, "a red fox")
        self.assertEqual(self.api.calls[0]["api_key"], "default-key-0000")

    async def test_invalid_prompt_makes_no_call(self):
        generator = self.build(FakeModelAPI(PICTURE))
        with self.assertRaises(ValidationError):
            await generator.generate("g1", "hi")
        self.assertEqual(self.api.calls, [])

    async def test_text_only_answers_are_retried(self):
        generator = self.build(FakeModelAPI(TEXT_ONLY, PICTURE))
        self.assertEqual(await generator.generate("g1", "a red fox"), [PNG])
        self.assertEqual(len(self.api.calls), 2)

        generator = self.build(FakeModelAPI(TEXT_ONLY), max_retries=2)
        with self.assertRaises(RetriesExhaustedError) as cm:
            await generator.generate("g1", "a red fox")
        self.assertEqual(cm.exception.outcome.attempts, 3)

    async def test_errors_are_not_retried(self):
        generator = self.build(FakeModelAPI(LLMAuthError("bad key", status_code=401)))
        with self.assertRaises(LLMAuthError):
            await generator.generate("g1", "a red fox")
        self.assertEqual(len(self.api.calls), 1)

    async def test_slow_model_becomes_timeout(self):
        generator = self.build(FakeModelAPI(PICTURE, delay=1.0), timeout=0.05)
        with self.assertRaises(LLMTimeoutError):
            await generator.generate("g1", "a red fox")


if __name__ == "__main__":
    unittest.main()
