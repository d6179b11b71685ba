"""
/generate-image backend: prompt validation, style/quality phrasing, and one
image-model call under the same credentials, retry policy and deadline as
the text pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from geminibot.config.settings import DEFAULT_IMAGE_MODEL
from geminibot.domain import InlineImage, ModelResponse
from geminibot.guilds import GuildConfigResolver
from geminibot.llm.errors import (
    EmptyResponseError,
    LLMTimeoutError,
    RecitationBlockedError,
    SafetyBlockedError,
    ValidationError,
)
from geminibot.llm.gemini_api import GenerationConfig, default_safety_settings, text_content
from geminibot.llm.resilient_client import (
    RECITATION_FINISH_REASONS,
    SAFETY_FINISH_REASONS,
    ModelAPI,
    ResilientModelClient,
)


logger = logging.getLogger(__name__)

MIN_IMAGE_PROMPT_CHARS = 3
MAX_IMAGE_PROMPT_CHARS = 1000
IMAGE_SAFETY_FINISH_REASONS = SAFETY_FINISH_REASONS | {"IMAGE_SAFETY", "IMAGE_PROHIBITED_CONTENT"}

# value -> label shown in the slash-command choice list
IMAGE_STYLES = {
    "photographic": "Photographic",
    "anime": "Anime",
    "illustration": "Illustration",
    "oil_painting": "Oil painting",
    "watercolor": "Watercolor",
    "digital_art": "Digital art",
    "sketch": "Sketch",
    "cartoon": "Cartoon",
}
IMAGE_QUALITIES = {
    "standard": "Standard",
    "high": "High",
}
DEFAULT_STYLE = "photographic"
DEFAULT_QUALITY = "standard"


@dataclass(frozen=True)
class ImageOptions:
    style: str = DEFAULT_STYLE
    quality: str = DEFAULT_QUALITY

    def normalized(self) -> "ImageOptions":
        style = self.style if self.style in IMAGE_STYLES else DEFAULT_STYLE
        quality = self.quality if self.quality in IMAGE_QUALITIES else DEFAULT_QUALITY
        return ImageOptions(style, quality)


def validate_image_prompt(prompt: str) -> str:
    prompt = (prompt or "").strip()
    if not prompt:
        raise ValidationError("Please describe the image you want.")
    if len(prompt) < MIN_IMAGE_PROMPT_CHARS:
        raise ValidationError(f"The image prompt is too short (min {MIN_IMAGE_PROMPT_CHARS} characters).")
    if len(prompt) > MAX_IMAGE_PROMPT_CHARS:
        raise ValidationError(f"The image prompt is too long (max {MAX_IMAGE_PROMPT_CHARS:,} characters).")
    return prompt


def build_image_prompt(prompt: str, options: ImageOptions) -> str:
    style = IMAGE_STYLES[options.style].lower()
    detail = "highly detailed, high resolution" if options.quality == "high" else "clean, balanced detail"
    return f"Generate an image of: {prompt}\nStyle: {style}.\nQuality: {detail}."


def classify_image_response(response: ModelResponse) -> list[InlineImage]:
    """Images from the first candidate, or the error the response represents."""
    if not response.candidates:
        if response.block_reason:
            raise SafetyBlockedError(f"Image prompt blocked by Gemini: {response.block_reason}")
        raise EmptyResponseError("Gemini returned no candidates for the image request")

    reason = response.finish_reason
    if reason in IMAGE_SAFETY_FINISH_REASONS:
        raise SafetyBlockedError(f"Image blocked by the Gemini safety filter ({reason})")
    if reason in RECITATION_FINISH_REASONS:
        raise RecitationBlockedError("Gemini detected copyrighted content in the image (RECITATION)")
    images = list(response.candidates[0].images)
    if not images:
        raise EmptyResponseError(f"Gemini returned no image data (finish_reason={reason})")
    return images


class ImageGenerator:
    def __init__(
        self,
        api: ModelAPI,
        resolver: GuildConfigResolver,
        client: ResilientModelClient,
        model: str = DEFAULT_IMAGE_MODEL,
        timeout: float = 120.0,
    ):
        self._api = api
        self._resolver = resolver
        self._client = client
        self.model = model
        self.timeout = timeout
        base = client.generation_config
        self.generation_config = GenerationConfig(
            base.max_tokens, base.temperature, base.top_p, response_modalities=("TEXT", "IMAGE")
        )

    async def generate(
        self, guild_id: Optional[str], prompt: str, options: Optional[ImageOptions] = None
    ) -> list[InlineImage]:
        prompt = validate_image_prompt(prompt)
        options = (options or ImageOptions()).normalized()
        # The guild's key is reused; the model is always the image model.
        api_key = self._resolver.resolve(guild_id).api_key
        contents = [text_content(build_image_prompt(prompt, options))]
        logger.info(
            "Image request: model=%s style=%s quality=%s prompt=%d chars",
            self.model, options.style, options.quality, len(prompt),
        )

        async def attempt() -> list[InlineImage]:
            response = await self._api.generate_content(
                api_key=api_key,
                model=self.model,
                contents=contents,
                generation_config=self.generation_config,
                safety_settings=default_safety_settings(),
            )
            return classify_image_response(response)

        try:
            images = await asyncio.wait_for(self._client.run_with_retry(attempt), timeout=self.timeout)
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise LLMTimeoutError(f"Image request exceeded {self.timeout}s") from e
        logger.info("Image generated: %d image(s)", len(images))
        return images
