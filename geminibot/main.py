"""
Entrypoint: ``python -m geminibot.main`` (or the ``geminibot`` script).
"""

import asyncio
import logging
import os

import httpx

from geminibot.config.loader import load_settings
from geminibot.discord.bot import create_bot
from geminibot.discord.repository import DiscordConversationRepository
from geminibot.guilds import GuildConfigResolver, InMemoryGuildConfigStore
from geminibot.images import ImageGenerator
from geminibot.llm.gemini_api import GeminiAPI, GenerationConfig
from geminibot.llm.resilient_client import ResilientModelClient, RetryPolicy
from geminibot.pipeline import PromptOrchestrator


def configure_logging() -> None:
    if os.environ.get("DEBUG"):
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
        logging.getLogger("httpx").setLevel(logging.WARNING)


async def run_bot(config_path: str | None = None) -> None:
    config, settings = load_settings(config_path)

    resolver = GuildConfigResolver(
        InMemoryGuildConfigStore(),
        default_api_key=settings.default_api_key,
        default_model=settings.default_model,
    )
    discord_bot = create_bot(settings, resolver, status_message=config.get("status_message"))

    async with httpx.AsyncClient(timeout=settings.http_timeout) as http_client:
        api = GeminiAPI(http_client, base_url=settings.base_url)
        client = ResilientModelClient(
            api,
            policy=RetryPolicy(settings.max_retries, settings.retry_base_delay, settings.retry_max_delay),
            generation_config=GenerationConfig(settings.max_tokens, settings.temperature, settings.top_p),
        )
        discord_bot.orchestrator = PromptOrchestrator(
            settings,
            DiscordConversationRepository(discord_bot, settings.thread_history_limit),
            resolver,
            client,
        )
        discord_bot.image_generator = ImageGenerator(
            api, resolver, client, model=settings.image_model, timeout=settings.image_timeout
        )
        logging.info(
            "🚀 Bot starting | model: %s | budget: %d/%d chars | timeout: %ss",
            settings.default_model, settings.max_context_chars,
            settings.max_history_chars, settings.request_timeout,
        )
        async with discord_bot:
            await discord_bot.start(config["bot_token"])


def main() -> None:
    configure_logging()
    try:
        asyncio.run(run_bot())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
