"""
Discord gateway wiring: mentions go through the PromptOrchestrator, slash
commands manage the per-guild key/model overrides and /generate-image.
"""

from __future__ import annotations

import io
import logging
import re
from typing import Optional

import discord
from discord import app_commands
from discord.app_commands import Choice
from discord.ext import commands

from geminibot.config.settings import PipelineSettings
from geminibot.domain import Author, Mention
from geminibot.guilds import GuildConfigNotFoundError, GuildConfigResolver, validate_api_key, validate_model
from geminibot.images import IMAGE_QUALITIES, IMAGE_STYLES, ImageGenerator, ImageOptions
from geminibot.llm.errors import LLMError, ValidationError, format_user_friendly_error
from geminibot.pipeline import PromptOrchestrator

from .errors import (
    handle_app_command_error,
    notify_admin_error,
    reply_with_error,
    should_notify_admins,
)


logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 2000


def split_message(text: str, max_len: int = MAX_MESSAGE_CHARS) -> list[str]:
    return [text[i:i + max_len] for i in range(0, len(text), max_len)] if text else []


def extract_question(content: str, bot_user_id: int) -> str:
    return re.sub(rf"<@!?{bot_user_id}>", "", content).strip()


def validate_question(question: str, settings: PipelineSettings) -> str:
    if not question:
        raise ValidationError("Please include a question after the mention.")
    if len(question) < settings.min_question_chars:
        raise ValidationError("Your question is too short.")
    if len(question) > settings.max_question_chars:
        raise ValidationError(
            f"Your question is too long (max {settings.max_question_chars:,} characters)."
        )
    return question


def build_mention(msg: discord.Message, question: str) -> Mention:
    return Mention(
        message_id=str(msg.id),
        channel_id=str(msg.channel.id),
        guild_id=str(msg.guild.id) if msg.guild else None,
        author=Author(
            id=str(msg.author.id),
            display_name=msg.author.display_name,
            username=msg.author.name,
            is_bot=msg.author.bot,
        ),
        content=question,
        is_thread=isinstance(msg.channel, discord.Thread),
    )


def is_admin(interaction: discord.Interaction, settings: PipelineSettings) -> bool:
    if interaction.user.id in settings.admin_ids:
        return True
    perms = getattr(interaction.user, "guild_permissions", None)
    return bool(perms and perms.administrator)


class GeminiBot(commands.Bot):
    """
    The pipeline objects are attached after construction because the
    conversation repository reads history through the bot itself.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.orchestrator: Optional[PromptOrchestrator] = None
        self.image_generator: Optional[ImageGenerator] = None


def create_bot(
    settings: PipelineSettings,
    resolver: GuildConfigResolver,
    status_message: Optional[str] = None,
) -> GeminiBot:
    """
    Build the discord.py bot. ``orchestrator`` and ``image_generator`` must be
    attached before start().
    """
    intents = discord.Intents.default()
    intents.message_content = True
    activity = discord.CustomActivity(name=(status_message or "Mention me to ask Gemini")[:128])
    discord_bot = GeminiBot(intents=intents, activity=activity, command_prefix=commands.when_mentioned)

    async def ephemeral(interaction: discord.Interaction, text: str) -> None:
        await interaction.response.send_message(text, ephemeral=True)

    async def guild_admin_guard(interaction: discord.Interaction) -> Optional[str]:
        if interaction.guild_id is None:
            await ephemeral(interaction, "This command can only be used in a server.")
            return None
        if not is_admin(interaction, settings):
            await ephemeral(interaction, "You don't have permission to change this server's settings.")
            return None
        return str(interaction.guild_id)

    # ── Slash commands ──────────────────────────────────────────────────────

    @discord_bot.tree.command(name="set-api", description="Set this server's Gemini API key")
    @app_commands.describe(api_key="Gemini API key used for this server")
    async def set_api_command(interaction: discord.Interaction, api_key: str) -> None:
        guild_id = await guild_admin_guard(interaction)
        if guild_id is None:
            return
        try:
            key = validate_api_key(api_key)
        except ValidationError as e:
            await ephemeral(interaction, f"❌ {e}")
            return
        resolver.set_api_key(guild_id, key, str(interaction.user.id))
        await ephemeral(interaction, "✅ Gemini API key set for this server.")

    @discord_bot.tree.command(name="del-api", description="Remove this server's Gemini API key")
    async def del_api_command(interaction: discord.Interaction) -> None:
        guild_id = await guild_admin_guard(interaction)
        if guild_id is None:
            return
        try:
            resolver.delete_api_key(guild_id)
        except GuildConfigNotFoundError:
            await ephemeral(interaction, "No API key is set for this server.")
            return
        await ephemeral(interaction, "✅ API key removed. The default API key will be used from now on.")

    @discord_bot.tree.command(name="status", description="Show this server's Gemini settings")
    async def status_command(interaction: discord.Interaction) -> None:
        if interaction.guild_id is None:
            await ephemeral(interaction, "This command can only be used in a server.")
            return
        guild_id = str(interaction.guild_id)
        model = resolver.get_model(guild_id)
        if resolver.has_api_key(guild_id):
            info = resolver.get_info(guild_id)
            text = (
                f"✅ **API key**: custom (set by <@{info.set_by}> on {info.set_at:%Y-%m-%d %H:%M} UTC)\n"
                f"🤖 **Model**: {model}"
            )
        else:
            suffix = " (default)" if model == resolver.default_model else ""
            text = f"❌ **API key**: not set (using the default)\n🤖 **Model**: {model}{suffix}"
        await ephemeral(interaction, text)

    @discord_bot.tree.command(name="set-model", description="Choose the Gemini model for this server")
    async def set_model_command(interaction: discord.Interaction, model: str) -> None:
        guild_id = await guild_admin_guard(interaction)
        if guild_id is None:
            return
        try:
            validate_model(model, settings.allowed_models)
        except ValidationError as e:
            await ephemeral(interaction, f"❌ {e}")
            return
        resolver.set_model(guild_id, model, str(interaction.user.id))
        await ephemeral(interaction, f"✅ Model switched to: `{model}`")

    @set_model_command.autocomplete("model")
    async def model_autocomplete(interaction: discord.Interaction, curr_str: str) -> list[Choice[str]]:
        current = resolver.get_model(str(interaction.guild_id)) if interaction.guild_id else settings.default_model
        choices = [
            Choice(name=f"◉ {m} (current)" if m == current else f"○ {m}", value=m)
            for m in settings.allowed_models
            if curr_str.lower() in m.lower()
        ]
        return choices[:25]

    @discord_bot.tree.command(name="generate-image", description="Generate an image with Gemini")
    @app_commands.describe(
        prompt="Description of the image",
        style="Image style (default: photographic)",
        quality="Image quality (default: standard)",
    )
    @app_commands.choices(
        style=[Choice(name=label, value=value) for value, label in IMAGE_STYLES.items()],
        quality=[Choice(name=label, value=value) for value, label in IMAGE_QUALITIES.items()],
    )
    async def generate_image_command(
        interaction: discord.Interaction,
        prompt: str,
        style: Optional[Choice[str]] = None,
        quality: Optional[Choice[str]] = None,
    ) -> None:
        generator = discord_bot.image_generator
        if generator is None:
            await ephemeral(interaction, "Image generation is not available right now.")
            return

        options = ImageOptions()
        if style:
            options = ImageOptions(style.value, options.quality)
        if quality:
            options = ImageOptions(options.style, quality.value)
        guild_id = str(interaction.guild_id) if interaction.guild_id else None

        # Generation outlives the 3s interaction window.
        await interaction.response.defer()
        try:
            images = await generator.generate(guild_id, prompt, options)
        except LLMError as e:
            logger.warning("Image request by %s failed: %s (%s)", interaction.user.id, e, e.kind.value)
            if should_notify_admins(e):
                await notify_admin_error(discord_bot, settings.admin_ids, e, "Image generation")
            await interaction.followup.send(format_user_friendly_error(e))
            return

        files = [
            discord.File(io.BytesIO(img.data), filename=f"generated_image_{i}.{img.extension}")
            for i, img in enumerate(images, 1)
        ]
        await interaction.followup.send(f"🎨 **{prompt[:200]}**", files=files[:10])

    @discord_bot.tree.error
    async def on_app_command_error(interaction: discord.Interaction, error: Exception) -> None:
        await handle_app_command_error(interaction, error, discord_bot, settings.admin_ids)

    # ── Events ───────────────────────────────────────────────────────────────

    @discord_bot.event
    async def on_ready() -> None:
        await discord_bot.tree.sync()
        logger.info("Logged in as %s; synced %d slash commands", discord_bot.user, len(discord_bot.tree.get_commands()))

    @discord_bot.event
    async def on_message(new_msg: discord.Message) -> None:
        is_dm = new_msg.guild is None
        if new_msg.author.bot or (not is_dm and discord_bot.user not in new_msg.mentions):
            return

        orchestrator = discord_bot.orchestrator
        if orchestrator is None:
            logger.warning("Mention %s ignored: pipeline not attached yet", new_msg.id)
            return
        question = extract_question(new_msg.content, discord_bot.user.id)
        try:
            validate_question(question, settings)
            mention = build_mention(new_msg, question)
            async with new_msg.channel.typing():
                answer = await orchestrator.handle_mention(mention)
        except LLMError as e:
            logger.warning("Mention %s failed: %s (%s)", new_msg.id, e, e.kind.value)
            if should_notify_admins(e):
                await notify_admin_error(
                    discord_bot, settings.admin_ids, e,
                    f"Mention in #{getattr(new_msg.channel, 'name', 'DM')}",
                )
            await reply_with_error(new_msg, e)
            return
        except Exception as e:
            logger.exception("Unexpected error handling mention %s", new_msg.id)
            await notify_admin_error(
                discord_bot, settings.admin_ids, e,
                f"Unexpected error in #{getattr(new_msg.channel, 'name', 'DM')}",
            )
            await reply_with_error(new_msg, e)
            return

        chunks = split_message(answer) or ["(No response)"]
        target = new_msg
        for chunk in chunks:
            target = await target.reply(chunk, mention_author=False)

    return discord_bot
