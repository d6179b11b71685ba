from __future__ import annotations

from datetime import datetime
import logging
from typing import Iterable

import discord

from geminibot.llm.errors import ErrorKind, error_kind, format_user_friendly_error, parse_error_message


logger = logging.getLogger(__name__)

# Failures that are the user's input or the model's policy, not something an admin can fix.
EXPECTED_KINDS = frozenset({
    ErrorKind.SAFETY_BLOCKED,
    ErrorKind.RECITATION_BLOCKED,
    ErrorKind.VALIDATION_FAILURE,
    ErrorKind.TIMEOUT,
})


def should_notify_admins(error: BaseException) -> bool:
    return error_kind(error) not in EXPECTED_KINDS


async def notify_admin_error(
    discord_bot: discord.Client,
    admin_ids: Iterable[int],
    error: BaseException,
    context: str = "",
) -> None:
    """
    Send a concise error notification to all configured admins.
    """
    try:
        admin_ids = list(admin_ids)
        if not admin_ids:
            return

        msg = (
            "🤖 **Bot Error Notification**\n"
            f"⏰ Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"📝 Context: {context}\n\nError: {parse_error_message(error)}"
        )
        for admin_id in admin_ids:
            try:
                user = discord_bot.get_user(admin_id) or await discord_bot.fetch_user(
                    admin_id
                )
                await user.send(msg)
            except discord.DiscordException as e:
                logger.warning("Could not notify admin %s: %s", admin_id, e)
    except Exception as e:  # noqa: BLE001
        logger.warning("Failed to notify admins: %s", e)


async def reply_with_error(message: discord.Message, error: BaseException) -> None:
    """
    Reply to a mention with the user-facing text for ``error``.
    """
    try:
        await message.reply(format_user_friendly_error(error), mention_author=False)
    except discord.DiscordException as e:
        logger.warning("Could not send error reply in channel %s: %s", message.channel.id, e)


async def handle_app_command_error(
    interaction: discord.Interaction,
    error: Exception,
    discord_bot: discord.Client,
    admin_ids: Iterable[int],
) -> None:
    """
    Standard handler for slash command errors.
    """
    logger.exception("App command error: %s", error)
    await notify_admin_error(
        discord_bot,
        admin_ids,
        error,
        f"App command error: {getattr(interaction.command, 'name', 'unknown')}",
    )
    text = "An error occurred while running the command. Admins have been notified."
    try:
        if not interaction.response.is_done():
            await interaction.response.send_message(text, ephemeral=True)
        else:
            await interaction.followup.send(text, ephemeral=True)
    except discord.DiscordException as e:
        logger.warning("Could not report app command error: %s", e)
