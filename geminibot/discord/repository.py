from __future__ import annotations

import logging
from typing import Iterable

import discord

from geminibot.domain import Author, ConversationHistory, Message


logger = logging.getLogger(__name__)

THREAD_HISTORY_LIMIT = 200


def to_message(msg: discord.Message) -> Message:
    author = msg.author
    return Message(
        id=str(msg.id),
        author=Author(
            id=str(author.id),
            display_name=author.display_name,
            username=author.name,
            is_bot=author.bot,
        ),
        content=msg.content,
        timestamp=msg.created_at,
    )


def to_history(messages: Iterable[discord.Message]) -> ConversationHistory:
    """Human messages only, oldest first."""
    kept = [to_message(m) for m in messages if not m.author.bot]
    kept.sort(key=lambda m: m.timestamp)
    return ConversationHistory(kept)


class DiscordConversationRepository:
    """ConversationRepository backed by the discord.py channel history API."""

    def __init__(self, discord_bot: discord.Client, thread_history_limit: int = THREAD_HISTORY_LIMIT):
        self._bot = discord_bot
        self.thread_history_limit = thread_history_limit

    async def _channel(self, channel_id: str) -> discord.abc.Messageable:
        cid = int(channel_id)
        channel = self._bot.get_channel(cid) or await self._bot.fetch_channel(cid)
        if not isinstance(channel, discord.abc.Messageable):
            raise TypeError(f"Channel {channel_id} has no message history")
        return channel

    async def get_recent_messages(self, channel_id: str, limit: int) -> ConversationHistory:
        logger.debug("Fetching last %d messages from %s", limit, channel_id)
        channel = await self._channel(channel_id)
        return to_history([m async for m in channel.history(limit=limit)])

    async def get_thread_messages(self, thread_id: str) -> ConversationHistory:
        # Budget truncation trims this further.
        return await self.get_recent_messages(thread_id, self.thread_history_limit)

    async def get_messages_before(self, channel_id: str, message_id: str, limit: int) -> ConversationHistory:
        logger.debug("Fetching %d messages before %s from %s", limit, message_id, channel_id)
        channel = await self._channel(channel_id)
        before = discord.Object(id=int(message_id))
        return to_history([m async for m in channel.history(limit=limit, before=before)])
