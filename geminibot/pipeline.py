"""
Mention -> answer pipeline.

fetch history -> clamp to budget -> resolve credentials -> resilient call.
Steps run strictly in order under one per-request deadline; any deadline
expiry, whichever step it hits, comes out as LLMTimeoutError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from geminibot.config.settings import PipelineSettings
from geminibot.context_budget import ContextBudgetManager
from geminibot.domain import ConversationHistory, Mention
from geminibot.guilds import GuildConfigResolver
from geminibot.llm.errors import LLMError, LLMTimeoutError, RepositoryError
from geminibot.llm.resilient_client import ResilientModelClient
from geminibot.prompt import format_system_prompt


logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TAIL_WINDOW = 50
QUESTION_TAIL_WINDOW = 30


class ConversationRepository(Protocol):
    async def get_thread_messages(self, thread_id: str) -> ConversationHistory: ...

    async def get_messages_before(self, channel_id: str, message_id: str, limit: int) -> ConversationHistory: ...


class PromptOrchestrator:
    def __init__(
        self,
        settings: PipelineSettings,
        repository: ConversationRepository,
        resolver: GuildConfigResolver,
        client: ResilientModelClient,
        budget_manager: Optional[ContextBudgetManager] = None,
    ):
        self.settings = settings
        self._repository = repository
        self._resolver = resolver
        self._client = client
        self._budget = budget_manager or ContextBudgetManager(settings.budget)

    async def handle_mention(self, mention: Mention) -> str:
        logger.info(
            "Handling mention %s (guild=%s channel=%s thread=%s)",
            mention.message_id, mention.guild_id, mention.channel_id, mention.is_thread,
        )
        timeout = self.settings.request_timeout
        try:
            return await asyncio.wait_for(self._run(mention), timeout=timeout)
        except (asyncio.TimeoutError, TimeoutError) as e:
            logger.warning("Mention %s timed out after %ss", mention.message_id, timeout)
            raise LLMTimeoutError(f"Request exceeded {timeout}s") from e

    async def _run(self, mention: Mention) -> str:
        history = await self._fetch_history(mention)
        # Thread history is read from the tail and can include the mention itself.
        history = ConversationHistory(m for m in history if m.id != mention.message_id)
        truncated = self._budget.truncate_history(history)

        system_prompt = self._budget.truncate_text(
            format_system_prompt(self.settings.system_prompt), tail_window=SYSTEM_PROMPT_TAIL_WINDOW
        )
        question = self._budget.truncate_text(mention.content, tail_window=QUESTION_TAIL_WINDOW)

        stats = self._budget.stats(system_prompt, truncated, question)
        logger.info(
            "Context: system=%d history=%d (%d msgs) question=%d total=%d truncated=%s",
            stats.system_len, stats.history_len, len(truncated),
            stats.question_len, stats.total_len, stats.truncated,
        )

        credentials = self._resolver.resolve(mention.guild_id)
        return await self._client.generate(
            system_prompt, truncated, question, credentials, author=mention.author
        )

    async def _fetch_history(self, mention: Mention) -> ConversationHistory:
        try:
            if mention.is_thread:
                logger.info("Fetching thread history: %s", mention.channel_id)
                return await self._repository.get_thread_messages(mention.channel_id)
            limit = self.settings.max_history_messages
            logger.info("Fetching %d messages before %s: %s", limit, mention.message_id, mention.channel_id)
            return await self._repository.get_messages_before(mention.channel_id, mention.message_id, limit)
        except (asyncio.TimeoutError, TimeoutError, LLMError):
            raise
        except Exception as e:
            raise RepositoryError(f"Failed to fetch conversation history: {e}") from e
