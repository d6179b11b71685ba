"""
Character budgets for everything that goes into a model request.

Lengths are counted in code points (Python ``len`` on ``str``), so multi-byte
text is measured the same way the budget is configured.
"""

from __future__ import annotations

import logging
from typing import Iterable

from geminibot.domain import ContextBudget, ContextStats, ConversationHistory, Message


logger = logging.getLogger(__name__)

# ``displayName + ": " + content + "\n"``
NAME_SEPARATOR_CHARS = 2
LINE_SEPARATOR_CHARS = 1

SENTENCE_TERMINATORS = frozenset("。．！？.!?")
# ASCII terminators only count when followed by whitespace ("3.14", "a.b.c").
_ASCII_TERMINATORS = frozenset(".!?")
_CLOSING_MARKS = frozenset("\"'”’」』）)]")

DEFAULT_TAIL_WINDOW = 50


def message_length(msg: Message) -> int:
    return len(msg.author.display_name) + NAME_SEPARATOR_CHARS + len(msg.content) + LINE_SEPARATOR_CHARS


def history_length(messages: Iterable[Message]) -> int:
    return sum(message_length(m) for m in messages)


def _sentence_cut(text: str, limit: int, tail_window: int) -> int | None:
    """
    Index to cut ``text`` at so the kept prefix ends on a sentence boundary
    within the last ``tail_window`` code points before ``limit``.
    """
    lower = max(1, limit - tail_window)
    for i in range(limit - 1, lower - 1, -1):
        ch = text[i]
        if ch not in SENTENCE_TERMINATORS:
            continue
        nxt = text[i + 1] if i + 1 < len(text) else ""
        end = i + 1
        if nxt in _CLOSING_MARKS and end < limit:
            end += 1
            nxt = text[end] if end < len(text) else ""
        if ch in _ASCII_TERMINATORS and nxt and not nxt.isspace():
            continue
        return end
    return None


class ContextBudgetManager:
    """
    Clamps the system prompt, the user question and the conversation history
    to a ContextBudget. Never raises: oversized input is cut, not rejected.
    """

    def __init__(self, budget: ContextBudget):
        self.budget = budget

    def truncate_history(
        self, history: ConversationHistory, budget: ContextBudget | None = None
    ) -> ConversationHistory:
        budget = budget or self.budget
        messages = history.messages
        if not messages:
            return history

        total = history_length(messages)
        if total <= budget.max_history_chars:
            return history

        # Newest first, keep whole messages until the next one would overflow.
        kept: list[Message] = []
        used = 0
        for msg in sorted(messages, key=lambda m: m.timestamp, reverse=True):
            size = message_length(msg)
            if used + size > budget.max_history_chars:
                break
            kept.append(msg)
            used += size

        kept.sort(key=lambda m: m.timestamp)
        logger.info(
            "History truncated: %d -> %d messages (%d -> %d chars, budget %d)",
            len(messages), len(kept), total, used, budget.max_history_chars,
        )
        return ConversationHistory(kept)

    def truncate_text(
        self, text: str, limit: int | None = None, tail_window: int = DEFAULT_TAIL_WINDOW
    ) -> str:
        limit = self.budget.max_context_chars if limit is None else limit
        if limit <= 0:
            return ""
        if len(text) <= limit:
            return text

        cut = _sentence_cut(text, limit, tail_window)
        result = text[:cut] if cut else text[:limit]
        logger.info("Text truncated: %d -> %d chars (limit %d)", len(text), len(result), limit)
        return result

    def stats(
        self,
        system_prompt: str,
        history: ConversationHistory,
        question: str,
        budget: ContextBudget | None = None,
    ) -> ContextStats:
        budget = budget or self.budget
        system_len = len(system_prompt)
        hist_len = history_length(history.messages)
        question_len = len(question)
        total = system_len + hist_len + question_len
        return ContextStats(
            system_len=system_len,
            history_len=hist_len,
            question_len=question_len,
            total_len=total,
            budget=budget,
            truncated=total > budget.max_context_chars or hist_len > budget.max_history_chars,
        )
