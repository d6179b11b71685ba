from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from geminibot.domain import Author, ConversationHistory


HISTORY_HEADER = "## Conversation history (reference only)"
HISTORY_NOTE = "The history below is background. Answer the current question directly."


def format_system_prompt(prompt: str) -> str:
    now = datetime.now().astimezone()
    return prompt.replace("{date}", now.strftime("%B %d %Y")).replace("{time}", now.strftime("%H:%M:%S %Z%z")).strip()


def format_history(history: ConversationHistory) -> str:
    lines = [HISTORY_HEADER, HISTORY_NOTE, ""]
    lines += [f"{m.author.display_name}: {m.content}" for m in history]
    return "\n".join(lines) + "\n"


def build_contents(
    question: str,
    history: ConversationHistory,
    author: Optional[Author] = None,
) -> List[Dict[str, Any]]:
    """
    User turn for generateContent: who asked, the question, then history.
    The question goes before the history so it is not buried under it.
    """
    sections = []
    if author is not None:
        sections.append(f"## Mention\nAsked by: {author.display_name} (ID: {author.id})")
    sections.append(f"## Current question\n{question}")
    if not history.is_empty():
        sections.append(format_history(history))
    return [{"role": "user", "parts": [{"text": s} for s in sections]}]
