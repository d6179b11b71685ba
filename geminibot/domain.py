"""
Value types shared by the prompt pipeline.

Everything here is immutable except GuildConfig, which is owned by the
guild config store and copied out on every read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Iterator, Optional


@dataclass(frozen=True)
class Author:
    id: str
    display_name: str
    username: str = ""
    is_bot: bool = False


@dataclass(frozen=True)
class Message:
    id: str
    author: Author
    content: str
    timestamp: datetime


class ConversationHistory:
    """Ordered, immutable run of messages (insertion order is chronological)."""

    __slots__ = ("_messages",)

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: tuple[Message, ...] = tuple(messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    def is_empty(self) -> bool:
        return not self._messages

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConversationHistory):
            return NotImplemented
        return self._messages == other._messages

    def __hash__(self) -> int:
        return hash(self._messages)

    def __repr__(self) -> str:
        return f"ConversationHistory({len(self._messages)} messages)"


@dataclass(frozen=True)
class ContextBudget:
    max_context_chars: int
    max_history_chars: int


@dataclass(frozen=True)
class ContextStats:
    system_len: int
    history_len: int
    question_len: int
    total_len: int
    budget: ContextBudget
    truncated: bool


@dataclass
class GuildConfig:
    guild_id: str
    api_key: str = ""
    model: Optional[str] = None  # None: no override, the default model applies
    set_by: str = ""
    set_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Credentials:
    """API key and model chosen for one request, plus where each came from."""

    api_key: str
    model: str
    key_source: str = "default"    # "guild" or "default"
    model_source: str = "default"  # "guild" or "default"

    def __repr__(self) -> str:
        # never print the key itself
        return (
            f"Credentials(model={self.model!r}, key_source={self.key_source!r}, "
            f"model_source={self.model_source!r})"
        )


@dataclass(frozen=True)
class Mention:
    message_id: str
    channel_id: str
    guild_id: Optional[str]
    author: Author
    content: str
    is_thread: bool = False


@dataclass(frozen=True)
class InlineImage:
    data: bytes
    mime_type: str = "image/png"

    @property
    def extension(self) -> str:
        return self.mime_type.rsplit("/", 1)[-1].replace("jpeg", "jpg") or "png"


@dataclass(frozen=True)
class Candidate:
    finish_reason: Optional[str]
    parts: tuple[str, ...] = ()
    images: tuple[InlineImage, ...] = ()


@dataclass(frozen=True)
class ModelResponse:
    """One generateContent round-trip, as returned by the model API."""

    candidates: tuple[Candidate, ...] = ()
    block_reason: Optional[str] = None

    @property
    def finish_reason(self) -> Optional[str]:
        return self.candidates[0].finish_reason if self.candidates else None

    @property
    def text(self) -> str:
        return "".join(self.candidates[0].parts) if self.candidates else ""


class Classification(str, Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass(frozen=True)
class RetryOutcome:
    attempts: int
    last_error: Optional[BaseException]
    classification: Classification
