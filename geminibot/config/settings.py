from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from geminibot.domain import ContextBudget


DEFAULT_MODEL = "gemini-2.5-pro"
DEFAULT_IMAGE_MODEL = "gemini-2.5-flash-image"
DEFAULT_ALLOWED_MODELS = ("gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.0-flash", "gemini-2.5-flash-lite")
DEFAULT_SYSTEM_PROMPT = (
    "You are a kind and helpful AI assistant. Use the conversation history as "
    "background and give safe, appropriate answers to the user's message. "
    "Politely decline harmful or inappropriate requests, suggesting alternatives where possible."
)


@dataclass(frozen=True)
class PipelineSettings:
    """Every default the pipeline needs, built once from config.yaml."""

    default_api_key: str = ""
    default_model: str = DEFAULT_MODEL
    allowed_models: tuple[str, ...] = DEFAULT_ALLOWED_MODELS
    system_prompt: str = DEFAULT_SYSTEM_PROMPT

    max_context_chars: int = 8000
    max_history_chars: int = 4000
    max_history_messages: int = 10
    thread_history_limit: int = 200
    min_question_chars: int = 1
    max_question_chars: int = 4000

    request_timeout: float = 30.0
    http_timeout: float = 60.0
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"

    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 60.0

    max_tokens: int = 1000
    temperature: float = 0.7
    top_p: float = 0.9

    image_model: str = DEFAULT_IMAGE_MODEL
    image_timeout: float = 120.0

    admin_ids: tuple[int, ...] = field(default=())

    @property
    def budget(self) -> ContextBudget:
        return ContextBudget(self.max_context_chars, self.max_history_chars)

    @classmethod
    def from_config(cls, cfg: dict[str, Any]) -> "PipelineSettings":
        """
        Build settings from a validated config mapping. GEMINI_API_KEY in the
        environment wins over gemini.api_key.
        """
        gemini = cfg.get("gemini") or {}
        bot = cfg.get("bot") or {}
        admins = ((cfg.get("permissions") or {}).get("users") or {}).get("admin_ids") or []

        kwargs: dict[str, Any] = {
            "default_api_key": os.environ.get("GEMINI_API_KEY") or gemini.get("api_key") or "",
            "admin_ids": tuple(admins),
        }
        for key, src in (
            ("default_model", "model"),
            ("base_url", "base_url"),
            ("http_timeout", "http_timeout"),
            ("max_retries", "max_retries"),
            ("retry_base_delay", "retry_base_delay"),
            ("retry_max_delay", "retry_max_delay"),
            ("max_tokens", "max_tokens"),
            ("temperature", "temperature"),
            ("top_p", "top_p"),
            ("image_model", "image_model"),
            ("image_timeout", "image_timeout"),
        ):
            if gemini.get(src) is not None:
                kwargs[key] = gemini[src]
        if gemini.get("allowed_models"):
            kwargs["allowed_models"] = tuple(gemini["allowed_models"])

        for key in (
            "system_prompt",
            "max_context_chars",
            "max_history_chars",
            "max_history_messages",
            "thread_history_limit",
            "min_question_chars",
            "max_question_chars",
            "request_timeout",
        ):
            if bot.get(key) is not None:
                kwargs[key] = bot[key]

        return cls(**kwargs)
