"""
YAML configuration validator for config.yaml.

Validates structure, required fields, and common misconfigurations.
"""

from __future__ import annotations

import logging
import os
from typing import Any


logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


_GEMINI_INT_KEYS = ("max_tokens", "max_retries")
_GEMINI_NUMBER_KEYS = ("temperature", "top_p", "retry_base_delay", "retry_max_delay", "http_timeout", "image_timeout")
_BOT_POSITIVE_INT_KEYS = (
    "max_context_chars",
    "max_history_chars",
    "max_history_messages",
    "thread_history_limit",
    "min_question_chars",
    "max_question_chars",
)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config(cfg: dict[str, Any], config_path: str = "config.yaml") -> None:
    """
    Comprehensive validation of config.yaml structure and content.

    Raises ConfigValidationError if validation fails.
    Logs detailed error messages before raising.

    Args:
        cfg: The loaded config dictionary
        config_path: Path to config file (for error messages)

    Raises:
        ConfigValidationError: If validation fails
    """
    errors = []
    warnings = []

    # ── Check root structure ────────────────────────────────────────────────
    if not isinstance(cfg, dict):
        errors.append(f"Config root must be a mapping, got {type(cfg).__name__}")
        cfg = {}

    # ── Check required top-level keys ───────────────────────────────────────
    for key in ("gemini", "bot"):
        if key in cfg and not isinstance(cfg[key], dict):
            errors.append(f"'{key}' must be a mapping, got {type(cfg[key]).__name__}")

    # ── Validate gemini section ────────────────────────────────────────────
    gemini = cfg.get("gemini") if isinstance(cfg.get("gemini"), dict) else {}
    for key in _GEMINI_INT_KEYS:
        if key in gemini and not _is_int(gemini[key]):
            errors.append(f"'gemini.{key}' must be an integer, got {type(gemini[key]).__name__}")
    for key in _GEMINI_NUMBER_KEYS:
        if key in gemini and not _is_number(gemini[key]):
            errors.append(f"'gemini.{key}' must be a number, got {type(gemini[key]).__name__}")

    if _is_int(gemini.get("max_retries")) and gemini["max_retries"] < 0:
        errors.append("'gemini.max_retries' must be >= 0")
    if _is_int(gemini.get("max_tokens")) and gemini["max_tokens"] <= 0:
        errors.append("'gemini.max_tokens' must be a positive integer")

    allowed = gemini.get("allowed_models")
    if allowed is not None:
        if not isinstance(allowed, list) or not all(isinstance(m, str) for m in allowed):
            errors.append(
                "'gemini.allowed_models' must be a list of strings. "
                "Use: allowed_models:\n  - \"gemini-2.5-pro\"\n  - \"gemini-2.5-flash\""
            )
        elif "model" in gemini and gemini["model"] not in allowed:
            warnings.append(
                f"Default model '{gemini['model']}' is not in gemini.allowed_models; "
                f"guilds will not be able to /set-model back to it"
            )

    # A bare ``api_key:`` loads as None and means "not set".
    if gemini.get("api_key") is not None and not isinstance(gemini["api_key"], str):
        errors.append(f"'gemini.api_key' must be a string, got {type(gemini['api_key']).__name__}")

    if "model" in gemini and (not isinstance(gemini["model"], str) or not gemini["model"]):
        errors.append("'gemini.model' must be a non-empty string")
    if "image_model" in gemini and (not isinstance(gemini["image_model"], str) or not gemini["image_model"]):
        errors.append("'gemini.image_model' must be a non-empty string")
    if _is_number(gemini.get("image_timeout")) and gemini["image_timeout"] <= 0:
        errors.append("'gemini.image_timeout' must be a positive number of seconds")

    # ── Validate bot section ───────────────────────────────────────────────
    bot = cfg.get("bot") if isinstance(cfg.get("bot"), dict) else {}
    for key in _BOT_POSITIVE_INT_KEYS:
        if key in bot:
            value = bot[key]
            if not _is_int(value):
                errors.append(f"'bot.{key}' must be an integer, got {type(value).__name__}")
            elif value <= 0:
                errors.append(f"'bot.{key}' must be a positive integer")

    max_ctx, max_hist = bot.get("max_context_chars", 8000), bot.get("max_history_chars", 4000)
    if _is_int(max_ctx) and _is_int(max_hist) and max_hist > max_ctx:
        errors.append("'bot.max_history_chars' must be <= 'bot.max_context_chars'")

    if "request_timeout" in bot:
        timeout = bot["request_timeout"]
        if not _is_number(timeout) or timeout <= 0:
            errors.append("'bot.request_timeout' must be a positive number of seconds")

    if "system_prompt" in bot and not isinstance(bot["system_prompt"], str):
        errors.append(f"'bot.system_prompt' must be a string, got {type(bot['system_prompt']).__name__}")

    # ── Validate permissions section ───────────────────────────────────────
    if "permissions" in cfg:
        perms = cfg["permissions"]
        if not isinstance(perms, dict):
            errors.append(f"'permissions' must be a mapping, got {type(perms).__name__}")
        else:
            users = perms.get("users", {})
            if not isinstance(users, dict):
                errors.append(f"'permissions.users' must be a mapping, got {type(users).__name__}")
            elif "admin_ids" in users and not isinstance(users["admin_ids"], list):
                errors.append(
                    f"'permissions.users.admin_ids' must be a list, got {type(users['admin_ids']).__name__}"
                )

    # ── Secrets ─────────────────────────────────────────────────────────────
    if not gemini.get("api_key") and not os.environ.get("GEMINI_API_KEY"):
        warnings.append("'gemini.api_key' is empty and GEMINI_API_KEY is not set; guilds without /set-api will fail")

    # ── Log warnings ────────────────────────────────────────────────────────
    for warning in warnings:
        logger.warning("Config warning: %s", warning)

    # ── Log errors and raise if any ─────────────────────────────────────────
    if errors:
        logger.error("=" * 70)
        logger.error("CONFIG VALIDATION FAILED (%s)", config_path)
        logger.error("=" * 70)
        for i, error in enumerate(errors, 1):
            logger.error("[%d] %s", i, error)
        logger.error("=" * 70)
        logger.error("Please fix the errors above and restart the bot.")
        logger.error("=" * 70)
        raise ConfigValidationError(f"Config validation failed with {len(errors)} error(s)")
