"""
config.yaml + environment -> validated config mapping.

Any failure here is fatal: the process logs why and exits with status 1.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import yaml
from dotenv import load_dotenv

from .settings import PipelineSettings
from .validator import ConfigValidationError, validate_config


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"
CONFIG_ENV_VAR = "CONFIG_PATH"
TOKEN_ENV_VAR = "DISCORD_BOT_TOKEN"


def get_config_path() -> str:
    return os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE


def _read_yaml(cfg_path: str) -> dict[str, Any]:
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error("Config file not found: %s (copy config-example.yaml)", cfg_path)
        sys.exit(1)
    except yaml.YAMLError as e:
        logger.error("YAML parsing error in %s: %s", cfg_path, e)
        sys.exit(1)

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error("Config root in %s must be a mapping, got %s", cfg_path, type(data).__name__)
        sys.exit(1)
    return data


def get_config(path: str | None = None) -> dict[str, Any]:
    """
    Load and validate the bot configuration.

    A .env file, if present, is loaded first. DISCORD_BOT_TOKEN overrides
    ``bot_token``; GEMINI_API_KEY is picked up later by PipelineSettings.
    """
    load_dotenv()
    cfg_path = path or get_config_path()
    cfg = _read_yaml(cfg_path)

    token = os.environ.get(TOKEN_ENV_VAR)
    if token:
        cfg["bot_token"] = token

    try:
        validate_config(cfg, cfg_path)
    except ConfigValidationError:
        sys.exit(1)

    if not cfg.get("bot_token"):
        logger.error("No bot token: set bot_token in %s or %s", cfg_path, TOKEN_ENV_VAR)
        sys.exit(1)

    logger.info("Loaded config from %s", cfg_path)
    return cfg


def load_settings(path: str | None = None) -> tuple[dict[str, Any], PipelineSettings]:
    cfg = get_config(path)
    return cfg, PipelineSettings.from_config(cfg)
