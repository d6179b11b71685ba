#!/usr/bin/env python3
"""
Tests for config.yaml validation, loading and PipelineSettings.

Usage:
    python -m unittest test_config_validator
"""

import os
import tempfile
import unittest
from unittest import mock

import yaml

from geminibot.config.loader import get_config, load_settings
from geminibot.config.settings import DEFAULT_MODEL, PipelineSettings
from geminibot.config.validator import ConfigValidationError, validate_config


EXAMPLE_CONFIG = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config-example.yaml")


def valid_config() -> dict:
    return {
        "bot_token": "discord-token",
        "permissions": {"users": {"admin_ids": [1234]}},
        "gemini": {
            "api_key": "config-key-000000",
            "model": "gemini-2.5-flash",
            "allowed_models": ["gemini-2.5-pro", "gemini-2.5-flash"],
            "max_retries": 2,
            "retry_base_delay": 0.5,
        },
        "bot": {
            "max_context_chars": 6000,
            "max_history_chars": 3000,
            "max_history_messages": 5,
            "request_timeout": 20,
        },
    }


class TestValidateConfig(unittest.TestCase):
    def test_valid_config_passes(self):
        validate_config(valid_config())

    def test_empty_config_passes_with_api_key_warning(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertLogs("geminibot.config.validator", level="WARNING") as cm:
                validate_config({})
        self.assertTrue(any("GEMINI_API_KEY" in line for line in cm.output))

    def assertInvalid(self, cfg):
        with self.assertLogs("geminibot.config.validator", level="ERROR"):
            with self.assertRaises(ConfigValidationError):
                validate_config(cfg)

    def test_bad_types_and_values(self):
        bad_edits = [
            ("gemini", "max_retries", -1),
            ("gemini", "max_retries", "3"),
            ("gemini", "max_tokens", 0),
            ("gemini", "temperature", "hot"),
            ("gemini", "api_key", 12345),
            ("gemini", "model", ""),
            ("gemini", "image_model", ""),
            ("gemini", "image_timeout", 0),
            ("gemini", "allowed_models", "gemini-2.5-pro"),
            ("bot", "max_history_messages", 0),
            ("bot", "max_context_chars", True),
            ("bot", "request_timeout", 0),
            ("bot", "system_prompt", ["not", "a", "string"]),
        ]
        for section, key, value in bad_edits:
            with self.subTest(key=f"{section}.{key}", value=value):
                cfg = valid_config()
                cfg[section][key] = value
                self.assertInvalid(cfg)

    def test_history_budget_must_fit_context_budget(self):
        cfg = valid_config()
        cfg["bot"]["max_history_chars"] = 7000
        self.assertInvalid(cfg)

    def test_sections_must_be_mappings(self):
        self.assertInvalid({"gemini": ["api_key"]})
        self.assertInvalid({"permissions": {"users": {"admin_ids": 1234}}})

    def test_default_model_outside_allowed_list_warns(self):
        cfg = valid_config()
        cfg["gemini"]["model"] = "gemini-2.0-flash"
        with self.assertLogs("geminibot.config.validator", level="WARNING") as cm:
            validate_config(cfg)
        self.assertTrue(any("allowed_models" in line for line in cm.output))


class TestPipelineSettings(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = PipelineSettings.from_config({})
        self.assertEqual(settings.default_model, DEFAULT_MODEL)
        self.assertEqual(settings.default_api_key, "")
        self.assertEqual(settings.max_retries, 3)
        self.assertEqual(settings.budget.max_context_chars, 8000)
        self.assertEqual(settings.budget.max_history_chars, 4000)

    def test_from_config(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = PipelineSettings.from_config(valid_config())
        self.assertEqual(settings.default_api_key, "config-key-000000")
        self.assertEqual(settings.default_model, "gemini-2.5-flash")
        self.assertEqual(settings.allowed_models, ("gemini-2.5-pro", "gemini-2.5-flash"))
        self.assertEqual(settings.max_retries, 2)
        self.assertEqual(settings.retry_base_delay, 0.5)
        self.assertEqual(settings.max_history_messages, 5)
        self.assertEqual(settings.request_timeout, 20)
        self.assertEqual(settings.admin_ids, (1234,))

    def test_blank_api_key_becomes_empty_string(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = PipelineSettings.from_config({"gemini": {"api_key": None}})
        self.assertEqual(settings.default_api_key, "")

    def test_example_config_loads_with_string_key(self):
        with open(EXAMPLE_CONFIG, encoding="utf-8") as f:
            cfg = yaml.safe_load(f)
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertLogs("geminibot.config.validator", level="WARNING"):
                validate_config(cfg)
            settings = PipelineSettings.from_config(cfg)
        self.assertIsInstance(settings.default_api_key, str)
        self.assertEqual(settings.default_api_key, "")

    def test_environment_key_wins(self):
        with mock.patch.dict(os.environ, {"GEMINI_API_KEY": "env-key-00000000"}):
            settings = PipelineSettings.from_config(valid_config())
        self.assertEqual(settings.default_api_key, "env-key-00000000")


class TestGetConfig(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("geminibot.config.loader.load_dotenv")
        patcher.start()
        self.addCleanup(patcher.stop)

    def write_config(self, cfg) -> str:
        fd, path = tempfile.mkstemp(suffix=".yaml")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(cfg, f)
        self.addCleanup(os.remove, path)
        return path

    def test_loads_explicit_path(self):
        path = self.write_config(valid_config())
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = get_config(path)
        self.assertEqual(cfg["gemini"]["model"], "gemini-2.5-flash")
        self.assertEqual(cfg["bot_token"], "discord-token")

    def test_config_path_env_var(self):
        path = self.write_config(valid_config())
        with mock.patch.dict(os.environ, {"CONFIG_PATH": path}, clear=True):
            cfg = get_config()
        self.assertEqual(cfg["bot"]["max_history_messages"], 5)

    def test_token_from_environment(self):
        cfg = valid_config()
        del cfg["bot_token"]
        path = self.write_config(cfg)
        with mock.patch.dict(os.environ, {"DISCORD_BOT_TOKEN": "env-token"}, clear=True):
            self.assertEqual(get_config(path)["bot_token"], "env-token")

    def test_load_settings(self):
        path = self.write_config(valid_config())
        with mock.patch.dict(os.environ, {"GEMINI_API_KEY": "env-key-00000000"}, clear=True):
            cfg, settings = load_settings(path)
        self.assertEqual(cfg["bot_token"], "discord-token")
        self.assertEqual(settings.default_api_key, "env-key-00000000")
        self.assertEqual(settings.max_history_messages, 5)

    def test_missing_token_exits(self):
        cfg = valid_config()
        del cfg["bot_token"]
        path = self.write_config(cfg)
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(SystemExit) as cm:
                get_config(path)
        self.assertEqual(cm.exception.code, 1)

    def test_invalid_config_exits(self):
        cfg = valid_config()
        cfg["bot"]["request_timeout"] = -5
        path = self.write_config(cfg)
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertLogs("geminibot.config.validator", level="ERROR"):
                with self.assertRaises(SystemExit):
                    get_config(path)

    def test_missing_file_exits(self):
        with self.assertRaises(SystemExit):
            get_config(os.path.join(tempfile.gettempdir(), "does-not-exist-geminibot.yaml"))


if __name__ == "__main__":
    unittest.main()
