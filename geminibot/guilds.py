"""
Per-guild API key / model overrides.

The resolver owns the semantics (merge-on-set, redaction, defaults, the
credential precedence chain); the store only holds GuildConfig records and
can be swapped for a durable backend with the same three operations.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional, Protocol

from geminibot.domain import Credentials, GuildConfig
from geminibot.llm.errors import ValidationError


logger = logging.getLogger(__name__)

MIN_API_KEY_LENGTH = 10


class GuildConfigNotFoundError(LookupError):
    """No configuration (or no API key) stored for the guild."""

    def __init__(self, guild_id: str, what: str = "configuration"):
        super().__init__(f"No {what} set for guild {guild_id}")
        self.guild_id = guild_id


class ReadWriteLock:
    """Many concurrent readers or one exclusive writer (writers get priority)."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class GuildConfigStore(Protocol):
    def get(self, guild_id: str) -> Optional[GuildConfig]: ...

    def update(
        self, guild_id: str, fn: Callable[[Optional[GuildConfig]], Optional[GuildConfig]]
    ) -> Optional[GuildConfig]: ...

    def delete(self, guild_id: str) -> bool: ...


class InMemoryGuildConfigStore:
    """
    Dict-backed store. ``update`` runs the read-merge-write under one write
    lock so concurrent admin commands on the same guild cannot lose updates.
    Records are copied on the way in and out.
    """

    def __init__(self) -> None:
        self._configs: dict[str, GuildConfig] = {}
        self._lock = ReadWriteLock()

    def get(self, guild_id: str) -> Optional[GuildConfig]:
        with self._lock.read():
            cfg = self._configs.get(guild_id)
            return replace(cfg) if cfg else None

    def update(
        self, guild_id: str, fn: Callable[[Optional[GuildConfig]], Optional[GuildConfig]]
    ) -> Optional[GuildConfig]:
        with self._lock.write():
            current = self._configs.get(guild_id)
            new = fn(replace(current) if current else None)
            if new is None:
                self._configs.pop(guild_id, None)
                return None
            self._configs[guild_id] = replace(new)
            return replace(new)

    def delete(self, guild_id: str) -> bool:
        with self._lock.write():
            return self._configs.pop(guild_id, None) is not None

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._configs)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class GuildConfigResolver:
    def __init__(self, store: GuildConfigStore, default_api_key: str, default_model: str):
        self._store = store
        self._default_api_key = default_api_key
        self.default_model = default_model

    # ── Writes ────────────────────────────────────────────────────────────────

    def set_api_key(self, guild_id: str, api_key: str, set_by: str) -> None:
        def merge(cur: Optional[GuildConfig]) -> GuildConfig:
            if cur is None:
                return GuildConfig(guild_id=guild_id, api_key=api_key, set_by=set_by)
            return replace(cur, api_key=api_key, set_by=set_by, set_at=_now())

        self._store.update(guild_id, merge)
        logger.info("API key set for guild %s by %s", guild_id, set_by)

    def set_model(self, guild_id: str, model: str, set_by: str = "") -> None:
        def merge(cur: Optional[GuildConfig]) -> GuildConfig:
            if cur is None:
                return GuildConfig(guild_id=guild_id, model=model, set_by=set_by)
            return replace(cur, model=model)

        self._store.update(guild_id, merge)
        logger.info("Model for guild %s set to %s", guild_id, model)

    def delete_api_key(self, guild_id: str) -> None:
        """
        Remove the guild's key. A model override, if any, survives; an entry
        with nothing left in it is dropped.
        """
        found = False

        def merge(cur: Optional[GuildConfig]) -> Optional[GuildConfig]:
            nonlocal found
            if cur is None or not cur.api_key:
                return cur
            found = True
            if cur.model is None:
                return None
            return replace(cur, api_key="")

        self._store.update(guild_id, merge)
        if not found:
            raise GuildConfigNotFoundError(guild_id, "API key")
        logger.info("API key deleted for guild %s", guild_id)

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_api_key(self, guild_id: str) -> str:
        cfg = self._store.get(guild_id)
        if cfg is None or not cfg.api_key:
            raise GuildConfigNotFoundError(guild_id, "API key")
        return cfg.api_key

    def has_api_key(self, guild_id: str) -> bool:
        cfg = self._store.get(guild_id)
        return bool(cfg and cfg.api_key)

    def get_info(self, guild_id: str) -> GuildConfig:
        """Stored config with the key redacted and the effective model filled in."""
        cfg = self._store.get(guild_id)
        if cfg is None:
            raise GuildConfigNotFoundError(guild_id)
        return replace(cfg, api_key="", model=cfg.model or self.default_model)

    def get_model(self, guild_id: str) -> str:
        cfg = self._store.get(guild_id)
        if cfg is None or not cfg.model:
            return self.default_model
        return cfg.model

    # ── Credential precedence ────────────────────────────────────────────────

    def resolve(self, guild_id: Optional[str]) -> Credentials:
        """
        guild key + guild model  >  default key + guild model  >  defaults.

        Lookup failures are logged and fall through to the next step; this
        never raises.
        """
        if not guild_id:
            return Credentials(self._default_api_key, self.default_model)

        try:
            model = self.get_model(guild_id)
        except Exception as e:  # noqa: BLE001
            logger.warning("Model lookup failed for guild %s: %s; using default model", guild_id, e)
            model = self.default_model
        model_source = "guild" if model != self.default_model else "default"

        try:
            api_key = self.get_api_key(guild_id)
        except GuildConfigNotFoundError:
            logger.info("No custom API key for guild %s; using default key", guild_id)
        except Exception as e:  # noqa: BLE001
            logger.warning("API key lookup failed for guild %s: %s; using default key", guild_id, e)
        else:
            return Credentials(api_key, model, key_source="guild", model_source=model_source)

        if model_source == "guild":
            logger.info("Guild %s: default key with model override %s", guild_id, model)
        return Credentials(self._default_api_key, model, model_source=model_source)


# ── Admin-side validation (callers check before writing) ─────────────────────

def validate_api_key(api_key: str) -> str:
    key = (api_key or "").strip()
    if not key:
        raise ValidationError("API key is empty")
    if len(key) < MIN_API_KEY_LENGTH:
        raise ValidationError("API key is too short")
    return key


def validate_model(model: str, allowed_models: tuple[str, ...] | list[str]) -> str:
    if model not in allowed_models:
        raise ValidationError(f"Unsupported model: {model}")
    return model
