from __future__ import annotations

import logging
import time
from functools import lru_cache
from pathlib import Path
from typing import Callable

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session

from rendezvous.models import SystemConfig

log = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Process settings, read from ``RENDEZVOUS_*`` environment variables or a ``.env`` file.

    The provider credentials keep their conventional unprefixed names
    (``LLM_PROVIDER``, ``LLM_MODEL``, ``RESEND_API_KEY``).
    """

    model_config = SettingsConfigDict(
        env_prefix="RENDEZVOUS_", env_file=".env", env_file_encoding="utf-8", extra="ignore",
    )

    database_path: Path = Field(
        default=Path(__file__).parent / "data" / "rendezvous.db", description="SQLite database file",
    )

    # =========================================================================
    # COMPLETION ENGINE
    # =========================================================================
    llm_provider: str = Field(
        default="anthropic", validation_alias=AliasChoices("llm_provider", "LLM_PROVIDER"),
        description="anthropic | openai | openai_compatible",
    )
    llm_model: str = Field(
        default="", validation_alias=AliasChoices("llm_model", "LLM_MODEL"),
        description="Empty means the provider default",
    )
    pair_delay_seconds: float = Field(default=0.1, ge=0, description="Pause between pair analyses")

    # =========================================================================
    # EMAIL DELIVERY
    # =========================================================================
    email_backend: str = Field(default="console", description="console | resend")
    resend_api_key: str = Field(default="", validation_alias=AliasChoices("resend_api_key", "RESEND_API_KEY"))
    email_from_address: str = "Rendezvous <noreply@rendezvous.local>"
    email_send_delay_seconds: float = Field(default=0.5, ge=0, description="Pause between sends")
    email_max_retries: int = Field(default=3, ge=0, description="Retries for rate-limited sends")
    email_backoff_base_seconds: float = Field(default=1.0, ge=0)
    email_backoff_cap_seconds: float = Field(default=5.0, ge=0)
    app_url: str = "http://localhost:8001"
    placeholder_recipient: str = Field(
        default="reports-fallback@rendezvous.local", description="Used when a participant has no email",
    )

    # =========================================================================
    # PIPELINE POLICY
    # =========================================================================
    default_timezone: str = Field(default="America/Los_Angeles", description="Fallback for scheduling")
    config_cache_ttl_seconds: float = Field(default=300.0, ge=0)
    max_conversation_attempts: int = Field(default=3, ge=1)
    stale_conversation_seconds: float = Field(
        default=1800.0, gt=0, description="An active conversation older than this is treated as crashed",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


# ---------------------------------------------------------------------------
# Runtime configuration (system_config table) with an injected TTL cache
# ---------------------------------------------------------------------------


class ConfigCache:
    """Time-boxed key/value cache. The clock is injectable for tests."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: str) -> None:
        self._entries[key] = (value, self._clock())

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def get_system_config(
    session: Session, key: str, default: str | None = None, cache: ConfigCache | None = None,
) -> str | None:
    """Read a runtime config value, consulting *cache* first when given."""
    if cache is not None:
        cached = cache.get(key)
        if cached is not None:
            return cached
    row = session.execute(select(SystemConfig).where(SystemConfig.key == key)).scalars().first()
    if row is None:
        return default
    value = _unquote(row.value)
    if cache is not None:
        cache.set(key, value)
    return value


def set_system_config(session: Session, key: str, value: str, cache: ConfigCache | None = None) -> SystemConfig:
    """Insert or update a runtime config value (caller must commit)."""
    row = session.execute(select(SystemConfig).where(SystemConfig.key == key)).scalars().first()
    if row is None:
        row = SystemConfig(key=key, value=value)
        session.add(row)
    else:
        row.value = value
    if cache is not None:
        cache.invalidate(key)
    return row
