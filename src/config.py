"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the pipeline can start with minimal configuration.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Central configuration for the clinical document pipeline.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT

    # ── Speech-to-text provider ──────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key for Whisper transcription")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API base URL")
    transcription_model: str = Field(default="whisper-1", description="Speech-to-text model id")
    transcription_language: str = Field(default="en", description="Language hint sent with audio")
    transcription_timeout_seconds: float = Field(default=240.0, gt=0, description="Large audio files take minutes")

    # ── Text-generation provider ─────────────────────────────────
    anthropic_api_key: str = Field(default="", description="Anthropic API key for extraction and generation")
    anthropic_base_url: str = Field(default="https://api.anthropic.com/v1", description="Anthropic API base URL")
    anthropic_version: str = Field(default="2023-06-01", description="anthropic-version header")
    generation_model: str = Field(default="claude-sonnet-4-20250514", description="Generation model id")
    generation_max_tokens: int = Field(default=4096, ge=1, description="Max tokens per generation call")
    generation_timeout_seconds: float = Field(default=120.0, gt=0, description="Per-call generation timeout")

    # ── Supabase ─────────────────────────────────────────────────
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")

    # ── Redis ────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    queue_key_prefix: str = Field(default="pipeline", description="Prefix for Redis queue keys")

    # ── Audio storage ────────────────────────────────────────────
    audio_storage_root: str = Field(default="public", description="Root directory for relative recording URLs")

    # ── Pipeline retry policy ────────────────────────────────────
    max_task_attempts: int = Field(default=3, ge=1, le=10, description="Total attempts per pipeline task")
    retry_base_delay_seconds: float = Field(default=3.0, ge=0, description="Backoff before the second attempt")

    # ── Worker ───────────────────────────────────────────────────
    worker_concurrency: int = Field(default=4, ge=1, le=64, description="Max jobs processed at once")
    worker_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Sleep when the queue is idle")
    job_claim_timeout_seconds: float = Field(
        default=1800.0, gt=0, description="A claimed job not acknowledged within this time counts as lost"
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
