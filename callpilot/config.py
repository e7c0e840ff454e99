"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the app can start with minimal configuration; clients that
need credentials check for them when they are constructed.
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


class StoreBackend(str, Enum):
    SUPABASE = "supabase"
    MEMORY = "memory"


class GuardBackend(str, Enum):
    REDIS = "redis"
    MEMORY = "memory"


class Settings(BaseSettings):
    """
    Central configuration for the CallPilot service.

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

    # ── Twilio ───────────────────────────────────────────────────
    twilio_account_sid: str = Field(default="", description="Twilio account SID")
    twilio_auth_token: str = Field(default="", description="Twilio auth token")
    twilio_phone_number: str = Field(default="", description="Originating number for outbound calls")
    twilio_validate_signatures: bool = Field(default=False, description="Reject webhooks without a valid X-Twilio-Signature")
    public_base_url: str = Field(default="http://localhost:8000", description="Public URL Twilio uses to reach the webhooks")
    tts_voice: str = Field(default="Polly.Joanna", description="Voice used for <Say>")
    speech_language: str = Field(default="en-US", description="Language for speech recognition and TTS")

    # ── Model Service ────────────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key for turn generation and summaries")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API base URL")
    call_model: str = Field(default="gpt-4o-mini", description="Model used for live call turns")
    summary_model: str = Field(default="gpt-4o-mini", description="Model used for post-call summaries")
    turn_temperature: float = Field(default=0.6, ge=0.0, le=2.0)
    turn_max_tokens: int = Field(default=200, ge=16, le=4096)
    summary_temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    summary_max_tokens: int = Field(default=300, ge=16, le=4096)
    model_request_timeout_seconds: float = Field(default=8.0, gt=0, description="Per-request HTTP timeout")
    model_max_attempts: int = Field(default=2, ge=1, le=5, description="Attempts on transport errors")
    turn_timeout_seconds: float = Field(default=10.0, gt=0, description="Upper bound for one generated turn")
    summary_timeout_seconds: float = Field(default=20.0, gt=0, description="Upper bound for the post-call summary")

    # ── Call Store ───────────────────────────────────────────────
    store_backend: StoreBackend = StoreBackend.SUPABASE
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")

    # ── Delivery Coordination ────────────────────────────────────
    guard_backend: GuardBackend = GuardBackend.REDIS
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    call_lock_lease_seconds: float = Field(default=30.0, gt=0, description="How long a held per-call lock lives in Redis")
    call_lock_wait_seconds: float = Field(default=10.0, gt=0, lt=15.0, description="How long a delivery waits for the per-call lock; below Twilio's 15s webhook timeout")
    delivery_replay_window_seconds: int = Field(default=300, ge=1, le=86400, description="How long a webhook response can be replayed")

    # ── API ──────────────────────────────────────────────────────
    rate_limit_per_minute: int = Field(default=100, ge=1, description="Dashboard API requests per client IP per minute")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def voice_webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/twilio/voice"

    @property
    def status_webhook_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/twilio/status"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
