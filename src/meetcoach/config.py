"""
MeetCoach Configuration Management

Centralized configuration using pydantic-settings with environment variable support.
"""

from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ══════════════════════════════════════════════════════════════
    # Application
    # ══════════════════════════════════════════════════════════════
    app_name: str = "MeetCoach"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    api_version: str = "v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ══════════════════════════════════════════════════════════════
    # Redis (feedback history)
    # ══════════════════════════════════════════════════════════════
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0")
    redis_socket_timeout_seconds: float = Field(default=2.0, gt=0)

    # ══════════════════════════════════════════════════════════════
    # Audio Pipeline
    # ══════════════════════════════════════════════════════════════
    audio_segment_seconds: float = Field(default=2.0, gt=0)
    audio_min_flush_interval_ms: int = 500
    audio_normalize: bool = False
    audio_default_sample_rate: int = 48000
    audio_default_channels: int = Field(default=1, ge=1, le=2)

    # ══════════════════════════════════════════════════════════════
    # Prosody Model (streaming)
    # ══════════════════════════════════════════════════════════════
    prosody_ws_url: str = "wss://api.hume.ai/v0/stream/models"
    prosody_api_key: str = ""
    prosody_api_key_header: str = "X-Hume-Api-Key"
    prosody_models: dict[str, Any] = {"prosody": {}}
    prosody_sample_rate: int | None = None  # None = send at source rate
    prosody_require_mono: bool = False
    prosody_speech_threshold_dbfs: float = -50.0

    # ══════════════════════════════════════════════════════════════
    # Feedback
    # ══════════════════════════════════════════════════════════════
    feedback_include_host: bool = False
    feedback_ttl_days: int = Field(default=14, gt=0)
    feedback_min_gap_ms: int = 5000
    feedback_meeting_min_gap_ms: int = 0
    feedback_ema_alpha: float = Field(default=0.3, gt=0.0, le=1.0)
    feedback_metrics_max_samples: int = 100

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def prosody_headers(self) -> dict[str, str]:
        """Headers for the prosody WebSocket handshake."""
        if not self.prosody_api_key:
            return {}
        return {self.prosody_api_key_header: self.prosody_api_key}

    @property
    def feedback_ttl_seconds(self) -> int:
        return self.feedback_ttl_days * 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
