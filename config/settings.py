"""
Application settings for the transcription pipeline.

Values are read from environment variables (and an optional ``.env`` file) through
pydantic-settings, validated, and exposed as a cached singleton.
"""

import logging
import sys
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeploymentMode(str, Enum):
    """Where the service is running."""
    LOCAL = "LOCAL"
    DEVELOPMENT = "DEVELOPMENT"
    PRODUCTION = "PRODUCTION"


class LogLevel(str, Enum):
    """Supported log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LLMPunctuationMode(str, Enum):
    """How the optional LLM punctuation pass is applied."""
    OFF = "off"
    SEGMENT = "segment"
    FULL_TEXT = "full_text"


class Settings(BaseSettings):
    """Typed configuration for every pipeline component."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Deployment
    deployment_mode: DeploymentMode = DeploymentMode.LOCAL
    log_level: LogLevel = LogLevel.INFO
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Storage
    database_url: str = "sqlite+aiosqlite:///data/transcription.db"
    storage_path: Path = Path("data/blobs")
    public_base_url: str = "http://localhost:8000/blobs"
    blob_ttl_hours: int = 24
    blob_prefix: str = "media"

    # Audio acquisition and clipping
    ffmpeg_enabled: bool = True
    ffmpeg_binary: str = "ffmpeg"
    ffmpeg_timeout: float = 120.0
    clip_worker_url: Optional[str] = None
    clip_worker_timeout: float = 120.0
    allow_passthrough: bool = False
    preview_seconds: int = 300
    range_check_timeout: float = 15.0
    duration_lookup_timeout: float = 15.0

    # Transcription providers
    deepgram_api_key: Optional[str] = None
    deepgram_base_url: str = "https://api.deepgram.com/v1"
    deepgram_model: str = "nova-2"
    replicate_api_token: Optional[str] = None
    replicate_base_url: str = "https://api.replicate.com/v1"
    whisper_model_version: str = "large-v3"
    whisper_poll_interval: float = 2.0
    whisper_max_polls: int = 150
    dispatch_mode: str = "sequential"
    provider_fallback_timeout: float = 600.0

    # Transcript cache
    cache_enabled: bool = True
    cache_platform_ttl_days: int = 90
    cache_upload_ttl_days: Dict[str, int] = Field(
        default_factory=lambda: {"free": 0, "basic": 7, "pro": 30, "premium": 90}
    )

    # Refinement
    punctuate_llm_key: Optional[str] = None
    punctuate_llm_base: str = "https://api.deepseek.com/v1"
    punctuate_llm_model: str = "deepseek-chat"
    punctuate_llm_mode: LLMPunctuationMode = LLMPunctuationMode.OFF
    punctuate_llm_chunk: int = 1800
    punctuate_llm_concurrency: int = 3
    align_overshoot_ratio: float = 0.92

    # Admission control
    abuse_block_threshold: int = 30
    require_bot_verification: bool = False

    # Caller identity and admin access
    admin_token: Optional[str] = None
    trust_identity_headers: Optional[bool] = None
    api_keys: Dict[str, str] = Field(default_factory=dict)

    # Queue and polling
    queue_max_pending: int = 500
    tier_concurrency: Dict[str, int] = Field(
        default_factory=lambda: {"free": 1, "basic": 2, "pro": 4, "premium": 8}
    )
    poll_interval_seconds: float = 2.0
    poll_max_attempts: int = 60
    worker_idle_sleep: float = 1.0

    @field_validator("punctuate_llm_chunk")
    @classmethod
    def clamp_chunk(cls, v: int) -> int:
        """Chunk size is kept within 1200..2400 characters."""
        return max(1200, min(2400, v))

    @field_validator("align_overshoot_ratio")
    @classmethod
    def check_overshoot(cls, v: float) -> float:
        if not 0.5 <= v <= 1.0:
            raise ValueError("align_overshoot_ratio must be between 0.5 and 1.0")
        return v

    @field_validator("dispatch_mode")
    @classmethod
    def check_dispatch_mode(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sequential", "fan_out"):
            raise ValueError("dispatch_mode must be 'sequential' or 'fan_out'")
        return v

    @field_validator("api_keys")
    @classmethod
    def check_api_keys(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Each entry maps a key to ``account_id:tier``."""
        for entry in v.values():
            account, _, tier = entry.partition(":")
            if not account or tier.lower() not in ("free", "basic", "pro", "premium"):
                raise ValueError(f"api_keys entries must be 'account_id:tier', got {entry!r}")
        return v

    def identity_headers_trusted(self) -> bool:
        """Raw X-Account-Id and X-Tier headers are honoured outside production unless configured."""
        if self.trust_identity_headers is not None:
            return self.trust_identity_headers
        return self.deployment_mode in (DeploymentMode.LOCAL, DeploymentMode.DEVELOPMENT)


@lru_cache()
def get_settings() -> Settings:
    """Get the cached settings instance."""
    return Settings()


def reload_settings() -> Settings:
    """Drop the cache and re-read the environment."""
    get_settings.cache_clear()
    return get_settings()


def is_development() -> bool:
    return get_settings().deployment_mode in (DeploymentMode.LOCAL, DeploymentMode.DEVELOPMENT)


def is_production() -> bool:
    return get_settings().deployment_mode == DeploymentMode.PRODUCTION


def get_database_url() -> str:
    return get_settings().database_url


def get_storage_path() -> Path:
    return get_settings().storage_path


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for the service processes.

    Args:
        level: Optional override of the configured log level
    """
    level_name = (level or get_settings().log_level.value).upper()
    logging.basicConfig(
        level=getattr(logging, level_name),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


settings = get_settings()
