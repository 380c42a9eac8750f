"""
Configuration module for the transcription pipeline.

Provides centralized configuration management with environment variable support,
validation, and deployment mode handling.

Usage:
    from config import settings
    from config import get_settings, is_development, is_production

    print(settings.database_url)

    if is_development():
        print("Running in development mode")

    fresh_settings = reload_settings()
"""

from .settings import (
    Settings,
    DeploymentMode,
    LogLevel,
    LLMPunctuationMode,
    settings,
    get_settings,
    reload_settings,
    is_development,
    is_production,
    get_storage_path,
    get_database_url,
    setup_logging,
)

__all__ = [
    "Settings",
    "DeploymentMode",
    "LogLevel",
    "LLMPunctuationMode",
    "settings",
    "get_settings",
    "reload_settings",
    "is_development",
    "is_production",
    "get_storage_path",
    "get_database_url",
    "setup_logging",
]
