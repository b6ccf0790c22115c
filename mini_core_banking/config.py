"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MiniCoreConfig(BaseSettings):
    """Mini core banking configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "minicore.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "USD"
    reference_retry_attempts: int = 1  # Regenerations allowed after a duplicate reference
    default_page_size: int = 20
    max_page_size: int = 100

    class Config:
        env_prefix = "MINICORE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MiniCoreConfig()


def get_config() -> MiniCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MiniCoreConfig:
    """Reload configuration from environment"""
    global config
    config = MiniCoreConfig()
    return config
