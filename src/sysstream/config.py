"""
Configuration for sysstream.

All settings are read from environment variables with the ``SYSSTREAM_``
prefix, e.g. ``SYSSTREAM_PORT=9000`` or ``SYSSTREAM_LOG_JSON=true``.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sysstream.lifecycle import DEFAULT_GRACE_PERIOD


class Settings(BaseSettings):
    """Runtime settings for the streaming server."""

    model_config = SettingsConfigDict(env_prefix="SYSSTREAM_", extra="ignore")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=0, le=65535)

    # Seconds between snapshots pushed to each client
    interval: float = Field(default=1.0, gt=0)

    # Seconds to wait for sessions to drain on shutdown
    grace_period: float = Field(default=DEFAULT_GRACE_PERIOD, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_json: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    return Settings()
