"""Configuration management for Treehouse."""

from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="TREEHOUSE_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Registry settings
    registry_path: Path = Path("~/.local/share/treehouse/registry.db")
    busy_timeout_ms: int = 5000

    # Allocation settings (range is only the fallback; the registry's
    # config table holds the authoritative range)
    ip_prefix: str = "127.0.0"
    ip_range_start: int = 10
    ip_range_end: int = 99
    stale_threshold_days: int = 7
    allocate_attempts: int = 5
    allocate_retry_delay_ms: int = 50

    # Naming
    domain: str = "local"
    project: str | None = None

    # Logging
    debug: bool = False
    log_level: str = "WARNING"

    @field_validator("ip_range_start", "ip_range_end")
    @classmethod
    def _check_suffix(cls, value: int) -> int:
        if not 2 <= value <= 254:
            raise ValueError("IP suffix must be between 2 and 254")
        return value

    @field_validator("allocate_attempts")
    @classmethod
    def _check_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("allocate_attempts must be at least 1")
        return value

    @field_validator("allocate_retry_delay_ms", "busy_timeout_ms")
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @model_validator(mode="after")
    def _check_range(self) -> "Settings":
        if self.ip_range_start > self.ip_range_end:
            raise ValueError("ip_range_start must not exceed ip_range_end")
        return self

    @property
    def database_path(self) -> Path:
        """Registry path with ``~`` expanded."""
        return self.registry_path.expanduser()


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
