# src/config/settings.py — v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for cache sizing, retry policy, progress buffering
and logging. Cross-field rules are checked by validate_config_consistency.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Cache ===
    cache_enabled: bool = True
    cache_result_max_size: int = 50
    cache_result_ttl_s: float = 30 * 60
    cache_stage_max_size: int = 200
    cache_stage_ttl_s: float = 15 * 60
    cache_l2_backend: Literal["none", "sqlite", "redis"] = "sqlite"
    cache_root: Path = Path("~/.geocopy/cache")
    cache_redis_url: str = ""
    cache_l2_ttl_s: float = 24 * 60 * 60
    cache_prune_interval_s: float = 5 * 60

    # === Recovery / retry ===
    recovery_max_retries: int = 3
    recovery_concurrency: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 30_000
    retry_jitter_ratio: float = 0.3

    # === Progress ===
    progress_buffer_size: int = 64
    default_language: Literal["ko", "en"] = "ko"

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator(
        "cache_result_max_size",
        "cache_stage_max_size",
        "cache_result_ttl_s",
        "cache_stage_ttl_s",
        "cache_l2_ttl_s",
        "cache_prune_interval_s",
        "recovery_concurrency",
        "progress_buffer_size",
    )
    @classmethod
    def validate_positive(cls, v: float, info) -> float:  # noqa: N805
        if v <= 0:
            raise ConfigurationError(f"{info.field_name} must be > 0")
        return v

    @field_validator("recovery_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ConfigurationError("recovery_max_retries must be >= 0")
        return v

    @field_validator("retry_jitter_ratio")
    @classmethod
    def validate_jitter(cls, v: float) -> float:  # noqa: N805
        if not 0.0 <= v <= 1.0:
            raise ConfigurationError("retry_jitter_ratio must be within [0, 1]")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if self.cache_l2_backend == "redis" and not self.cache_redis_url:
            errors.append("CACHE_L2_BACKEND=redis requires CACHE_REDIS_URL")

        if self.retry_initial_delay_ms <= 0:
            errors.append("RETRY_INITIAL_DELAY_MS must be > 0")

        if self.retry_initial_delay_ms > self.retry_max_delay_ms:
            errors.append("RETRY_INITIAL_DELAY_MS must be <= RETRY_MAX_DELAY_MS")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def cache_db_path(self) -> Path:
        """SQLite file used by the durable cache."""
        return self.cache_root.expanduser() / "geocopy_cache.db"


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-request config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
