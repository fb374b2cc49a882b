# allocation_engine/settings.py
"""
Runtime settings for the allocation engine.
Uses pydantic-settings so deployments can override paths, pool sizes and
logging through ``ALLOC_ENGINE_*`` environment variables or a
``.env`` file.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="ALLOC_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Model registry
    model_store_dir: Path = Field(default=Path("./model_store"))
    registry_db_name: str = Field(default="registry.db")

    # Worker pools
    evaluation_workers: Optional[int] = Field(default=None, ge=1)
    request_workers: int = Field(default=4, ge=1)

    # Result store
    max_cached_results: int = Field(default=256, ge=1)

    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def registry_db_url(self) -> str:
        return f"sqlite:///{(self.model_store_dir / self.registry_db_name).as_posix()}"


@lru_cache()
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()
