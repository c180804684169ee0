"""Configuration settings for duomode."""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Set

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from duomode.utils import get_data_home

BUNDLED_MIGRATIONS_DIR = Path(__file__).parent / "migrations" / "sql"


class Settings(BaseSettings):
    """Process settings loaded from environment and ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars not in model
    )

    # Mode selection
    server_mode: bool = False
    database_url: Optional[str] = None

    # Client mode
    embedded_path: Optional[Path] = None
    enable_sqlite_vec: bool = True

    # Migrations
    migrations_dir: Path = BUNDLED_MIGRATIONS_DIR
    # Capabilities whose optional migrations should be included, e.g. ["vector"]
    optional_migrations: Set[str] = Field(default_factory=set)
    migration_attempts: int = Field(default=1, ge=1, le=10)

    # Server mode pool
    pool_min_size: int = Field(default=1, ge=1)
    pool_max_size: int = Field(default=10, ge=1)
    pool_timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=5.0, gt=0)
    statement_timeout: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def _blank_url_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    @field_validator("pool_max_size")
    @classmethod
    def _max_not_below_min(cls, value: int, info) -> int:
        minimum = info.data.get("pool_min_size", 1)
        if value < minimum:
            raise ValueError(f"pool_max_size ({value}) must be >= pool_min_size ({minimum})")
        return value

    def resolved_embedded_path(self) -> Path:
        """Embedded database location, defaulting under the data home."""
        if self.embedded_path is not None:
            return Path(self.embedded_path).expanduser()
        return get_data_home() / "local.db"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
