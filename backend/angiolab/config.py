"""Application Configuration — environment-driven settings via pydantic-settings.

Invariants:
    - All secrets come from environment variables (never hardcoded)
    - get_settings() is cached (lru_cache) — single instance per process
    - Retention caps, intervals, timeouts and log rotation sizes are strictly positive

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults provided for all settings: a single-site lab runs on SQLite out-of-the-box
"""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    app_version: str = "1.0.0"

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/angio-lab.db"

    @field_validator("database_url", mode="before")
    @classmethod
    def convert_postgres_url(cls, v: str) -> str:
        """Hosted Postgres provides postgresql:// but asyncpg needs postgresql+asyncpg://."""
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Backups
    backup_dir: Path = Path("./backups")
    max_manual_backups: int = 50
    max_auto_backups: int = 10
    auto_backup_enabled: bool = True
    auto_backup_interval_seconds: float = 300.0
    backup_lock_timeout_seconds: float = 30.0
    shutdown_backup_enabled: bool = True

    @field_validator(
        "max_manual_backups", "max_auto_backups",
        "auto_backup_interval_seconds", "backup_lock_timeout_seconds",
        "log_max_bytes", "log_backup_count",
    )
    @classmethod
    def require_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    # API
    cors_origins: list[str] = ["http://localhost:3000"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"
    log_dir: Path | None = Path("./logs")
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5


@lru_cache
def get_settings() -> Settings:
    return Settings()
