"""Application settings loaded from the environment."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./data/syncabull.db",
        description="SQLAlchemy async database URL",
    )
    echo: bool = False
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: int = Field(default=30, ge=1)
    pool_recycle: int = Field(default=3600, ge=-1)
    pool_pre_ping: bool = True


# Hey future me - these are the credentials of OUR OAuth client (the one registered in the
# Google Cloud console), not the user's tokens! The user's access/refresh tokens live in the
# credentials table and are owned by the TokenManager. client_secret is required by Google
# for the refresh grant even for "installed app" clients.
class GoogleSettings(BaseSettings):
    """Google OAuth client and Photos Library API endpoints."""

    model_config = SettingsConfigDict(env_prefix="GOOGLE_", extra="ignore")

    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"  # nosec B105 - public endpoint URL
    api_base_url: str = "https://photoslibrary.googleapis.com/v1"

    @property
    def is_configured(self) -> bool:
        """Check if OAuth client credentials are present."""
        return bool(self.client_id.strip() and self.client_secret.strip())


# Listen up, SyncSettings is THE struct the engine consumes. Every field here can also be
# overridden from the app_settings table (key "sync.<field>") as long as it was NOT set in the
# environment - env always wins. See application/services/app_settings_service.py.
class SyncSettings(BaseSettings):
    """Engine tuning knobs."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    destination_root: Path = Path("./backup")
    concurrency: int = Field(default=4, ge=1, le=64)
    max_attempts: int = Field(default=4, ge=1)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    backoff_cap_seconds: float = Field(default=300.0, ge=0.0)
    # Google signs baseUrls for roughly an hour. The API is authoritative, this is our
    # knowledge of it - lower it if downloads start failing with 403.
    asset_url_ttl_seconds: int = Field(default=3600, ge=1)
    asset_url_refresh_margin_seconds: int = Field(default=300, ge=0)
    token_refresh_margin_seconds: int = Field(default=300, ge=0)
    page_size: int = Field(default=100, ge=1, le=100)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    token_timeout_seconds: float = Field(default=20.0, gt=0)
    asset_timeout_seconds: float = Field(default=300.0, gt=0)
    cycle_interval_seconds: int = Field(default=1800, ge=1)
    idle_poll_seconds: float = Field(default=5.0, gt=0)
    max_download_speed: int = Field(default=0, ge=0, description="bytes/sec, 0 = unlimited")
    stop_when_caught_up: bool = True

    @field_validator("backoff_cap_seconds")
    @classmethod
    def _cap_not_below_base(cls, value: float, info: ValidationInfo) -> float:
        base = info.data.get("backoff_base_seconds", 0.0)
        if value < base:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return value


class ObservabilitySettings(BaseSettings):
    """Logging and shutdown behaviour."""

    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_", extra="ignore")

    log_json_format: bool = False
    # grace period before in-flight network streams are interrupted; file writes always finish
    shutdown_timeout: float = Field(default=10.0, ge=0.0)


class Settings(BaseSettings):
    """Root settings object."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "syncabull"
    app_env: Literal["development", "production", "test"] = "production"
    log_level: str = "INFO"

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    # Hey future me - returns None for anything that isn't a file-backed SQLite URL
    # (PostgreSQL, or sqlite :memory:). lifecycle uses it to create the parent directory.
    def _get_sqlite_db_path(self) -> Path | None:
        url = self.database.url
        if not url.startswith("sqlite"):
            return None
        _, _, path = url.partition(":///")
        if not path or path == ":memory:":
            return None
        return Path(path)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


__all__ = [
    "DatabaseSettings",
    "GoogleSettings",
    "ObservabilitySettings",
    "Settings",
    "SyncSettings",
    "get_settings",
]
