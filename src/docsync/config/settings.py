"""Application configuration settings."""

from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Local tracking store configuration."""

    url: str = Field(default="sqlite:///./data/docsync.db")

    model_config = SettingsConfigDict(env_prefix="DB_")


class BackendSettings(BaseSettings):
    """Remote knowledge-base backend configuration."""

    base_url: str = Field(default="https://api.oyelina.com/api")
    api_token: str = Field(default="")
    integration_id: str = Field(default="")
    request_timeout_seconds: int = Field(default=300)  # large uploads

    model_config = SettingsConfigDict(env_prefix="BACKEND_")


class SyncSettings(BaseSettings):
    """Sync engine tuning."""

    upload_concurrency: int = Field(default=5, ge=1)
    grant_batch_size: int = Field(default=100, ge=1)
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    hash_concurrency: int = Field(default=4, ge=1)
    hash_chunk_size: int = Field(default=64 * 1024, ge=1024)
    machine_id: Optional[str] = Field(default=None)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=5.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="SYNC_")


class SchedulingSettings(BaseSettings):
    """Scheduling configuration."""

    enabled: bool = Field(default=True)
    misfire_grace_seconds: int = Field(default=300)

    model_config = SettingsConfigDict(env_prefix="SCHEDULE_")


class ServerSettings(BaseSettings):
    """Status server configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080)

    model_config = SettingsConfigDict(env_prefix="SERVER_")


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file_path: Optional[str] = Field(default="./logs/docsync.log")

    model_config = SettingsConfigDict(env_prefix="LOG_")


class AppSettings(BaseSettings):
    """Main application settings."""

    name: str = Field(default="docsync")
    version: str = Field(default="1.0.0")
    environment: str = Field(default="development")
    config_file: Optional[str] = Field(default=None)

    # Sub-settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="DOCSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings = AppSettings()


def get_settings() -> AppSettings:
    """Get application settings."""
    return settings
