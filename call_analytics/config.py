"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings for the analytics API."""

    app_name: str = "Analytics API"
    app_version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 5.0
    redis_connect_timeout_seconds: float = 5.0
    ledger_max_entries: int = 1000
    recent_timestamps_limit: int = 10
    tracing_enabled: bool = False
    otlp_endpoint: str | None = "http://otel-collector:4317"
    otel_service_name: str = "AnalyticsApi"
    self_tracking_enabled: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings so env parsing only happens once."""

    return Settings()
