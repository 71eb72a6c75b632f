"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or .env file."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Application
    app_name: str = "Agent Calendar"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"  # Bind to all interfaces for external access
    port: int = 8000
    allowed_origins: str = "*"  # Comma-separated origins, or "*" for all

    # Database
    database_url: str = "sqlite:///./agent_calendar.db"

    # Recurrence
    materialize_window_days: int = 90
    max_instances_per_window: int = 1000
    horizon_interval_minutes: int = 24 * 60

    # Outbound webhooks
    webhook_timeout_seconds: float = 10.0
    webhook_max_workers: int = 4


settings = Settings()
