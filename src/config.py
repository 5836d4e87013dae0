"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Activity Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str = "postgresql://localhost:5432/activity_sync"  # asyncpg DSN
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10
    db_command_timeout_s: float = 30.0

    # --- Outbound HTTP ---
    http_timeout_s: float = 15.0  # applies to every provider and feed request
    gmail_api_base: str = "https://gmail.googleapis.com/gmail/v1"
    calendar_api_base: str = "https://www.googleapis.com/calendar/v3"
    feed_user_agent: str = "activity-sync/0.1 (+feed reader)"

    # --- Engine tuning ---
    sync_config_path: str | None = None  # override for the bundled sync_config.yaml

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
