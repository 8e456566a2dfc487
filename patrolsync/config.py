from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Device/runtime settings, read from PATROLSYNC_* env vars or .env."""

    model_config = SettingsConfigDict(
        env_prefix="PATROLSYNC_", env_file=".env", extra="ignore"
    )

    # Sync API
    api_base_url: str = "http://localhost:3000"
    sync_timeout_seconds: float = 15.0
    inline_timeout_seconds: float = 3.0

    # Outbox
    max_attempts: int = 5
    drain_interval_seconds: float = 30.0

    # Viewer / pair codes
    viewer_poll_seconds: float = 10.0
    pair_code_ttl_hours: int = 24

    # None keeps everything in memory
    storage_dir: str | None = None

    # Logging
    service_name: str = "patrolsync"
    log_level: str = "INFO"
    json_logs: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
