"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Local cache
    database_url: str = "sqlite:///./tracksync.db"

    # Remote tracker
    redmine_url: str = "http://localhost:3000"
    redmine_api_key: str = ""
    # Every remote call carries this timeout; a timeout counts as a network error.
    request_timeout_seconds: float = 30.0
    page_size: int = 100

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    # Sync
    # 0 disables the periodic background sync (manual triggers only).
    sync_interval_minutes: int = 10
    # Comma-separated allowlist of collections pulled by a full sync run.
    # If empty/omitted, all known collections are pulled.
    #
    # Example: "projects,issues"
    sync_collections: str | None = None
    pull_concurrency: int = 2
    push_concurrency: int = 4

    # Push retries
    max_retries: int = 5
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 300.0

    # Change notifications kept for polling consumers
    event_buffer_size: int = 1000

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
