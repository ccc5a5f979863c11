"""Configuration via environment variables.

Database settings follow the individual POSTGRES_* variable pattern.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # --- Database ---
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = ""

    # SQLite fallback for local dev (set USE_SQLITE=true)
    use_sqlite: bool = False
    sqlite_path: str = "salesdesk.db"

    @property
    def database_url(self) -> str:
        if self.use_sqlite:
            return f"sqlite:///{self.sqlite_path}"
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # AI call queue
    max_batch_size: int = 50
    default_max_attempts: int = 3
    retry_delay_minutes: int = 120
    list_limit_default: int = 100
    list_limit_max: int = 500

    # Stats
    cost_per_completed_call: float = 0.07
    stats_timezone: str = "UTC"

    # --- Client / sync ---
    api_url: str = "http://localhost:8000"
    user_id_header: str = "X-User-Id"
    refresh_interval_seconds: float = 30.0
    http_timeout_seconds: float = 30.0

    # --- Server ---
    serve_host: str = "0.0.0.0"
    serve_port: int = 8000

    model_config = {"env_prefix": ""}
