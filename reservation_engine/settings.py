"""Application settings and configuration."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings loaded from environment variables.

    Per-property automation rules are data, not settings; see
    reservation_engine.services.automation_settings.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./reservations.db"

    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # Automatic transition scheduler
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = 300
    scheduler_max_retries: int = 1

    # Operational day
    operational_day_start_hour: int = 6

    # Status cache
    status_cache_ttl_seconds: int = 30
    status_cache_max_size: int = 1000

    bulk_transition_limit: int = 100

    # CORS
    cors_origins: list[str] = ["*"]
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = ["*"]
    cors_allow_headers: list[str] = ["*"]

    @property
    def database_url_computed(self) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
