"""Application configuration using Pydantic Settings."""
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # MongoDB
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "timebill"

    # JWT
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440  # 24 hours

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # CORS
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Time tracking
    auto_persist_interval_seconds: float = 30.0
    default_rate_per_minute_cents: float = 75.0  # 45.00/hour
    timezone: str = "UTC"
    workspace_idle_seconds: float = 1800.0  # 0 keeps workspaces until shutdown

    # Billing and statistics
    tax_rate: float = 0.20
    top_clients_limit: int = 5
    stats_months: int = 12
    forecast_window_months: int = 6

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


settings = Settings()
