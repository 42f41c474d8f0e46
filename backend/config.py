"""
Configuration management for the Equation Ace backend.

Uses Pydantic Settings for environment variable management and validation.
Auth, image storage and history are only enabled when every value listed in
PERSISTENCE_SETTINGS is present; otherwise the service runs in a clearly
labelled "not configured" mode and only solving is available.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


# Values that collectively gate auth / storage / history
PERSISTENCE_SETTINGS = ("redis_url", "google_client_id", "public_base_url")


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Keys
    google_api_key: str = ""

    # Application
    environment: Literal["development", "staging", "production"] = "development"
    backend_port: int = 8000

    # CORS
    cors_origins: list[str] = ["*"]

    # LLM Model Names (Google Gemini)
    vision_model: str = "gemini-2.0-flash"
    text_model: str = "gemini-2.0-flash"
    extract_temperature: float = 0.0
    solve_temperature: float = 0.2

    # Legacy workflow checkpointer (in-memory when unset)
    database_url: Optional[str] = None

    # Auth / storage / history
    redis_url: Optional[str] = None
    google_client_id: Optional[str] = None
    auth_authorized_domains: list[str] = ["localhost", "127.0.0.1"]
    public_base_url: Optional[str] = None
    session_ttl_seconds: int = 7 * 24 * 3600

    # Graph sampling domain
    plot_x_min: float = -10.0
    plot_x_max: float = 10.0
    plot_step: float = 0.05
    plot_timeout_seconds: float = 5.0

    # Logging
    log_level: str = "INFO"

    def missing_persistence_settings(self) -> list[str]:
        """Names of gating values that are unset or still placeholders ("your-...")."""
        missing = []
        for name in PERSISTENCE_SETTINGS:
            value = getattr(self, name)
            if not value or "your-" in value:
                missing.append(name.upper())
        return missing

    @property
    def persistence_configured(self) -> bool:
        return not self.missing_persistence_settings()


# Global settings instance
settings = Settings()
