"""Application settings and configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Referral engine configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "referral-engine"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = "console"  # "console" or "json"
    allowed_origins: str = "*"

    # Database
    database_url: str = "sqlite:///./referrals.db"
    database_echo: bool = False
    transaction_retries: int = 3

    # Code generation
    code_length: int = Field(default=8, ge=6, le=10)
    code_generation_attempts: int = 10

    # Code policy bounds
    default_points_per_referral: int = 100
    max_points_per_referral: int = 10000
    max_uses_limit: int = 1000

    # Custom codes
    custom_code_min_length: int = 4
    custom_code_max_length: int = 50
    code_suggestion_count: int = 5

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


# Global settings instance
settings = Settings()
