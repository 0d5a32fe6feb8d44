"""
Application settings using Pydantic.

Provides environment-based configuration loading with TFCI_ prefix.
"""

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tfci_policy.policy.waiter import BackoffConfig


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TFCI_",
        extra="ignore",
        populate_by_name=True,
    )

    # HCP Terraform / Terraform Enterprise
    hostname: str = "app.terraform.io"
    token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TFCI_TOKEN", "TF_API_TOKEN"),
    )
    organization: str | None = None

    # HTTP client settings
    http_timeout: float = 30.0

    # Policy wait settings (seconds)
    backoff_floor: float = 1.0
    backoff_cap: float = 15.0
    wait_deadline: float = 600.0

    # Logging
    log_level: str = "WARNING"

    def backoff(self) -> BackoffConfig:
        return BackoffConfig(
            floor=self.backoff_floor,
            cap=self.backoff_cap,
            deadline=self.wait_deadline,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
