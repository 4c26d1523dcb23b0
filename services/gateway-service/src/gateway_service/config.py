"""Configuration for the gateway service using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Caller auth
    service_auth_secret: str = Field(default="", description="Shared secret for caller JWTs")
    allowed_callers: str = Field(default="", description="Comma-separated caller names, empty = any")

    # Server
    port: int = Field(default=8010, description="HTTP port")
    allowed_origins: str = Field(default="", description="Comma-separated CORS origins")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")

    # Service info
    service_name: str = Field(default="gateway-service")
    service_version: str = Field(default="0.1.0")

    # Catalogs
    catalog_path: str = Field(default="config/catalogs", description="YAML file or directory")
    prewarm: bool = Field(default=True, description="Start prewarm backends at startup")

    # Backend lifecycle
    idle_timeout_seconds: float = Field(default=300.0, gt=0)
    reaper_interval_seconds: float = Field(default=15.0, gt=0)
    default_timeout_seconds: float = Field(default=60.0, gt=0)
    start_attempts: int = Field(default=3, ge=1)
    probe_attempts: int = Field(default=5, ge=1)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    backoff_initial_seconds: float = Field(default=0.25, ge=0)
    backoff_max_seconds: float = Field(default=4.0, ge=0)
    stop_timeout_seconds: float = Field(default=5.0, gt=0)

    # Runtime
    docker_binary: str = Field(default="docker")

    # Secrets
    secrets_dir: str = Field(default="/run/secrets")
    secret_env_prefix: str = Field(default="TOOLGATE_SECRET_")

    @property
    def allowed_caller_list(self) -> list[str] | None:
        callers = [c.strip() for c in self.allowed_callers.split(",") if c.strip()]
        return callers or None

    @property
    def allowed_origin_list(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
