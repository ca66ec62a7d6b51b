"""
Shared configuration management for the VMetrics Access Layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="VMETRICS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # RedTrack upstream
    redtrack_base_url: str = Field(default="https://api.redtrack.io")
    redtrack_user_agent: str = Field(default="TrackView-Dashboard/1.0")
    redtrack_timeout_seconds: float = Field(default=30.0, gt=0)

    # Fetch queue
    redtrack_min_interval_seconds: float = Field(default=5.0, ge=0)
    redtrack_rate_limit_cooldown_seconds: float = Field(default=10.0, ge=0)
    redtrack_cache_ttl_seconds: float = Field(default=300.0, ge=0)
    redtrack_raise_on_rate_limit: bool = Field(default=False)

    # Observability
    enable_metrics: bool = Field(default=True)

    # CORS (the dashboard frontend is served from another origin)
    cors_allow_origins: Optional[str] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
