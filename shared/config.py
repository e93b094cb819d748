"""
Shared configuration management for the Support Relay.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Streaming sessions
    heartbeat_interval: float = Field(default=30.0, gt=0)
    session_queue_size: int = Field(default=100, gt=0)
    max_sse_connections: int = Field(default=500, gt=0)

    # Plain webhooks
    webhook_secret: Optional[str] = Field(default=None)

    # Side notification channel (e.g. a Slack incoming webhook)
    notification_webhook_url: Optional[str] = Field(default=None)
    notification_timeout: float = Field(default=5.0, gt=0)


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
