"""
Shared configuration management for the Feed Reader Access Layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="READER_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Rate limiting
    rate_limit_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    rate_limit_key_prefix: str = Field(default="rate_limit")

    # Global bucket, charged by every proxied request (GET 1 token, mutations 3)
    global_rate_limit_capacity: float = Field(default=100, gt=0)
    global_rate_limit_refill_per_second: float = Field(default=1.0, gt=0)
    global_rate_limit_get_cost: float = Field(default=1, ge=0)
    global_rate_limit_post_cost: float = Field(default=3, ge=0)

    # Public procedure bucket: 50 calls, one token back per minute
    public_rate_limit_capacity: float = Field(default=50, gt=0)
    public_rate_limit_refill_interval_seconds: float = Field(default=60, gt=0)

    # Bucket registry bounds for the in-memory backend
    rate_limit_max_keys: Optional[int] = Field(default=100_000, gt=0)
    rate_limit_idle_ttl_seconds: Optional[float] = Field(default=3600, gt=0)
    rate_limit_sweep_interval_seconds: float = Field(default=300, gt=0)

    # Client identity
    dev_client_ip: Optional[str] = Field(default="8.8.8.8")


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
