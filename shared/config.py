"""
Shared configuration management for the Service Map caching proxy.
"""

from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROXY_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    log_format: str = Field(default="json")

    # Upstream API
    upstream_base_url: str = Field(default="https://api.hel.fi/servicemap/v2/")
    upstream_user_agent: str = Field(default="Outdoors-Sports-Map-Backend/1.0")
    upstream_timeouts: Dict[str, float] = Field(
        default_factory=lambda: {"service": 10.0, "unit": 15.0, "announcement": 10.0}
    )
    upstream_default_timeout: float = Field(default=10.0)

    # Cache tiers, e.g. PROXY_CACHE_TIERS='{"unit": {"fresh_ttl": 300, "stale_ttl": 86400}}'
    cache_tiers: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    cache_single_flight: bool = Field(default=True)
    cache_sweep_interval_seconds: float = Field(default=300.0)

    # Rate limiting (uncached requests only)
    rate_limit_max_requests: int = Field(default=10)
    rate_limit_window_seconds: float = Field(default=60.0)
    trust_proxy_headers: bool = Field(default=False)

    # HTTP
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int = 3001
    host: str = "0.0.0.0"


def get_config(service_name: str, port: Optional[int] = None) -> ServiceConfig:
    """Get configuration for a specific service."""
    if port is None:
        return ServiceConfig(service_name=service_name)
    return ServiceConfig(service_name=service_name, port=port)
