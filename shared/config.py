"""
Shared configuration management for the MCP Hub gateway.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="HUB_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External store
    redis_url: str = Field(default="redis://localhost:6379/0")

    # HTTP surface
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class HubConfig(BaseConfig):
    """Every TTL, limit and timeout used by the hub components."""

    service_name: str = "hub"
    host: str = "0.0.0.0"
    port: int = 8787

    # Cache layer
    cache_store_ttl_buffer_seconds: int = Field(default=60, ge=0)

    # Registry store
    registry_source_url: str = Field(
        default="https://raw.githubusercontent.com/mcp-hub/registry/main/servers.json"
    )
    registry_source_timeout_seconds: float = Field(default=10.0, gt=0)
    registry_cache_ttl_seconds: int = Field(default=300, gt=0)

    # Health monitor
    health_probe_timeout_seconds: float = Field(default=30.0, gt=0)
    health_degraded_threshold_seconds: float = Field(default=10.0, gt=0)
    health_max_concurrency: int = Field(default=10, ge=1)
    health_check_interval_seconds: int = Field(default=300, gt=0)
    health_sweep_enabled: bool = False

    # Schema federator
    schema_path: str = "/schema"
    schema_fetch_timeout_seconds: float = Field(default=15.0, gt=0)
    schema_max_bytes: int = Field(default=1024 * 1024, gt=0)
    schema_cache_ttl_seconds: int = Field(default=3600, gt=0)

    # Proxy gateway
    proxy_timeout_seconds: float = Field(default=30.0, gt=0)
    proxy_max_body_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    proxy_log_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, gt=0)
    proxy_stats_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, gt=0)
    proxy_log_header_max_chars: int = Field(default=256, gt=0)

    # Rate limiting
    rate_limit_window_seconds: int = Field(default=60, gt=0)
    rate_limit_max_requests: int = Field(default=100, gt=0)
    rate_limit_store_buffer_seconds: int = Field(default=60, ge=0)

    @property
    def health_result_ttl_seconds(self) -> int:
        """Results outlive one polling interval so the last known state stays visible."""
        return self.health_check_interval_seconds * 2


@lru_cache()
def get_config() -> HubConfig:
    """Get the process-wide hub configuration."""
    return HubConfig()
