"""
Shared configuration management for the Entitlement Platform.
"""

from typing import Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENTS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=2.0)
    postgres_dsn: str = Field(default="postgres://localhost:5432/entitlements")
    db_pool_min_size: int = Field(default=1)
    db_pool_max_size: int = Field(default=5)
    db_command_timeout: float = Field(default=10.0)
    db_auto_migrate: bool = Field(default=True)

    # Payment provider
    stripe_webhook_secret: Optional[str] = Field(default=None)
    stripe_signature_tolerance: int = Field(default=300)

    # Cache
    entitlement_cache_ttl: int = Field(default=60)
    usage_counter_ttl: int = Field(default=300)

    # Entitlement defaults
    usage_reset_period_days: int = Field(default=30)
    default_soft_limit_percent: float = Field(default=0.1)

    # Idempotency ledger
    ledger_retention_days: int = Field(default=90)
    webhook_stats_window_hours: int = Field(default=24)

    # Rate limiting
    rate_limit_tier: str = Field(default="free")
    rate_limits_file: Optional[str] = Field(default=None)

    # Security
    internal_api_key: Optional[str] = Field(default=None)
    jwt_secret: Optional[str] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    # Local development only: read `sub` from Bearer tokens without checking the signature
    jwt_trust_unverified: bool = Field(default=False)


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


def load_rate_limit_tiers(path: Optional[str]) -> Dict[str, Dict[str, int]]:
    """Load rate limit tier overrides from a YAML file.

    The file maps tier names to ``requests`` and ``window_ms``::

        tiers:
          free: {requests: 100, window_ms: 60000}
    """
    if not path:
        return {}

    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    tiers = data.get("tiers", data)
    return {
        name: {
            "requests": int(limits["requests"]),
            "window_ms": int(limits.get("window_ms", 60000)),
        }
        for name, limits in tiers.items()
    }
