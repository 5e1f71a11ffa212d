"""Configuration for the relay service."""

from .settings import (
    CacheConfig,
    FeedConfig,
    HealthConfig,
    LoggingConfig,
    MetricsConfig,
    RedisConfig,
    RelaySettings,
    load_settings,
)

__all__ = [
    "CacheConfig",
    "FeedConfig",
    "HealthConfig",
    "LoggingConfig",
    "MetricsConfig",
    "RedisConfig",
    "RelaySettings",
    "load_settings",
]
