"""Configuration settings using Pydantic for validation."""

from typing import Any, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re

from ..exceptions import ConfigurationError


class FeedConfig(BaseModel):
    """Polymarket CLOB WebSocket configuration."""
    ws_url: str = Field(
        default="wss://ws-subscriptions-clob.polymarket.com/ws/market",
        description="Market channel WebSocket URL"
    )
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0, description="Ping interval while connected")
    pong_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Close the socket when a pong is not received in time (disabled when unset)"
    )
    reconnect_delay_seconds: float = Field(default=5.0, ge=0, description="Constant delay between reconnects")
    max_reconnect_attempts: int = Field(default=10, ge=0, description="Consecutive reconnects before giving up")
    open_timeout_seconds: float = Field(default=10.0, gt=0, description="WebSocket opening handshake timeout")
    close_timeout_seconds: float = Field(default=10.0, gt=0, description="WebSocket closing handshake timeout")
    max_message_size: int = Field(default=2**22, description="Maximum inbound frame size in bytes")


class RedisConfig(BaseModel):
    """Redis connection secrets and socket options."""
    url: str = Field(..., description="Redis connection URL (redis:// or rediss://)")
    token: str = Field(..., description="Redis password / access token")
    socket_timeout: float = Field(default=5.0, description="Socket read/write timeout")
    socket_connect_timeout: float = Field(default=5.0, description="Socket connect timeout")
    health_check_interval: int = Field(default=30, description="Connection health check interval")

    @field_validator('url', 'token')
    @classmethod
    def require_non_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class CacheConfig(BaseModel):
    """Redis key layout and retention limits."""
    subscriptions_key: str = Field(default="ws-subscriptions", description="Control set of desired tokens")
    orderbook_key_prefix: str = Field(default="orderbook", description="Hash key prefix for order books")
    price_key_prefix: str = Field(default="price", description="Hash key prefix for price quotes")
    trades_key_prefix: str = Field(default="trades", description="List key prefix for trades")
    orderbook_ttl_seconds: int = Field(default=60, gt=0, description="Order book expiry")
    price_ttl_seconds: int = Field(default=60, gt=0, description="Price quote expiry")
    max_depth_levels: int = Field(default=10, gt=0, description="Levels kept per book side")
    max_trades: int = Field(default=100, gt=0, description="Trades kept per token")
    reconcile_interval_seconds: float = Field(default=10.0, gt=0, description="Subscription poll interval")


class HealthConfig(BaseModel):
    """Health check service configuration."""
    enabled: bool = Field(default=True, description="Start the health check server")
    port: int = Field(default=8080, description="Health check server port")
    host: str = Field(default="0.0.0.0", description="Health check server host")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class MetricsConfig(BaseModel):
    """Metrics configuration."""
    enable_prometheus: bool = Field(default=True, description="Enable Prometheus metrics")
    prometheus_port: int = Field(default=8081, description="Prometheus metrics port")


class RelaySettings(BaseSettings):
    """Main relay service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="clob-relay", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")

    # Component configurations
    feed: FeedConfig = Field(default_factory=FeedConfig)
    redis: RedisConfig
    cache: CacheConfig = Field(default_factory=CacheConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ['local', 'dev', 'prod']:
            raise ValueError("Environment must be 'local', 'dev', or 'prod'")
        return v


_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')


def _resolve_env(match: "re.Match[str]") -> str:
    name, default = match.group(1).strip(), match.group(2)
    value = os.getenv(name, default)
    if value is None:
        raise ConfigurationError(f"Required environment variable '{name}' is not set")
    return value


def substitute_env_vars(obj: Any) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in every string of a loaded YAML tree."""
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    if isinstance(obj, str):
        return _ENV_PATTERN.sub(_resolve_env, obj)
    return obj


def load_settings(config_file: Optional[str] = None) -> RelaySettings:
    """
    Load settings from config file and environment variables.

    The config file supports environment variable substitution using ${VAR_NAME} syntax.
    Values from the config file take precedence over plain environment variables.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        RelaySettings: Validated configuration object

    Raises:
        ConfigurationError: If the file is missing, a required variable is unset,
            or validation fails (including missing Redis secrets)
    """
    config_data = {}

    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)

    elif config_file:
        raise ConfigurationError(f"Configuration file not found: {config_file}")

    try:
        return RelaySettings(**config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
