"""
Configuration management for ExitPilot.

Loads configuration from YAML files and environment variables.
Environment variables take precedence over YAML config.
"""

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SolanaConfig(BaseSettings):
    """Solana RPC configuration."""

    rpc_url: str = "https://api.mainnet-beta.solana.com"
    commitment: str = "confirmed"
    confirm_timeout_seconds: float = 90.0
    confirm_poll_interval_seconds: float = 1.0
    request_timeout_seconds: float = 30.0


class JupiterConfig(BaseSettings):
    """Jupiter aggregator configuration."""

    base_url: str = "https://lite-api.jup.ag"
    restrict_intermediate_tokens: bool = True
    dynamic_slippage: bool = True
    request_timeout_seconds: float = 30.0


class RaydiumConfig(BaseSettings):
    """Raydium trade API configuration."""

    base_url: str = "https://transaction-v1.raydium.io"
    api_url: str = "https://api-v3.raydium.io"
    priority_level: str = "h"
    request_timeout_seconds: float = 30.0

    @field_validator("priority_level")
    @classmethod
    def validate_priority_level(cls, v: str) -> str:
        """Validate priority fee level."""
        allowed = {"vh", "h", "m"}
        if v not in allowed:
            raise ValueError(f"priority_level must be one of {allowed}")
        return v


class DispatcherConfig(BaseSettings):
    """Fallback dispatcher configuration."""

    provider_order: list[str] = Field(default_factory=lambda: ["jupiter", "raydium"])
    enable_fallback: bool = True
    default_slippage_bps: int = 50
    min_call_interval_seconds: float = 0.5
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_timeout_seconds: float = 60.0

    @field_validator("provider_order", mode="before")
    @classmethod
    def parse_provider_order(cls, v: Any) -> list[str]:
        """Parse provider order from a list, JSON array or comma-separated string."""
        if isinstance(v, str):
            try:
                parsed = json.loads(v)
                if isinstance(parsed, list):
                    return [str(p).lower() for p in parsed]
            except (json.JSONDecodeError, TypeError):
                pass
            return [p.strip().lower() for p in v.split(",") if p.strip()]
        return [str(p).lower() for p in v]


class MonitorConfig(BaseSettings):
    """Position monitor loop configuration."""

    enabled: bool = True
    interval_seconds: float = 1.0
    max_concurrency: int = 4
    max_position_errors: int = 3


class DiscoveryConfig(BaseSettings):
    """Discovery loop configuration."""

    enabled: bool = True
    interval_seconds: float = 10.0
    rule_refresh_interval_seconds: float = 300.0
    initial_lookback_minutes: int = 60
    scan_balances: bool = True


class PriceConfig(BaseSettings):
    """Price source configuration."""

    jupiter_url: str = "https://lite-api.jup.ag"
    dexscreener_url: str = "https://api.dexscreener.com"
    cache_ttl_seconds: float = 5.0
    request_timeout_seconds: float = 10.0


class APIConfig(BaseSettings):
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    start_scheduler: bool = True


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    include_timestamp: bool = True


class Settings(BaseSettings):
    """
    Main settings class for ExitPilot.

    Settings are loaded from:
    1. Default values
    2. config/config.yaml
    3. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development")

    # GCP
    gcp_project_id: str = Field(default="")

    # Owner id -> base58 encoded secret key
    wallet_keys: dict[str, str] = Field(default_factory=dict)

    # Nested configs
    solana: SolanaConfig = Field(default_factory=SolanaConfig)
    jupiter: JupiterConfig = Field(default_factory=JupiterConfig)
    raydium: RaydiumConfig = Field(default_factory=RaydiumConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    price: PriceConfig = Field(default_factory=PriceConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test mode."""
        return self.environment == "test"


def load_yaml_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to config/config.yaml

    Returns:
        Dictionary with configuration values
    """
    if config_path is None:
        possible_paths = [
            Path("config/config.yaml"),
            Path("../config/config.yaml"),
            Path(__file__).parent.parent / "config" / "config.yaml",
        ]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return {}

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def flatten_dict(d: dict[str, Any], parent_key: str = "", sep: str = "__") -> dict[str, Any]:
    """
    Flatten a nested dictionary for environment variable style keys.

    Mappings under ``wallet_keys`` are kept whole since their keys are
    owner ids rather than settings fields.

    Args:
        d: Dictionary to flatten
        parent_key: Parent key prefix
        sep: Separator between keys

    Returns:
        Flattened dictionary
    """
    items: list[tuple[str, Any]] = []
    for k, v in d.items():
        new_key = f"{parent_key}{sep}{k}" if parent_key else k
        if isinstance(v, dict) and k != "wallet_keys":
            items.extend(flatten_dict(v, new_key, sep).items())
        else:
            items.append((new_key, v))
    return dict(items)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Settings are loaded once and cached for performance.

    Returns:
        Settings instance
    """
    yaml_config = load_yaml_config()
    flat_config = flatten_dict(yaml_config)
    env_style_config = {k.upper(): v for k, v in flat_config.items()}

    # Set as environment variables (only if not already set)
    for key, value in env_style_config.items():
        if key not in os.environ and value is not None:
            if isinstance(value, (list, dict)):
                os.environ[key] = json.dumps(value)
            elif isinstance(value, bool):
                os.environ[key] = str(value).lower()
            else:
                os.environ[key] = str(value)

    return Settings()


def reset_settings() -> None:
    """Reset cached settings. Useful for testing."""
    get_settings.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog from the logging settings.

    Args:
        settings: Settings instance. If None, loads from environment.
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.logging.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
    ]
    if settings.logging.include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso", utc=True))
    processors.append(structlog.processors.format_exc_info)

    if settings.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
