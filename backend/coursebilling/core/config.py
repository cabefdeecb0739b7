"""
Configuration management using Pydantic settings.
Supports environment variables, .env files, and YAML configuration.
"""

import os
import logging
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Environment(str, Enum):
    """Application environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseConfig(BaseSettings):
    """Database configuration."""
    model_config = SettingsConfigDict(env_prefix="DB_", extra="ignore")

    url: str = "sqlite:///coursebilling.db"
    echo: bool = False
    pool_size: int = 10
    timeout_seconds: float = 10.0

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class LoggingConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: LogLevel = LogLevel.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    json_format: bool = False
    file_path: Optional[str] = None
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5


class SecurityConfig(BaseSettings):
    """Security configuration."""
    model_config = SettingsConfigDict(env_prefix="SECURITY_", extra="ignore")

    secret_key: str
    encryption_salt: str = "coursebilling-instrument-tokens"

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if len(v) < 32:
            raise ValueError("Secret key must be at least 32 characters long")
        return v


class BillingConfig(BaseSettings):
    """Subscription billing configuration."""
    model_config = SettingsConfigDict(env_prefix="BILLING_", extra="ignore")

    trial_days: int = 7
    grace_period_days: int = 3
    renewal_interval_seconds: float = 3600.0
    renewal_concurrency: int = 5
    pending_transaction_ttl_minutes: int = 60
    past_due_expiry_days: Optional[int] = None
    retry_past_due: bool = False
    scheduler_enabled: bool = True

    @field_validator("renewal_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Renewal concurrency must be at least 1")
        return v


class GatewayConfig(BaseSettings):
    """Payment gateway configuration."""
    model_config = SettingsConfigDict(env_prefix="GATEWAY_", extra="ignore")

    card_base_url: str = "https://api.stripe.com/v1"
    card_secret_key: Optional[str] = None
    card_currency: str = "USD"
    regional_base_url: str = "https://api.xendit.co"
    regional_secret_key: Optional[str] = None
    regional_currency: str = "IDR"
    # Per HTTP attempt; a whole call may retry up to max_retries times
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


class WebhookConfig(BaseSettings):
    """Webhook ingestion configuration."""
    model_config = SettingsConfigDict(env_prefix="WEBHOOK_", extra="ignore")

    secret: Optional[str] = None
    signature_header: str = "X-Callback-Signature"
    retention_days: int = 90


class NotificationConfig(BaseSettings):
    """Push notification configuration."""
    model_config = SettingsConfigDict(env_prefix="NOTIFY_", extra="ignore")

    push_url: Optional[str] = None
    push_api_key: Optional[str] = None
    timeout_seconds: float = 10.0
    event_bus_workers: int = 2
    event_queue_size: int = 10_000


class APIConfig(BaseSettings):
    """API configuration."""
    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")

    title: str = "Course Billing API"
    version: str = "1.0.0"
    description: str = "Subscription billing and payment reconciliation for the course marketplace"
    docs_url: str = "/docs"
    prefix: str = "/api"
    host: str = "0.0.0.0"
    port: int = 8000


class Config(BaseSettings):
    """Main application configuration."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Core
    app_name: str = "coursebilling"
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # Components
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        if isinstance(v, str):
            return v.lower()
        return v

    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION


def _read_yaml(config_file: str) -> Dict[str, Any]:
    if not os.path.exists(config_file):
        raise ConfigurationError(f"Config file {config_file} does not exist", config_key="config_file")
    try:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Config file {config_file} is not valid YAML: {e}", config_key="config_file") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must hold a mapping", config_key="config_file")
    return data


@lru_cache()
def get_config(config_file: Optional[str] = None) -> Config:
    """
    Get cached configuration instance.

    Values from the YAML file win over environment variables for the sections
    they name.

    Args:
        config_file: Optional path to YAML configuration file

    Returns:
        Config instance

    Raises:
        ConfigurationError: If the named file is missing or unreadable
    """
    config_data = _read_yaml(config_file) if config_file else {}
    if config_file:
        logger.info(f"Loaded configuration from {config_file}")

    config = Config(**config_data)

    logger.info(f"Configuration loaded for {config.app_name} in {config.environment.value} environment")
    return config


def load_config(config_file: Optional[str] = None) -> Config:
    """Reload configuration, dropping the cached instance."""
    get_config.cache_clear()
    return get_config(config_file)
