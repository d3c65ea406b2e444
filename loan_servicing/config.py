"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class ServicingConfig(BaseSettings):
    """Loan servicing core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_SERVICING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # memory://, sqlite:///path, postgresql://...
    sqlite_busy_timeout_seconds: float = 30.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: str = "*"  # Comma-separated list of allowed origins

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules configuration
    default_currency: str = "USD"
    loan_number_max_attempts: int = 5
    loan_number_backoff_seconds: float = 0.05  # Base delay, doubled per attempt plus jitter
    payoff_quote_valid_days: int = 10
    portal_history_limit: int = 50

    # Feature flags
    enable_audit_logging: bool = True
    enforce_plan_limits: bool = True


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
