"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class PledgeConfig(BaseSettings):
    """Pledge loan engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_url: str = "sqlite:///pledge_core.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8091
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "INR"
    days_in_year: int = 365
    interest_calculation_precision: int = 6  # places kept before rounding to paise
    apply_min_days_to_first_period: bool = True
    loan_number_prefix: str = "GL"
    receipt_number_prefix: str = "RC"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "PLEDGE_"
        env_file = ".env"
        case_sensitive = False

    @property
    def sqlite_path(self) -> str:
        """Filesystem path from a sqlite:/// URL"""
        prefix = "sqlite:///"
        if self.database_url.startswith(prefix):
            return self.database_url[len(prefix):] or ":memory:"
        return self.database_url


# Global configuration instance
config = PledgeConfig()


def get_config() -> PledgeConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> PledgeConfig:
    """Reload configuration from environment"""
    global config
    config = PledgeConfig()
    return config
