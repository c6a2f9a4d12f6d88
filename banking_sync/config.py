"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class SyncConfig(BaseSettings):
    """Authority service and device configuration"""

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    cors_origins: str = "*"  # Comma separated

    # OTP configuration
    otp_length: int = 6
    otp_expiry_seconds: int = 600  # 10 minutes
    otp_max_attempts: int = 5
    otp_dev_log_codes: bool = True  # Write issued codes to the log so delivery failures are recoverable
    otp_sweep_interval_seconds: int = 0  # 0 = expire lazily on access only

    # Notifier configuration
    notifier_provider: str = "log"  # log, sendgrid, webhook
    notifier_timeout: float = 10.0
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = ""
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    notifier_webhook_url: str = ""
    otp_email_subject: str = "Your verification code"

    # Authority durability
    storage_url: str = "sqlite:///banking_sync.db"
    flush_interval_seconds: float = 30.0

    # Device configuration
    authority_url: str = "http://localhost:3001"
    client_timeout: float = 5.0
    profile_poll_seconds: float = 10.0
    policy_poll_seconds: float = 10.0
    registry_poll_seconds: float = 15.0
    transactions_poll_seconds: float = 10.0
    client_cache_url: str = "sqlite:///device_cache.db"

    # Session tokens
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    access_token_minutes: int = 15
    refresh_token_days: int = 7

    # Transfers
    cross_border_fee_rate: str = "0.01"  # Decimal as string

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "BANKSYNC_"
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origin_list(self) -> list:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


# Global configuration instance
config = SyncConfig()


def get_config() -> SyncConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SyncConfig:
    """Reload configuration from environment"""
    global config
    config = SyncConfig()
    return config
