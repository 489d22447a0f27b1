"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Retry policy and notification settings are durable records, not env settings.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Set

from .currency import Currency


def _split_csv(value: str) -> Set[str]:
    return {item.strip().upper() for item in value.split(",") if item.strip()}


class EngineConfig(BaseSettings):
    """Installment engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="HP_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///hire_purchase.db"  # "memory://" for in-memory

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules
    currency: str = "GHS"
    payment_networks: str = "MTN,VODAFONE,TELECEL,AIRTELTIGO"
    mandate_networks: str = "MTN,VODAFONE,TELECEL"  # direct debit is a strict subset
    mandate_verification_minutes: int = Field(30, ge=1)
    mandate_validity_days: int = Field(365, ge=1)
    default_threshold_days: int = Field(30, ge=0)

    # Payment gateway
    gateway_base_url: str = ""  # Empty = MockGateway
    gateway_api_key: str = ""
    gateway_timeout: float = Field(10.0, gt=0)

    # Notifications
    sms_api_url: str = ""  # Empty = log only
    sms_api_key: str = ""
    sms_sender_id: str = "HirePurchase"
    admin_webhook_url: str = ""
    admin_recipient_id: str = "admin"

    # Caller-side status polling
    poll_interval_seconds: float = Field(2.0, gt=0)
    poll_timeout_seconds: float = Field(120.0, ge=0)

    @property
    def currency_enum(self) -> Currency:
        return Currency[self.currency.upper()]

    @property
    def payment_network_set(self) -> Set[str]:
        return _split_csv(self.payment_networks)

    @property
    def mandate_network_set(self) -> Set[str]:
        return _split_csv(self.mandate_networks)

    @property
    def sqlite_path(self) -> Optional[str]:
        """File path for sqlite:/// URLs, None for in-memory storage"""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[len("sqlite:///"):] or ":memory:"
        return None


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
