"""
Configuration Management Module

Provides environment-based configuration using pydantic-settings. Components never
read configuration globally: the gateway adapter and the reminder sweep receive the
immutable settings structs built here at construction time.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class GatewaySettings:
    """Credentials and transport limits for the external payment gateway"""
    base_url: str
    api_key: str
    secret_key: str
    merchant_id: str
    integration_id: int
    currency: str = "EGP"
    timeout_seconds: float = 10.0
    auth_retries: int = 3
    auth_backoff_seconds: float = 0.5
    token_ttl_seconds: int = 3000


@dataclass(frozen=True)
class ReminderSettings:
    """Reminder thresholds (days before due date) and sweep cadence"""
    thresholds_days: Tuple[int, ...] = (7, 2, 1)
    lookahead_days: int = 7
    sweep_interval_seconds: int = 3600


class BillingConfig(BaseSettings):
    """Contract billing engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "contract_billing.db"

    # Gateway configuration
    gateway_base_url: str = "https://accept.paymob.com/api"
    gateway_api_key: str = ""
    gateway_secret_key: str = ""
    gateway_merchant_id: str = ""
    gateway_integration_id: int = 0
    gateway_currency: str = "EGP"
    gateway_timeout: float = 10.0
    gateway_auth_retries: int = 3
    gateway_auth_backoff: float = 0.5
    gateway_token_ttl_seconds: int = 3000

    # Reminder sweep configuration
    reminder_thresholds: List[int] = [7, 2, 1]
    reminder_lookahead_days: int = 7
    sweep_interval_seconds: int = 3600

    # Contract lifecycle configuration
    contract_validity_days: int = 30
    default_currency: str = "EGP"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None

    class Config:
        env_prefix = "BILLING_"
        env_file = ".env"
        case_sensitive = False

    def gateway_settings(self) -> GatewaySettings:
        """Build the gateway settings struct injected into the adapter"""
        return GatewaySettings(
            base_url=self.gateway_base_url,
            api_key=self.gateway_api_key,
            secret_key=self.gateway_secret_key,
            merchant_id=self.gateway_merchant_id,
            integration_id=self.gateway_integration_id,
            currency=self.gateway_currency,
            timeout_seconds=self.gateway_timeout,
            auth_retries=self.gateway_auth_retries,
            auth_backoff_seconds=self.gateway_auth_backoff,
            token_ttl_seconds=self.gateway_token_ttl_seconds
        )

    def reminder_settings(self) -> ReminderSettings:
        """Build the reminder settings struct injected into the sweep"""
        thresholds = tuple(sorted(set(self.reminder_thresholds), reverse=True))
        return ReminderSettings(
            thresholds_days=thresholds,
            lookahead_days=max(self.reminder_lookahead_days, max(thresholds, default=0)),
            sweep_interval_seconds=self.sweep_interval_seconds
        )


def load_config(**overrides) -> BillingConfig:
    """Load configuration from the environment, applying explicit overrides"""
    return BillingConfig(**overrides)
