"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so checkout tuning can be overridden
with PAYMENT__* variables without touching application-level flags.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class GatewaySettings(BaseModel):
    base_url: str = "http://localhost:8000/api/payments"
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class CheckoutSettings(BaseModel):
    # Seconds between two status fetches while a payment is pending/processing
    poll_interval_seconds: float = 3.0
    require_billing_address: bool = False
    require_method_selection: bool = True
    allowed_method_types: list[str] = Field(
        default_factory=lambda: ["credit_card", "debit_card", "digital_wallet"]
    )
    # Fresh intents created automatically when the current one expired mid-submit
    intent_refresh_limit: int = 1


class PaymentSettings(BaseSettings):
    default_provider: str = Field(default="http")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    checkout: CheckoutSettings = Field(default_factory=CheckoutSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
