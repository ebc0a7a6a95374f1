"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway credentials can be loaded
and rotated independently, e.g. `PAYMENT__MERCADOPAGO__ACCESS_TOKEN=...`.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 4.0
    write: float = 4.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2
    deadline: float = 8.0  # No retry starts after this many seconds


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks
    secret: Optional[str] = None  # Enables x-signature HMAC verification when set


class MercadoPagoSettings(BaseModel):
    access_token: Optional[str] = None
    sandbox: bool = False
    api_base: str = "https://api.mercadopago.com"
    currency_id: str = "MXN"
    statement_descriptor: Optional[str] = None


class PaymentSettings(BaseSettings):
    default_provider: str = Field(default="mercadopago")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    mercadopago: MercadoPagoSettings = Field(default_factory=MercadoPagoSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
