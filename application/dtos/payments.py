"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.types import condecimal


class CheckoutItem(BaseModel):
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: condecimal(ge=0) = Field(validation_alias=AliasChoices("unit_price", "price"))  # type: ignore[valid-type]
    id: Optional[str] = None
    description: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("item name must not be blank")
        return v


class CreateCheckout(BaseModel):
    machine_id: str = Field(min_length=1)
    items: list[CheckoutItem] = Field(min_length=1)
    # Older machine firmware still sends vending_transaction_id
    transaction_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transaction_id", "vending_transaction_id"),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("machine_id", "transaction_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class BackUrls(BaseModel):
    success: str
    failure: str
    pending: str


class CheckoutSessionRequest(BaseModel):
    """What the gateway needs to open a hosted checkout page."""

    items: list[CheckoutItem]
    external_reference: str
    notification_url: Optional[str] = None
    back_urls: Optional[BackUrls] = None
    auto_return: Optional[str] = "approved"
    metadata: dict[str, Any] = Field(default_factory=dict)
    machine_id: Optional[str] = None


class CheckoutSession(BaseModel):
    session_id: str
    pay_url: Optional[str] = None
    sandbox_pay_url: Optional[str] = None


class CheckoutCreated(BaseModel):
    transaction_id: str
    session_id: str
    pay_url: Optional[str] = None
    sandbox_pay_url: Optional[str] = None


class GatewayPayment(BaseModel):
    """Authoritative payment facts fetched from the gateway by payment id.

    ``status`` is already mapped onto the internal vocabulary; the gateway's
    own value is kept in ``raw_status``.
    """

    id: str
    status: str
    raw_status: Optional[str] = None
    status_detail: Optional[str] = None
    external_reference: Optional[str] = None
    preference_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    items: list[dict[str, Any]] = Field(default_factory=list)
    date_created: Optional[datetime] = None

    @property
    def machine_id(self) -> Optional[str]:
        value = (self.metadata or {}).get("machine_id")
        return str(value) if value else None


class WebhookNotification(BaseModel):
    """Inbound gateway poke. Only ``kind == "payment"`` is meaningful."""

    kind: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_request(cls, query: dict[str, Any], body: Any) -> "WebhookNotification":
        body = body if isinstance(body, dict) else {}
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        kind = body.get("type") or query.get("type") or query.get("topic") or body.get("topic")
        payment_id = data.get("id") or query.get("data.id") or query.get("id")
        return cls(
            kind=str(kind) if kind else None,
            gateway_payment_id=str(payment_id) if payment_id else None,
            raw={"query": dict(query), "body": body},
        )

    @property
    def is_payment(self) -> bool:
        return (self.kind or "").lower() == "payment" and bool(self.gateway_payment_id)


class WebhookOutcome(str, Enum):
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"
    UNCORRELATED = "uncorrelated"
    DROPPED = "dropped"
    CREATED = "created"
    UPDATED = "updated"
    OVERWRITTEN = "overwritten"
    UNCHANGED = "unchanged"
    STALE = "stale"
    STORE_ERROR = "store_error"
    FAILED = "failed"


class WebhookAck(BaseModel):
    """Always a success signal to the gateway; outcome is for logs and tests."""

    outcome: WebhookOutcome
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    dispense_notified: bool = False


class TransactionStatusView(BaseModel):
    transaction_id: str
    status: str
    machine_id: Optional[str] = None
