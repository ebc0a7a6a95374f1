"""
Transaction domain events.

Dataclass events record state changes produced by webhook reconciliation,
consumed by the push sink. Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid

from .entity import TransactionStatus


@dataclass
class TransactionEvent:
    transaction_id: str
    machine_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class TransactionStateChanged(TransactionEvent):
    status: TransactionStatus = TransactionStatus.PENDING
    previous_status: Optional[TransactionStatus] = None
    gateway_payment_id: Optional[str] = None


@dataclass
class PaymentApproved(TransactionEvent):
    gateway_payment_id: Optional[str] = None
