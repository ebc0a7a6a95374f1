"""
交易领域实体 - 自动售货交易记录聚合根
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


class TransactionStatus(str, Enum):
    """交易状态枚举"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    # Query-time only, never stored
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    TransactionStatus.APPROVED,
    TransactionStatus.REJECTED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})


class MergeOutcome(str, Enum):
    """Result of folding fresh gateway facts into a stored record."""
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    IGNORED_STALE = "ignored_stale"
    OVERWRITTEN = "overwritten"

    @property
    def changed(self) -> bool:
        return self in (MergeOutcome.UPDATED, MergeOutcome.OVERWRITTEN)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return _ensure_utc(value)
    return _ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass
class LineItem:
    """Purchased item. Opaque to reconciliation, carried for display."""

    name: str
    quantity: int
    unit_price: Decimal

    def __post_init__(self):
        try:
            self.unit_price = Decimal(str(self.unit_price))
        except (InvalidOperation, ValueError):
            raise DomainValidationException(f"Invalid unit price: {self.unit_price}", field="unit_price")
        if self.quantity is None or int(self.quantity) <= 0:
            raise DomainValidationException(f"Quantity must be positive: {self.quantity}", field="quantity")
        if self.unit_price < 0:
            raise DomainValidationException(f"Unit price must not be negative: {self.unit_price}", field="unit_price")
        self.quantity = int(self.quantity)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "quantity": self.quantity, "unit_price": str(self.unit_price)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        price = data.get("unit_price", data.get("price", 0))
        return cls(
            name=str(data.get("name") or data.get("title") or ""),
            quantity=data.get("quantity", 1),
            unit_price=Decimal(str(price if price is not None else 0)),
        )


@dataclass
class TransactionRecord:
    """
    交易聚合根 - 从创建到过期的状态

    业务规则：
    1. transaction_id 不可变，且在记录生命周期内唯一
    2. 终态（approved/rejected/cancelled/refunded）之后，非终态更新被忽略
    3. 不同的终态可以覆盖旧终态（网关纠正），记为异常
    4. 出货通知对每个 transaction_id 最多触发一次
    5. 过期时间从创建时刻固定计算，后续更新不延长
    """

    transaction_id: str
    machine_id: Optional[str]
    status: TransactionStatus
    items: list[LineItem] = field(default_factory=list)
    gateway_session_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    status_detail: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    dispense_notified_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.transaction_id:
            raise DomainValidationException("transaction_id is required", field="transaction_id")
        self.status = TransactionStatus(self.status)
        if self.status is TransactionStatus.NOT_FOUND:
            raise DomainValidationException("not_found is not a storable status", field="status")
        self.created_at = _ensure_utc(self.created_at) or utc_now()
        self.updated_at = _ensure_utc(self.updated_at) or self.created_at
        self.expires_at = _ensure_utc(self.expires_at)
        self.dispense_notified_at = _ensure_utc(self.dispense_notified_at)

    # -------------------- factories --------------------
    @classmethod
    def new_pending(
        cls,
        *,
        transaction_id: str,
        machine_id: str,
        items: list[LineItem],
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "TransactionRecord":
        if not machine_id:
            raise DomainValidationException("machine_id is required", field="machine_id")
        if not items:
            raise DomainValidationException("At least one item is required", field="items")
        now = now or utc_now()
        return cls(
            transaction_id=transaction_id,
            machine_id=machine_id,
            status=TransactionStatus.PENDING,
            items=list(items),
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
        )

    @classmethod
    def synthesize(
        cls,
        *,
        transaction_id: str,
        status: TransactionStatus,
        gateway_payment_id: str,
        machine_id: Optional[str] = None,
        items: Optional[list[LineItem]] = None,
        gateway_session_id: Optional[str] = None,
        status_detail: Optional[str] = None,
        created_at: Optional[datetime] = None,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "TransactionRecord":
        """Rebuild a record from a webhook whose pending record never landed or expired."""
        if not TransactionStatus(status).is_terminal:
            raise DomainValidationException(
                f"Cannot synthesize a record from non-terminal status {status}",
                field="status",
            )
        now = now or utc_now()
        return cls(
            transaction_id=transaction_id,
            machine_id=machine_id or None,
            status=status,
            items=list(items or []),
            gateway_session_id=gateway_session_id,
            gateway_payment_id=gateway_payment_id,
            status_detail=status_detail,
            created_at=created_at or now,
            updated_at=now,
            expires_at=now + ttl,
        )

    # -------------------- state --------------------
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def remaining_ttl(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.expires_at is None:
            return None
        return self.expires_at - (now or utc_now())

    def attach_session(self, session_id: str, now: Optional[datetime] = None) -> None:
        self.gateway_session_id = session_id
        self.updated_at = now or utc_now()

    def apply_payment(
        self,
        *,
        status: TransactionStatus,
        gateway_payment_id: str,
        status_detail: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MergeOutcome:
        """Merge authoritative payment facts.

        Terminal status is sticky: a non-terminal report after a terminal one
        is stale and ignored, the same terminal report is a no-op, and only a
        different terminal report overwrites.
        """
        status = TransactionStatus(status)
        if self.is_terminal:
            if status == self.status:
                return MergeOutcome.UNCHANGED
            if not status.is_terminal:
                return MergeOutcome.IGNORED_STALE
            outcome = MergeOutcome.OVERWRITTEN
        else:
            outcome = MergeOutcome.UPDATED
        self.status = status
        self.gateway_payment_id = gateway_payment_id
        self.status_detail = status_detail
        self.updated_at = now or utc_now()
        return outcome

    def claim_dispense(self, now: Optional[datetime] = None) -> bool:
        """Mark the dispense push as owed. True only on the first approved claim."""
        if self.status is not TransactionStatus.APPROVED or not self.machine_id:
            return False
        if self.dispense_notified_at is not None:
            return False
        self.dispense_notified_at = now or utc_now()
        return True

    # -------------------- serialization --------------------
    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "machine_id": self.machine_id,
            "status": self.status.value,
            "items": [i.to_dict() for i in self.items],
            "gateway_session_id": self.gateway_session_id,
            "gateway_payment_id": self.gateway_payment_id,
            "status_detail": self.status_detail,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
            "dispense_notified_at": _iso(self.dispense_notified_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionRecord":
        return cls(
            transaction_id=data["transaction_id"],
            machine_id=data.get("machine_id"),
            status=TransactionStatus(data["status"]),
            items=[LineItem.from_dict(i) for i in data.get("items") or []],
            gateway_session_id=data.get("gateway_session_id"),
            gateway_payment_id=data.get("gateway_payment_id"),
            status_detail=data.get("status_detail"),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            expires_at=_parse_dt(data.get("expires_at")),
            dispense_notified_at=_parse_dt(data.get("dispense_notified_at")),
        )
