"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class TransactionConflictException(BusinessException):
    """A live record already exists for the transaction id."""

    def __init__(self, transaction_id: str):
        super().__init__(
            code=PaymentCode.TRANSACTION_CONFLICT,
            message=f"Transaction {transaction_id} already exists",
            error_type="TransactionConflict",
            details={"transaction_id": transaction_id},
            field="transaction_id",
        )


class TransactionStoreException(BusinessException):
    """Backing store unavailable or failed mid-operation."""

    def __init__(self, message: str, *, operation: str, transaction_id: Optional[str] = None):
        details = {"operation": operation}
        if transaction_id is not None:
            details["transaction_id"] = transaction_id
        super().__init__(
            code=PaymentCode.STORE_UNAVAILABLE,
            message=message,
            error_type="TransactionStoreError",
            details=details,
        )


class PaymentGatewayError(BusinessException):
    """Base for create-session / get-payment failures.

    ``details["detail"]`` holds the human readable cause reported by the
    gateway, when one could be extracted.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "PaymentGatewayError",
        details: Optional[dict] = None,
    ):
        super().__init__(code=code, message=message, error_type=error_type, details=details)


class CorrelationException(BusinessException):
    """A gateway payment cannot be tied to a local transaction."""

    def __init__(self, message: str, *, gateway_payment_id: str, transaction_id: Optional[str] = None):
        details = {"gateway_payment_id": gateway_payment_id}
        if transaction_id is not None:
            details["transaction_id"] = transaction_id
        super().__init__(
            code=BusinessCode.BUSINESS_ERROR,
            message=message,
            error_type="CorrelationError",
            details=details,
        )


class DeliveryException(BusinessException):
    def __init__(self, machine_id: str, reason: str):
        super().__init__(
            code=BusinessCode.NETWORK_ERROR,
            message=f"Push to {machine_id} failed: {reason}",
            error_type="DeliveryError",
            details={"machine_id": machine_id, "reason": reason},
        )
