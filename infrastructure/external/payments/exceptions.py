"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import PaymentGatewayError
from shared.codes.payment_codes import PaymentCode


class PaymentProviderError(PaymentGatewayError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        http_status: int | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code, "http_status": http_status}
        if details:
            full_details.update(details)
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_ERROR,
            error_type="PaymentProviderError",
            details=full_details,
        )


class PaymentRecoverableError(PaymentGatewayError):
    """Rate limited or 5xx after retries; safe to try again later."""

    def __init__(self, message: str, *, provider: str, http_status: int | None = None, details: Optional[dict] = None):
        full_details = {"provider": provider, "http_status": http_status}
        if details:
            full_details.update(details)
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_RECOVERABLE,
            error_type="PaymentRecoverableError",
            details=full_details,
        )


class PaymentTimeoutError(PaymentGatewayError):
    def __init__(self, message: str, *, provider: str, operation: str):
        super().__init__(
            message,
            code=PaymentCode.TIMEOUT,
            error_type="PaymentTimeoutError",
            details={"provider": provider, "operation": operation},
        )


class PaymentSignatureError(PaymentGatewayError):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            message,
            code=PaymentCode.SIGNATURE_ERROR,
            error_type="PaymentSignatureError",
            details=full_details,
        )
