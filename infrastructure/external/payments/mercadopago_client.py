"""
Mercado Pago Checkout Pro adapter over the REST API (httpx).

- create_session: POST /checkout/preferences, returns init_point URLs.
- get_payment:    GET  /v1/payments/{id}, the authoritative payment facts.

Errors carry the gateway's human readable cause (first ``cause[]`` entry's
``description``/``message``) in ``details["detail"]``.
"""
from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import httpx

from application.dtos.payments import (
    CheckoutSession,
    CheckoutSessionRequest,
    GatewayPayment,
)
from core.logging_config import get_logger
from core.settings import MercadoPagoSettings, payment_settings
from domain.transaction.entity import TransactionStatus
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentTimeoutError,
)


logger = get_logger(__name__)

_TITLE_MAX = 250
IDEMPOTENCY_HEADER = "X-Idempotency-Key"
_INTERNAL_STATUSES = {s.value for s in TransactionStatus} - {TransactionStatus.NOT_FOUND.value}


class _RetryableStatus(Exception):
    """429/5xx from the gateway; retried, then surfaced as recoverable."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


def extract_error_detail(payload: Any) -> Optional[str]:
    """Pull the most useful human readable message out of an error body."""
    if payload is None:
        return None
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return payload or None
    if isinstance(payload, list):
        payload = {"cause": payload}
    if not isinstance(payload, dict):
        return str(payload)
    causes = payload.get("cause")
    if isinstance(causes, str):
        return extract_error_detail(causes)
    if isinstance(causes, list) and causes:
        first = causes[0]
        if isinstance(first, dict):
            return first.get("description") or first.get("message") or json.dumps(first)
        return str(first)
    if payload.get("message"):
        return str(payload["message"])
    return json.dumps(payload)


def _response_detail(response: httpx.Response) -> Optional[str]:
    try:
        return extract_error_detail(response.json())
    except ValueError:
        return response.text or None


class MercadoPagoClient(BasePaymentClient):
    provider = "mercadopago"

    def __init__(
        self,
        config: Optional[MercadoPagoSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._cfg = config or payment_settings.mercadopago
        if not self._cfg.access_token:
            raise RuntimeError("PAYMENT__MERCADOPAGO__ACCESS_TOKEN not configured")
        super().__init__(
            timeouts=payment_settings.timeouts.model_dump(),
            retry={
                "max": payment_settings.retry.max,
                "base": payment_settings.retry.base_backoff,
                "deadline": payment_settings.retry.deadline,
            },
            transport=transport,
            base_url=self._cfg.api_base.rstrip("/"),
            headers={
                "Authorization": f"Bearer {self._cfg.access_token}",
                "Content-Type": "application/json",
            },
        )

    # -------------------- create --------------------
    def build_preference(self, req: CheckoutSessionRequest) -> dict[str, Any]:
        """Translate a checkout request into a Checkout Pro preference body."""
        machine_id = req.machine_id or req.metadata.get("machine_id")
        items = []
        for item in req.items:
            entry: dict[str, Any] = {
                "title": item.name[:_TITLE_MAX],
                "description": item.description or f"Product from {machine_id or 'vending machine'}",
                "quantity": item.quantity,
                "currency_id": self._cfg.currency_id,
                "unit_price": float(Decimal(item.unit_price)),
            }
            if item.id:
                entry["id"] = item.id
            items.append(entry)

        metadata = dict(req.metadata)
        metadata.setdefault("transaction_id", req.external_reference)
        if machine_id:
            metadata.setdefault("machine_id", machine_id)

        body: dict[str, Any] = {
            "items": items,
            "external_reference": req.external_reference,
            "metadata": metadata,
        }
        if req.notification_url:
            body["notification_url"] = req.notification_url
        if req.back_urls is not None:
            body["back_urls"] = req.back_urls.model_dump()
            # Gateway rejects auto_return without a success back url
            if req.auto_return:
                body["auto_return"] = req.auto_return
        if self._cfg.statement_descriptor:
            body["statement_descriptor"] = self._cfg.statement_descriptor
        return body

    async def create_session(self, req: CheckoutSessionRequest) -> CheckoutSession:
        body = self.build_preference(req)
        # Retried POSTs reuse the key so the gateway creates one preference per transaction
        headers = {IDEMPOTENCY_HEADER: req.external_reference}

        async def _call() -> httpx.Response:
            async with self.client() as c:
                resp = await c.post("/checkout/preferences", json=body, headers=headers)
            if resp.status_code == 429 or resp.status_code >= 500:
                raise _RetryableStatus(resp)
            return resp

        resp = await self._request("create_session", _call, external_reference=req.external_reference)
        if resp.status_code >= 400:
            detail = _response_detail(resp)
            self._log("mp_preference_rejected", status_code=resp.status_code, detail=detail)
            raise PaymentProviderError(
                "Failed to create checkout session",
                provider=self.provider,
                http_status=resp.status_code,
                details={"detail": detail},
            )

        data = resp.json()
        init_point = data.get("init_point")
        sandbox_point = data.get("sandbox_init_point") or init_point
        session = CheckoutSession(
            session_id=str(data["id"]),
            pay_url=sandbox_point if self._cfg.sandbox else init_point,
            sandbox_pay_url=sandbox_point,
        )
        self._log("mp_preference_created", session_id=session.session_id, external_reference=req.external_reference)
        return session

    # -------------------- fetch --------------------
    async def get_payment(self, gateway_payment_id: str) -> Optional[GatewayPayment]:
        async def _call() -> httpx.Response:
            async with self.client() as c:
                resp = await c.get(f"/v1/payments/{gateway_payment_id}")
            if resp.status_code == 429 or resp.status_code >= 500:
                raise _RetryableStatus(resp)
            return resp

        resp = await self._request("get_payment", _call, gateway_payment_id=gateway_payment_id)
        if resp.status_code == 404:
            self._log("mp_payment_not_found", gateway_payment_id=gateway_payment_id)
            return None
        if resp.status_code >= 400:
            detail = _response_detail(resp)
            raise PaymentProviderError(
                "Failed to fetch payment",
                provider=self.provider,
                http_status=resp.status_code,
                details={"detail": detail, "gateway_payment_id": gateway_payment_id},
            )
        return self.parse_payment(resp.json())

    def parse_payment(self, data: dict[str, Any]) -> GatewayPayment:
        raw_status = str(data.get("status") or "")
        status = self._map_status(raw_status)
        if status not in _INTERNAL_STATUSES:
            logger.warning("mp_unknown_status", provider=self.provider, raw_status=raw_status, payment_id=data.get("id"))
            status = TransactionStatus.PENDING.value
        additional = data.get("additional_info") or {}
        created = data.get("date_created")
        return GatewayPayment(
            id=str(data["id"]),
            status=status,
            raw_status=raw_status or None,
            status_detail=data.get("status_detail"),
            external_reference=(str(data["external_reference"]) if data.get("external_reference") else None),
            preference_id=data.get("preference_id"),
            metadata=data.get("metadata") or {},
            items=additional.get("items") or [],
            date_created=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
        )

    # -------------------- plumbing --------------------
    async def _request(self, operation: str, call, **log_ctx) -> httpx.Response:
        try:
            return await self._retry(call, retry_on=(_RetryableStatus,))
        except httpx.TimeoutException as exc:
            logger.error("mp_request_timeout", operation=operation, **log_ctx)
            raise PaymentTimeoutError(
                f"Gateway timed out during {operation}", provider=self.provider, operation=operation
            ) from exc
        except httpx.TransportError as exc:
            logger.error("mp_transport_error", operation=operation, error=str(exc), **log_ctx)
            raise PaymentRecoverableError(
                f"Gateway unreachable: {exc}", provider=self.provider, details={"detail": str(exc)}
            ) from exc
        except _RetryableStatus as exc:
            detail = _response_detail(exc.response)
            logger.error(
                "mp_request_failed",
                operation=operation,
                status_code=exc.response.status_code,
                detail=detail,
                **log_ctx,
            )
            raise PaymentRecoverableError(
                f"Gateway error during {operation}",
                provider=self.provider,
                http_status=exc.response.status_code,
                details={"detail": detail},
            ) from exc
