"""
Payments API routes.

Checkout creation, status polling and the gateway webhook. Keep this thin:
no gateway details here.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from starlette import status as http_status

from api.dependencies import (
    get_checkout_service,
    get_status_service,
    get_webhook_reconciler,
)
from api.middleware import peer_ip
from api.utils.webhook_security import ip_allowed, verify_signature
from application.dtos.payments import (
    CreateCheckout,
    WebhookAck,
    WebhookNotification,
    WebhookOutcome,
)
from application.services.checkout_service import CheckoutService
from application.services.status_service import StatusQueryService
from application.services.webhook_reconciler import WebhookReconciler
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/checkouts", summary="Create checkout session", status_code=http_status.HTTP_201_CREATED)
async def create_checkout(
    payload: CreateCheckout,
    service: CheckoutService = Depends(get_checkout_service),
):
    created = await service.create_checkout(payload)
    return success_response(data=created.model_dump(mode="json"), message="Checkout created")


@router.get("/checkouts/{transaction_id}/status", summary="Transaction status")
async def checkout_status(
    transaction_id: str,
    service: StatusQueryService = Depends(get_status_service),
):
    view = await service.get(transaction_id)
    return success_response(data=view.model_dump(mode="json"), message="Transaction status")


@router.get("/status", summary="Transaction status (legacy query form)")
async def legacy_status(
    vending_transaction_id: str = Query(..., min_length=1),
    service: StatusQueryService = Depends(get_status_service),
):
    view = await service.get(vending_transaction_id)
    data = view.model_dump(mode="json")
    data["vending_transaction_id"] = view.transaction_id
    return success_response(data=data, message="Transaction status")


async def _read_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        logger.info("webhook_body_unparsed", size=len(raw))
        return {}


def _ack(ack: WebhookAck):
    return success_response(data=ack.model_dump(mode="json"), message="Webhook received")


@router.post("/webhook", summary="Gateway payment notification")
async def payments_webhook(
    request: Request,
    reconciler: Optional[WebhookReconciler] = Depends(get_webhook_reconciler),
):
    # Always 200: any other answer makes the gateway redeliver
    remote_ip = peer_ip(request)
    if not ip_allowed(remote_ip, payment_settings.webhook.ip_allowlist):
        logger.warning("webhook_ip_not_allowed", remote_ip=remote_ip)
        return _ack(WebhookAck(outcome=WebhookOutcome.IGNORED))

    body = await _read_body(request)
    notification = WebhookNotification.from_request(dict(request.query_params), body)
    logger.info(
        "webhook_received",
        kind=notification.kind,
        gateway_payment_id=notification.gateway_payment_id,
    )

    if not verify_signature(
        payment_settings.webhook.secret,
        x_signature=request.headers.get("x-signature"),
        x_request_id=request.headers.get("x-request-id"),
        data_id=notification.gateway_payment_id,
    ):
        logger.warning("webhook_signature_invalid", gateway_payment_id=notification.gateway_payment_id)
        return _ack(WebhookAck(outcome=WebhookOutcome.IGNORED))

    if reconciler is None:
        logger.error("webhook_reconciler_unavailable", gateway_payment_id=notification.gateway_payment_id)
        return _ack(WebhookAck(outcome=WebhookOutcome.UNRESOLVED))

    ack = await reconciler.handle(notification)
    return _ack(ack)
