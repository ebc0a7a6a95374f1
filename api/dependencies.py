"""
API依赖项 - 从应用生命周期中取出已装配的服务
"""
from typing import Optional

from fastapi import Request

from application.services.checkout_service import CheckoutService
from application.services.delivery_service import DeliveryService
from application.services.status_service import StatusQueryService
from application.services.webhook_reconciler import WebhookReconciler
from core.exceptions import ServiceUnavailableException


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ServiceUnavailableException(f"{name} is not initialized", dependency=name)
    return value


async def get_checkout_service(request: Request) -> CheckoutService:
    return _state(request, "checkout_service")


async def get_webhook_reconciler(request: Request) -> Optional[WebhookReconciler]:
    # Webhooks are acknowledged even when the gateway is not configured
    return getattr(request.app.state, "webhook_reconciler", None)


async def get_status_service(request: Request) -> StatusQueryService:
    return _state(request, "status_service")


def get_delivery_service(app) -> DeliveryService:
    """WebSocket routes have no Request; they pass ``ws.app``."""
    svc = getattr(app.state, "delivery_service", None)
    if svc is None:
        raise RuntimeError("Delivery service not initialized. Ensure lifespan sets app.state.delivery_service.")
    return svc
