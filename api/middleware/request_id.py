"""
Request ID 中间件

Binds a per-request id plus the peer address into structlog contextvars so
every log line of a checkout or webhook can be traced. The gateway signs
each webhook together with its own ``x-request-id``; that id is kept
alongside ours as ``caller_request_id``.
"""
import uuid
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


REQUEST_ID_HEADER = "X-Request-ID"


def peer_ip(request: Request) -> Optional[str]:
    """Address of the TCP peer.

    Forwarded headers are never read here: behind a proxy, run uvicorn with
    ``--proxy-headers --forwarded-allow-ips`` so the trusted proxy rewrites
    ``request.client`` itself.
    """
    return request.client.host if request.client else None


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Webhooks carry the gateway's id in the same header; callers may reuse ours
        incoming = request.headers.get(REQUEST_ID_HEADER)
        request_id = str(uuid.uuid4())
        client_ip = peer_ip(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=client_ip,
            method=request.method,
            path=request.url.path,
        )
        if incoming:
            structlog.contextvars.bind_contextvars(caller_request_id=incoming)

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
