"""
请求/响应日志中间件

One ``request_started`` and one completion line per HTTP call, with the
duration. Checkout and webhook bodies are small JSON documents; they are
logged only when enabled and with gateway credentials masked.
"""
import json
import time
from typing import Any, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.logging_config import get_logger
from core.config import settings


logger = get_logger(__name__)

WEBHOOK_PATH_SUFFIX = "/payments/webhook"


class LoggingMiddleware(BaseHTTPMiddleware):
    # 跳过日志的路径
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    # Keys masked wherever they appear in a logged body
    SENSITIVE_FIELDS = {"access_token", "authorization", "x-signature", "secret"}

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start = time.perf_counter()
        info = await self._request_info(request)
        logger.info("request_started", **info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=time.perf_counter() - start,
                error=str(exc),
                error_type=type(exc).__name__,
                **info,
                exc_info=True,
            )
            raise

        duration = time.perf_counter() - start
        self._log_response(response, duration, info)
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        return response

    async def _request_info(self, request: Request) -> dict:
        info: dict[str, Any] = {"query_params": dict(request.query_params)}
        if request.url.path.endswith(WEBHOOK_PATH_SUFFIX):
            # What the gateway signed: its request id and whether a signature came along
            info["gateway_request_id"] = request.headers.get("x-request-id")
            info["signed"] = "x-signature" in request.headers
        if request.method == "POST" and self._should_log_body(request):
            body = await self._body_snippet(request)
            if body is not None:
                info["body"] = body
        return info

    def _should_log_body(self, request: Request) -> bool:
        # X-Log-Body: true/false 覆盖默认开关
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _body_snippet(self, request: Request) -> Optional[Any]:
        body = await request.body()
        if not body:
            return None
        text = body[: self.max_body_log_bytes].decode("utf-8", errors="ignore")
        try:
            return self._mask(json.loads(text))
        except ValueError:
            # Truncated or non-JSON payloads are logged as text
            return text

    def _mask(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: "***" if k.lower() in self.SENSITIVE_FIELDS else self._mask(v) for k, v in data.items()}
        if isinstance(data, list):
            return [self._mask(v) for v in data]
        return data

    @staticmethod
    def _log_response(response: Response, duration: float, info: dict) -> None:
        status_code = response.status_code
        if status_code < 400:
            logger.info("request_completed", status_code=status_code, duration=duration, **info)
        elif status_code < 500:
            logger.warning("request_client_error", status_code=status_code, duration=duration, **info)
        else:
            logger.error("request_server_error", status_code=status_code, duration=duration, **info)
