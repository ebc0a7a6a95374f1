"""
FastAPI应用主入口
"""
import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import payments as payments_routes
from api.routes import ws as ws_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.services.checkout_service import CheckoutService
from application.services.delivery_service import DeliveryService
from application.services.status_service import StatusQueryService
from application.services.webhook_reconciler import WebhookReconciler
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.external.cache import (
    init_redis_client,
    shutdown_redis_client,
)
from infrastructure.external.payments import get_payment_gateway
from infrastructure.realtime.brokers import (
    InMemoryRealtimeBroker,
    RedisRealtimeBroker,
)
from infrastructure.realtime.connection_manager import DeliveryRegistry
from infrastructure.repositories import create_transaction_store


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def _select_broker():
    # 选择 Broker：根据 REALTIME_BROKER，默认 auto -> redis(if url) else inmemory
    provider = (settings.REALTIME_BROKER or "auto").lower()
    if provider in {"redis", "auto"}:
        if settings.redis.url:
            logger.info("realtime_broker_selected", provider="redis")
            return RedisRealtimeBroker()
        if provider == "redis":
            logger.warning("realtime_broker_redis_missing_url", message="REDIS__URL not set, falling back to in-memory broker")
    logger.info("realtime_broker_selected", provider="inmemory")
    return InMemoryRealtimeBroker()


async def _sweep_expired(store, interval: float) -> None:
    """周期清理过期交易（读时已判过期，这里只回收内存）"""
    while True:
        await asyncio.sleep(interval)
        try:
            purged = await store.purge_expired()
            if purged:
                logger.info("transaction_sweep", purged=purged)
        except Exception as exc:
            logger.error("transaction_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    if settings.redis.url:
        try:
            await init_redis_client()
            logger.info("redis_initialized", message="Redis client initialized")
        except Exception as exc:
            logger.error("redis_init_failed", error=str(exc))

    if not settings.BACKEND_URL:
        logger.error("backend_url_missing", message="BACKEND_URL not set; the gateway cannot deliver webhooks")

    ttl = timedelta(seconds=settings.TRANSACTION_TTL_SECONDS)
    store = await create_transaction_store()
    app.state.transaction_store = store
    app.state.status_service = StatusQueryService(store)

    # 初始化实时推送
    broker = _select_broker()
    registry = DeliveryRegistry()
    delivery = DeliveryService(broker=broker, registry=registry)
    await delivery.start()
    app.state.delivery_service = delivery

    # 支付网关未配置时仍可查询状态/确认 webhook；创建结账返回 503
    gateway = None
    try:
        gateway = get_payment_gateway()
        logger.info("payment_gateway_initialized", provider=gateway.provider)
    except Exception as exc:
        logger.error("payment_gateway_init_failed", error=str(exc))
    app.state.payment_gateway = gateway
    if gateway is not None:
        app.state.checkout_service = CheckoutService(
            store,
            gateway,
            ttl=ttl,
            notification_url=settings.notification_url,
            feedback_base_url=settings.feedback_base_url,
        )
        app.state.webhook_reconciler = WebhookReconciler(store, gateway, delivery, ttl=ttl)

    sweeper = None
    if settings.TRANSACTION_SWEEP_INTERVAL_S and settings.TRANSACTION_SWEEP_INTERVAL_S > 0:
        sweeper = asyncio.create_task(
            _sweep_expired(store, settings.TRANSACTION_SWEEP_INTERVAL_S),
            name="transaction-sweeper",
        )

    yield
    # 关闭时的清理工作
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    try:
        await delivery.aclose()
    except Exception as exc:
        logger.error("realtime_shutdown_failed", error=str(exc))
    if gateway is not None:
        await gateway.aclose()
    await store.aclose()
    if settings.redis.url:
        await shutdown_redis_client()
        logger.info("redis_shutdown", message="Redis client shutdown")
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="自动售货机支付通知中继：结账、webhook 对账、机器推送",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(RequestIDMiddleware)

# 2. 日志中间件（依赖request_id）
app.add_middleware(LoggingMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(ws_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message="Welcome"
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    store = getattr(app.state, "transaction_store", None)
    delivery = getattr(app.state, "delivery_service", None)
    gateway = getattr(app.state, "payment_gateway", None)
    return success_response(
        data={
            "status": "healthy",
            "store": getattr(store, "kind", None),
            "broker": getattr(delivery, "broker_kind", None),
            "gateway": getattr(gateway, "provider", None),
        },
        message="OK",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
