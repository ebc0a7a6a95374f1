"""
统一的Redis客户端实现 - JSON 值、条件写入、分布式锁与 Pub/Sub
"""
from __future__ import annotations

import asyncio
import json
import socket
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Dict, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


class RedisClient:
    """
    统一的Redis客户端

    特性:
    - 自动序列化/反序列化（JSON）
    - 命名空间隔离
    - 分布式锁支持
    - Pub/Sub 支持

    Unlike a cache, callers here need to tell a miss from an outage, so
    RedisError is propagated instead of being swallowed.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        serializer: Optional[Callable] = None,
        deserializer: Optional[Callable] = None,
    ):
        self._client = client
        self._namespace = namespace.strip(":")
        self._serializer = serializer or self._default_serializer
        self._deserializer = deserializer or self._default_deserializer

    # ============= 工具方法 =============

    def _format_key(self, key: str) -> str:
        """格式化键名，添加命名空间前缀"""
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    def _strip_namespace(self, key: str) -> str:
        if self._namespace and key.startswith(f"{self._namespace}:"):
            return key[len(self._namespace) + 1:]
        return key

    def _default_serializer(self, value: Any) -> str:
        """默认序列化方法"""
        if isinstance(value, (str, int, float)):
            return str(value)
        return json.dumps(value, default=str, ensure_ascii=False)

    def _default_deserializer(self, value: Optional[str]) -> Any:
        """默认反序列化方法"""
        if value is None:
            return None
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            return value

    # ============= String 操作 =============

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._client.get(self._format_key(key))
        if value is None:
            logger.debug("redis_miss", key=key)
            return default
        return self._deserializer(value)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        nx: bool = False,  # 仅当key不存在时设置
        xx: bool = False,  # 仅当key存在时设置
        ttl_ms: Optional[int] = None,
    ) -> bool:
        """设置字符串值；ttl 为秒数，ttl_ms 为毫秒（优先），None/0 表示不过期"""
        result = await self._client.set(
            self._format_key(key),
            self._serializer(value),
            ex=ttl if ttl and ttl > 0 and not ttl_ms else None,
            px=ttl_ms if ttl_ms and ttl_ms > 0 else None,
            nx=nx,
            xx=xx,
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*[self._format_key(k) for k in keys]))

    async def exists(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.exists(*[self._format_key(k) for k in keys]))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(self._format_key(key)))

    # ============= 高级功能 =============

    @asynccontextmanager
    async def lock(
        self,
        key: str,
        timeout: int = 10,
        blocking_timeout: int = 5,
    ):
        """
        分布式锁上下文管理器

        Args:
            key: 锁的键名
            timeout: 锁的超时时间（秒）
            blocking_timeout: 获取锁的等待时间（秒）
        """
        lock_key = f"lock:{self._format_key(key)}"
        lock = self._client.lock(
            lock_key,
            timeout=timeout,
            blocking_timeout=blocking_timeout,
            thread_local=False,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise TimeoutError(f"Failed to acquire lock: {lock_key}")
        try:
            yield lock
        finally:
            try:
                await lock.release()
            except RedisError as e:
                logger.error("redis_lock_release_failed", key=lock_key, error=str(e))

    async def publish(self, channel: str, message: Any) -> int:
        """发布消息到频道，返回接收消息的订阅者数量"""
        return int(await self._client.publish(self._format_key(channel), self._serializer(message)))

    async def psubscribe(self, *patterns: str) -> AsyncGenerator[Dict[str, Any], None]:
        """按模式订阅频道，返回消息生成器"""
        formatted = [self._format_key(p) for p in patterns]
        pubsub = self._client.pubsub()
        try:
            await pubsub.psubscribe(*formatted)
            async for message in pubsub.listen():
                if message["type"] not in ("message", "pmessage"):
                    continue
                yield {
                    "channel": self._strip_namespace(message["channel"]),
                    "data": self._deserializer(message["data"]),
                    "pattern": message.get("pattern"),
                }
        finally:
            await pubsub.punsubscribe(*formatted)
            await pubsub.close()

    async def health_check(self) -> bool:
        """健康检查"""
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            return False

    @property
    def client(self) -> aioredis.Redis:
        """获取原始Redis客户端（谨慎使用）"""
        return self._client


# ============= 单例模式管理 =============

_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisClient] = None
_lock = asyncio.Lock()


async def init_redis_client(namespace: Optional[str] = None, **kwargs) -> RedisClient:
    """
    初始化Redis客户端

    Args:
        namespace: 命名空间
        **kwargs: 其他Redis连接参数

    Returns:
        RedisClient实例
    """
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        if not settings.redis.url:
            raise RuntimeError("REDIS__URL is not configured")

        # 构建跨平台 keepalive 选项（若可用）
        keepalive_opts = {}
        if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
            keepalive_opts = {
                socket.TCP_KEEPIDLE: 1,
                socket.TCP_KEEPINTVL: 1,
                socket.TCP_KEEPCNT: 3,
            }

        try:
            client = aioredis.from_url(
                settings.redis.url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=settings.redis.max_connections,
                socket_keepalive=True,
                socket_keepalive_options=keepalive_opts,
                **kwargs
            )
            await client.ping()
        except Exception as e:
            logger.error("redis_client_init_failed", error=str(e))
            raise

        _redis_client = client
        _cache_instance = RedisClient(client=client, namespace=namespace or settings.redis.namespace)
        logger.info("redis_client_initialized", namespace=namespace or settings.redis.namespace)
        return _cache_instance


async def get_redis_client() -> RedisClient:
    """获取全局Redis客户端实例"""
    if _cache_instance is None:
        return await init_redis_client()
    return _cache_instance


async def shutdown_redis_client() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
            logger.info("redis_client_closed")
        except Exception as e:
            logger.error("redis_client_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None
