"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional


class RedisSettings(BaseModel):
    url: Optional[str] = None
    max_connections: int = 10
    namespace: str = "vending-relay"
    # Per-transaction lock used for read-merge-write
    lock_timeout: int = 10
    lock_blocking_timeout: float = 5.0


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Vending Payment Relay")
    VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="development")

    redis: RedisSettings = Field(default_factory=RedisSettings)

    # Public HTTPS base of this service; the gateway posts webhooks here
    BACKEND_URL: Optional[str] = Field(default=None)
    # Base for checkout back_urls, falls back to BACKEND_URL
    FRONTEND_URL: Optional[str] = Field(default=None)

    # CORS配置
    CORS_ORIGINS: list = Field(default=["*"])

    # 交易存储配置
    TRANSACTION_STORE: str = Field(default="auto", description="auto | memory | redis")
    TRANSACTION_TTL_SECONDS: int = Field(default=6 * 60 * 60)
    TRANSACTION_SWEEP_INTERVAL_S: float = Field(default=300.0, description="In-memory store sweep; 0 disables")

    # 日志/请求体记录配置
    LOG_REQUEST_BODY_ENABLE_BY_DEFAULT: bool = Field(default=True)
    LOG_REQUEST_BODY_MAX_BYTES: int = Field(default=2048)

    # Realtime/WebSocket 配置
    REALTIME_BROKER: str = Field(default="auto", description="auto | redis | inmemory")
    REALTIME_WS_IDLE_PING_INTERVAL_S: float = Field(default=30.0)
    REALTIME_WS_PONG_GRACE_S: float = Field(default=10.0)
    REALTIME_WS_MISSED_PING_LIMIT: int = Field(default=2)
    REALTIME_WS_SEND_TIMEOUT_S: float = Field(default=5.0)

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @property
    def notification_url(self) -> Optional[str]:
        if not self.BACKEND_URL:
            return None
        return f"{self.BACKEND_URL.rstrip('/')}/api/v1/payments/webhook"

    @property
    def feedback_base_url(self) -> Optional[str]:
        base = self.FRONTEND_URL or self.BACKEND_URL
        return base.rstrip("/") if base else None

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v


settings = Settings()
