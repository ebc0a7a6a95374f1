"""
交易存储接口 - transaction_id → TransactionRecord，带过期
"""
from abc import ABC, abstractmethod
from typing import AsyncContextManager, Optional

from .entity import TransactionRecord


class TransactionStore(ABC):
    """交易存储抽象接口 - 只定义能做什么，不管怎么做

    Records past ``expires_at`` must read as missing even if the backend
    has not physically evicted them yet.
    """

    kind: str = "abstract"

    @abstractmethod
    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        """读取未过期的记录，不存在或已过期返回 None"""
        pass

    @abstractmethod
    async def add(self, record: TransactionRecord) -> bool:
        """仅当不存在未过期记录时写入；返回是否写入成功"""
        pass

    @abstractmethod
    async def save(self, record: TransactionRecord) -> None:
        """覆盖写入，保留记录自身的过期时间"""
        pass

    @abstractmethod
    async def delete(self, transaction_id: str) -> bool:
        """删除记录"""
        pass

    @abstractmethod
    def lock(self, transaction_id: str) -> AsyncContextManager[None]:
        """按 transaction_id 串行化 read-merge-write"""
        pass

    async def purge_expired(self) -> int:
        """主动清理过期记录（可选），返回清理数量"""
        return 0

    async def aclose(self) -> None:
        return None
