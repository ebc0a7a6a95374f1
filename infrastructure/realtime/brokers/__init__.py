"""Realtime brokers (in-memory, Redis)."""

# Re-export convenience types for app assembly
from .inmemory import InMemoryRealtimeBroker
from .redis import RedisRealtimeBroker

__all__ = [
    "InMemoryRealtimeBroker",
    "RedisRealtimeBroker",
]
