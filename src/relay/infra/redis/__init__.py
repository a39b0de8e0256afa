"""
Redis infrastructure package.

Contains:
- Redis connection wrapper
- Redis Streams queue broker
- Redis-backed dedup cache
- Redis-backed delivery store
"""

from src.relay.infra.redis.client import RedisClient
from src.relay.infra.redis.dedup_cache import RedisDedupCache
from src.relay.infra.redis.delivery_store import RedisDeliveryStore
from src.relay.infra.redis.stream_broker import RedisStreamBroker

__all__ = [
    "RedisClient",
    "RedisDedupCache",
    "RedisDeliveryStore",
    "RedisStreamBroker",
]
