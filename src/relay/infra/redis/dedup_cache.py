"""
Redis-backed deduplication cache.

Key schema: dedup:{instance_id}:{event_id}
Value:      "<state>|<first-seen ISO timestamp>" (state is pending/committed)
Expiry:     pending_ttl_seconds while pending, ttl_seconds once committed

The check-and-set is a single `SET key value NX EX ttl`, which Redis executes
atomically, so concurrent duplicate deliveries across every process sharing
this Redis resolve to exactly one winner.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from redis.exceptions import RedisError

from src.relay.errors import TransientInfraError
from src.relay.infra.dedup import DeduplicationCache
from src.relay.infra.redis.client import RedisClient
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


def _value(state: str) -> str:
    return f"{state}|{datetime.now(timezone.utc).isoformat()}"


class RedisDedupCache(DeduplicationCache):
    scope = "shared"

    def __init__(self, redis_client: RedisClient, ttl_seconds: int, *, pending_ttl_seconds: int = 30) -> None:
        super().__init__(ttl_seconds, pending_ttl_seconds=pending_ttl_seconds)
        self.redis_client = redis_client

    async def _set_if_absent(self, key: str, state: str, ttl_seconds: int) -> bool:
        client = await self.redis_client.get_client()
        try:
            won = await client.set(key, _value(state), nx=True, ex=ttl_seconds)
        except RedisError as exc:
            raise TransientInfraError(f"dedup claim failed: {exc}") from exc
        return bool(won)

    async def _state(self, key: str) -> Optional[str]:
        client = await self.redis_client.get_client()
        try:
            raw = await client.get(key)
        except RedisError as exc:
            raise TransientInfraError(f"dedup lookup failed: {exc}") from exc
        if not raw:
            return None
        return raw.split("|", 1)[0]

    async def _put(self, key: str, state: str, ttl_seconds: int) -> None:
        client = await self.redis_client.get_client()
        try:
            await client.set(key, _value(state), ex=ttl_seconds)
        except RedisError as exc:
            raise TransientInfraError(f"dedup commit failed: {exc}") from exc

    async def _delete(self, key: str) -> None:
        client = await self.redis_client.get_client()
        try:
            await client.delete(key)
        except RedisError as exc:
            raise TransientInfraError(f"dedup release failed: {exc}") from exc

    async def size(self) -> Optional[int]:
        client = await self.redis_client.get_client()
        count = 0
        try:
            async for _ in client.scan_iter(match="dedup:*", count=500):
                count += 1
        except RedisError:
            logger.warning("Dedup size scan failed", exc_info=True)
            return None
        return count
