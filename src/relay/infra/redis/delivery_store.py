"""
Delivery store (Redis-based).

Key schema:
- sent:{conversation_id}:{source_event_id} -> reply_id   (SET NX)
- delivery:{reply_id}                      -> DeliveryRecord JSON

Both keys expire after outbound_idempotency_ttl_seconds.
"""

from __future__ import annotations

import json
from typing import Optional

from redis.exceptions import RedisError

from src.relay.contracts.replies import DeliveryRecord
from src.relay.errors import TransientInfraError
from src.relay.infra.delivery_store import DeliveryStore, claim_key, record_key
from src.relay.infra.redis.client import RedisClient
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisDeliveryStore(DeliveryStore):
    def __init__(self, redis_client: RedisClient, ttl_seconds: int) -> None:
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    async def claim(self, conversation_id: str, source_event_id: str, reply_id: str) -> Optional[str]:
        client = await self.redis_client.get_client()
        key = claim_key(conversation_id, source_event_id)
        try:
            if await client.set(key, reply_id, nx=True, ex=self.ttl_seconds):
                return None
            holder = await client.get(key)
        except RedisError as exc:
            raise TransientInfraError(f"delivery claim failed: {exc}") from exc
        if holder is None:
            # Expired between SET and GET; retry once.
            return await self.claim(conversation_id, source_event_id, reply_id)
        return None if holder == reply_id else holder

    async def get(self, reply_id: str) -> Optional[DeliveryRecord]:
        client = await self.redis_client.get_client()
        try:
            raw = await client.get(record_key(reply_id))
        except RedisError as exc:
            raise TransientInfraError(f"delivery record read failed: {exc}") from exc
        if not raw:
            return None
        try:
            return DeliveryRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Unreadable delivery record | reply_id=%s", reply_id, exc_info=True)
            return None

    async def save(self, record: DeliveryRecord) -> None:
        client = await self.redis_client.get_client()
        try:
            await client.set(
                record_key(record.reply_id),
                json.dumps(record.to_dict(), ensure_ascii=False),
                ex=self.ttl_seconds,
            )
        except RedisError as exc:
            raise TransientInfraError(f"delivery record write failed: {exc}") from exc
