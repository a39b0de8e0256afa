"""
Redis Streams QueueBroker.

Responsibilities:
- One Redis Stream per queue, one consumer group per stream
- Topology (exchange type, queue arguments, bindings) persisted in Redis so
  every process declaring it agrees; a mismatch is a TopologyConflictError
- XREADGROUP with COUNT = free prefetch slots for consumption
- XAUTOCLAIM of entries left pending by a dead consumer (crash before ack);
  entries this consumer is still handling are skipped, and their idle time
  is refreshed (XCLAIM JUSTID) every reclaim_idle_ms / 2 so no other
  consumer takes over a slow but live handler
- XACK + XDEL on ack so streams stay bounded

NOTE:
- Routing (topic / direct / fanout) is evaluated in-process from the declared
  bindings; Redis only stores the streams.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, FrozenSet, List, Optional

from redis.exceptions import RedisError, ResponseError

from src.relay.contracts.queue_message import QueueMessage
from src.relay.errors import PublishError, TopologyConflictError, TransientInfraError
from src.relay.infra.broker.base import Delivery, QueueBroker
from src.relay.infra.broker.topology import Binding, ExchangeSpec, QueueSpec
from src.relay.infra.redis.client import RedisClient
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisStreamBroker(QueueBroker):
    backend = "redis"

    def __init__(
        self,
        redis_client: RedisClient,
        *,
        group_name: str,
        consumer_name: str,
        topology_prefix: str = "topology",
        block_ms: int = 2000,
        reclaim_idle_ms: int = 60_000,
    ) -> None:
        super().__init__(block_ms=block_ms)
        self.redis_client = redis_client
        self.group_name = group_name
        self.consumer_name = consumer_name
        self.topology_prefix = topology_prefix
        self.reclaim_idle_ms = reclaim_idle_ms
        self._last_reclaim: Dict[str, Optional[float]] = {}
        self._last_keepalive: Dict[str, float] = {}
        self._reclaim_cursor: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    async def _persist_spec(self, kind: str, name: str, spec: Dict[str, Any]) -> None:
        client = await self.redis_client.get_client()
        key = f"{self.topology_prefix}:{kind}:{name}"
        value = json.dumps(spec, sort_keys=True)

        created = await client.set(key, value, nx=True)
        if created:
            logger.info("Topology created | %s=%s", kind, name)
            return

        existing = await client.get(key)
        if existing != value:
            raise TopologyConflictError(f"{kind} {name!r} exists with arguments {existing}, declared {value}")
        logger.debug("Topology already declared | %s=%s", kind, name)

    async def _persist_exchange(self, spec: ExchangeSpec) -> None:
        await self._persist_spec("exchange", spec.name, spec.as_dict())

    async def _persist_queue(self, spec: QueueSpec) -> None:
        await self._persist_spec("queue", spec.name, spec.as_dict())
        await self._ensure_consumer_group(spec.name)

    async def _persist_binding(self, binding: Binding) -> None:
        client = await self.redis_client.get_client()
        await client.sadd(f"{self.topology_prefix}:bindings:{binding.exchange}", f"{binding.queue}|{binding.pattern}")

    async def _ensure_consumer_group(self, stream: str) -> None:
        """
        Ensure consumer group exists.
        """
        client = await self.redis_client.get_client()
        try:
            await client.xgroup_create(
                name=stream,
                groupname=self.group_name,
                id="0-0",
                mkstream=True,
            )
            logger.info("Redis consumer group created | stream=%s | group=%s", stream, self.group_name)
        except ResponseError as exc:
            if "BUSYGROUP" in str(exc):
                logger.debug("Redis consumer group already exists | stream=%s | group=%s", stream, self.group_name)
            else:
                raise

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def _append(self, queue: str, message: QueueMessage) -> None:
        try:
            client = await self.redis_client.get_client()
            await client.xadd(name=queue, fields=message.to_fields())
        except (RedisError, OSError) as exc:
            logger.error("Failed to publish to Redis Stream | stream=%s | message_id=%s", queue, message.id, exc_info=exc)
            raise PublishError(f"redis stream {queue!r} unavailable: {exc}") from exc

    async def _prepare_consumer(self, queue: str) -> None:
        await self._ensure_consumer_group(queue)
        self._last_reclaim[queue] = None
        self._last_keepalive[queue] = time.monotonic()
        self._reclaim_cursor[queue] = "0-0"

    async def _fetch(self, queue: str, count: int, block_ms: int) -> List[Delivery]:
        client = await self.redis_client.get_client()

        now = time.monotonic()
        last_reclaim = self._last_reclaim.get(queue)
        if last_reclaim is None or now - last_reclaim >= self.reclaim_idle_ms / 1000:
            self._last_reclaim[queue] = now
            reclaimed = await self._reclaim(client, queue, count)
            if self._reclaim_cursor.get(queue, "0-0") != "0-0":
                # more pending entries past this page; keep walking next turn
                self._last_reclaim[queue] = None
            if reclaimed:
                return reclaimed

        response = await client.xreadgroup(
            groupname=self.group_name,
            consumername=self.consumer_name,
            streams={queue: ">"},
            count=count,
            block=block_ms,
        )
        if not response:
            return []

        entries = response.items() if isinstance(response, dict) else response
        deliveries: List[Delivery] = []
        for _, messages in entries:
            deliveries.extend(await self._decode(queue, messages))
        return deliveries

    async def _reclaim(self, client, queue: str, count: int) -> List[Delivery]:
        """
        Take over entries another consumer read but never acked.

        Walks the pending list with the XAUTOCLAIM cursor, one page per call.
        Entries this consumer is still handling are left alone.
        """
        result = await client.xautoclaim(
            name=queue,
            groupname=self.group_name,
            consumername=self.consumer_name,
            min_idle_time=self.reclaim_idle_ms,
            start_id=self._reclaim_cursor.get(queue, "0-0"),
            count=count,
        )
        if not result:
            return []
        self._reclaim_cursor[queue] = result[0] or "0-0"
        busy = self._inflight_tags.get(queue, set())
        messages = [(stream_id, fields) for stream_id, fields in result[1] if stream_id not in busy]
        deliveries = await self._decode(queue, messages)
        if deliveries:
            logger.warning("Reclaimed stale pending entries | stream=%s | count=%s", queue, len(deliveries))
        return deliveries

    async def _keepalive(self, queue: str, tags: FrozenSet[str]) -> None:
        now = time.monotonic()
        if not tags or now - self._last_keepalive.get(queue, 0.0) < self.reclaim_idle_ms / 2000:
            return
        self._last_keepalive[queue] = now
        client = await self.redis_client.get_client()
        # Re-claiming to ourselves resets the idle timer other consumers' XAUTOCLAIM checks.
        await client.xclaim(
            name=queue,
            groupname=self.group_name,
            consumername=self.consumer_name,
            min_idle_time=0,
            message_ids=sorted(tags),
            justid=True,
        )
        logger.debug("Pending entries kept alive | stream=%s | count=%s", queue, len(tags))

    async def _decode(self, queue: str, messages) -> List[Delivery]:
        deliveries: List[Delivery] = []
        for stream_id, fields in messages:
            if not fields:
                continue
            try:
                deliveries.append((stream_id, QueueMessage.from_fields(fields)))
            except (KeyError, ValueError) as exc:
                # Not our envelope: park it in the DLQ rather than drop it.
                logger.error("Undecodable stream entry | stream=%s | id=%s", queue, stream_id, exc_info=exc)
                raw = QueueMessage(body={"raw": dict(fields)}, routing_key="")
                await self._dead_letter(self.queue_spec(queue), raw, reason="undecodable")
                await self._ack(queue, stream_id)
        return deliveries

    async def _ack(self, queue: str, tag: str) -> None:
        client = await self.redis_client.get_client()
        pipe = client.pipeline(transaction=True)
        pipe.xack(queue, self.group_name, tag)
        pipe.xdel(queue, tag)
        await pipe.execute()

    async def _scan(self, queue: str, limit: Optional[int]) -> List[Delivery]:
        client = await self.redis_client.get_client()
        try:
            entries = await client.xrange(queue, count=limit)
        except RedisError as exc:
            raise TransientInfraError(f"redis stream {queue!r} unavailable: {exc}") from exc
        out: List[Delivery] = []
        for stream_id, fields in entries:
            try:
                out.append((stream_id, QueueMessage.from_fields(fields)))
            except (KeyError, ValueError):
                logger.warning("Skipping undecodable entry | stream=%s | id=%s", queue, stream_id)
        return out

    async def _delete(self, queue: str, tag: str) -> None:
        client = await self.redis_client.get_client()
        await client.xdel(queue, tag)

    async def queue_depth(self, queue: str) -> int:
        client = await self.redis_client.get_client()
        try:
            return int(await client.xlen(queue))
        except RedisError as exc:
            raise TransientInfraError(f"redis stream {queue!r} unavailable: {exc}") from exc
