"""
QueueBroker abstraction (durable publish/consume).

Responsibilities:
- Idempotent topology declaration (exchanges, queues, bindings)
- Routing a published message to every bound queue
- A consume loop with bounded prefetch that invokes a handler per message and
  applies the handler's explicit Ack / Nack decision
- Dead-lettering (nack without requeue, message TTL expiry, delivery limit)
- Operator surface: queue depth, DLQ listing, DLQ requeue
- Graceful stop: stop reading, drain in-flight handlers

Backends only implement storage primitives (_append/_fetch/_ack/...):
- RedisStreamBroker (infra/redis/stream_broker.py)
- InMemoryBroker (infra/broker/memory.py)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Tuple

from src.relay.contracts.queue_message import Ack, HandlerDecision, Nack, QueueMessage
from src.relay.errors import PublishError, TopologyConflictError
from src.relay.infra.broker.topology import Binding, ExchangeSpec, QueueSpec, Topology, binding_matches
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

Handler = Callable[[QueueMessage], Awaitable[HandlerDecision]]
Delivery = Tuple[str, QueueMessage]  # (delivery tag, message)

HEADER_EXCHANGE = "x-exchange"
HEADER_ORIGINAL_ROUTING_KEY = "x-original-routing-key"
HEADER_SOURCE_QUEUE = "x-source-queue"
HEADER_DEATH_REASON = "x-death-reason"
HEADER_TERMINAL_ERROR = "x-terminal-error"
HEADER_ATTEMPTS = "x-attempts"


def dead_letter_copy(
    message: QueueMessage,
    *,
    reason: str,
    source_queue: Optional[str] = None,
    error: Optional[BaseException] = None,
    attempts: Optional[int] = None,
) -> QueueMessage:
    """
    Copy of `message` annotated for the DLQ. The original routing key is kept
    in a header so an operator can requeue it to where it came from.
    """
    return message.with_headers(
        **{
            HEADER_ORIGINAL_ROUTING_KEY: message.headers.get(HEADER_ORIGINAL_ROUTING_KEY) or message.routing_key,
            HEADER_SOURCE_QUEUE: source_queue,
            HEADER_DEATH_REASON: reason,
            HEADER_TERMINAL_ERROR: repr(error) if error is not None else None,
            HEADER_ATTEMPTS: attempts,
        }
    )


class QueueBroker(ABC):
    backend: str = "abstract"

    def __init__(self, *, block_ms: int = 2000) -> None:
        self.block_ms = block_ms
        self._exchanges: Dict[str, ExchangeSpec] = {}
        self._queues: Dict[str, QueueSpec] = {}
        self._bindings: List[Binding] = []
        self._stopping = asyncio.Event()
        self._inflight_tags: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    async def declare_topology(self, topology: Topology) -> None:
        for exchange in topology.exchanges:
            await self.declare_exchange(exchange)
        for queue in topology.queues:
            await self.declare_queue(queue)
        for binding in topology.bindings:
            await self.bind(binding)
        logger.info(
            "Topology declared | backend=%s | exchanges=%s | queues=%s | bindings=%s",
            self.backend,
            len(topology.exchanges),
            len(topology.queues),
            len(topology.bindings),
        )

    async def declare_exchange(self, spec: ExchangeSpec) -> None:
        existing = self._exchanges.get(spec.name)
        if existing is not None and existing != spec:
            raise TopologyConflictError(f"exchange {spec.name!r} already declared as {existing}, got {spec}")
        await self._persist_exchange(spec)
        self._exchanges[spec.name] = spec

    async def declare_queue(self, spec: QueueSpec) -> None:
        existing = self._queues.get(spec.name)
        if existing is not None and existing != spec:
            raise TopologyConflictError(f"queue {spec.name!r} already declared as {existing}, got {spec}")
        await self._persist_queue(spec)
        self._queues[spec.name] = spec

    async def bind(self, binding: Binding) -> None:
        if binding.exchange not in self._exchanges:
            raise TopologyConflictError(f"cannot bind to undeclared exchange {binding.exchange!r}")
        if binding.queue not in self._queues:
            raise TopologyConflictError(f"cannot bind undeclared queue {binding.queue!r}")
        if binding in self._bindings:
            return
        await self._persist_binding(binding)
        self._bindings.append(binding)

    def queue_spec(self, name: str) -> QueueSpec:
        spec = self._queues.get(name)
        if spec is None:
            raise KeyError(f"queue {name!r} is not declared")
        return spec

    def route(self, exchange: str, routing_key: str) -> List[str]:
        spec = self._exchanges.get(exchange)
        if spec is None:
            return []
        targets: List[str] = []
        for b in self._bindings:
            if b.exchange == exchange and b.queue not in targets and binding_matches(spec, b.pattern, routing_key):
                targets.append(b.queue)
        return targets

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, exchange: str, routing_key: str, message: QueueMessage) -> int:
        """
        Route `message` to every queue bound to `exchange` for `routing_key`.

        Returns the number of queues the message was written to (always >= 1).
        Raises PublishError when the broker cannot accept it, including when
        no queue is bound for `routing_key`: an unrouted message is a lost one.
        """
        if exchange not in self._exchanges:
            raise PublishError(f"exchange {exchange!r} is not declared")

        targets = self.route(exchange, routing_key)
        if not targets:
            logger.warning(
                "Unroutable message | exchange=%s | routing_key=%s | message_id=%s",
                exchange,
                routing_key,
                message.id,
            )
            raise PublishError(f"no queue bound to {exchange!r} for routing key {routing_key!r}")

        msg = replace(message, routing_key=routing_key)
        if HEADER_EXCHANGE not in msg.headers:
            msg = msg.with_headers(**{HEADER_EXCHANGE: exchange})

        for queue in targets:
            await self._append(queue, msg)

        logger.debug(
            "Message published | exchange=%s | routing_key=%s | message_id=%s | queues=%s",
            exchange,
            routing_key,
            msg.id,
            targets,
        )
        return len(targets)

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def consume(self, queue: str, handler: Handler, prefetch: int = 10) -> None:
        """
        Consume `queue` until stop() is called.

        At most `prefetch` messages are in flight at once; each is handled by
        its own task. On stop, reading ends and in-flight handlers are awaited
        before returning.
        """
        if prefetch < 1:
            raise ValueError("prefetch must be >= 1")
        self.queue_spec(queue)
        await self._prepare_consumer(queue)

        logger.info("Consumer started | backend=%s | queue=%s | prefetch=%s", self.backend, queue, prefetch)

        inflight: Set[asyncio.Task] = set()
        tags = self._inflight_tags.setdefault(queue, set())
        while not self._stopping.is_set():
            try:
                await self._keepalive(queue, frozenset(tags))
            except Exception as exc:
                logger.warning("Keepalive failed | queue=%s | inflight=%s | error=%s", queue, len(tags), exc)

            free = prefetch - len(inflight)
            if free <= 0:
                await asyncio.wait(inflight, timeout=self.block_ms / 1000, return_when=asyncio.FIRST_COMPLETED)
                continue
            try:
                deliveries = await self._fetch(queue, free, self.block_ms)
            except Exception as exc:
                logger.error("Consumer loop error | queue=%s", queue, exc_info=exc)
                await asyncio.sleep(1)
                continue

            for tag, message in deliveries:
                tags.add(tag)
                task = asyncio.create_task(self._deliver(queue, tag, message, handler))
                inflight.add(task)
                task.add_done_callback(inflight.discard)

        if inflight:
            logger.info("Draining in-flight handlers | queue=%s | count=%s", queue, len(inflight))
            await asyncio.gather(*inflight, return_exceptions=True)
        logger.info("Consumer stopped | queue=%s", queue)

    async def stop(self) -> None:
        self._stopping.set()

    async def close(self) -> None:
        await self.stop()

    async def _deliver(self, queue: str, tag: str, message: QueueMessage, handler: Handler) -> None:
        spec = self.queue_spec(queue)
        if spec.message_ttl_ms is not None and message.age_ms() > spec.message_ttl_ms:
            logger.warning("Message expired | queue=%s | message_id=%s | age_ms=%.0f", queue, message.id, message.age_ms())
            decision: HandlerDecision = Nack(requeue=False, reason="expired")
        else:
            try:
                decision = await handler(message)
            except Exception as exc:
                # Never ack on an unexpected failure: put it back.
                logger.error("Handler failed | queue=%s | message_id=%s", queue, message.id, exc_info=exc)
                decision = Nack(requeue=True, reason=f"handler error: {exc!r}")

        try:
            await self._settle(spec, tag, message, decision)
        except Exception as exc:
            # Left unacked; the backend redelivers it (stream reclaim / restart).
            logger.error("Failed to settle message | queue=%s | message_id=%s", queue, message.id, exc_info=exc)
        finally:
            self._inflight_tags.get(queue, set()).discard(tag)

    async def _settle(self, spec: QueueSpec, tag: str, message: QueueMessage, decision: HandlerDecision) -> None:
        if isinstance(decision, Ack):
            await self._ack(spec.name, tag)
            return

        if decision.requeue:
            again = message.redelivered()
            if spec.delivery_limit is not None and again.attempt > spec.delivery_limit:
                await self._dead_letter(spec, message, reason=f"delivery_limit: {decision.reason}")
            else:
                await self._append(spec.name, again)
                logger.info(
                    "Message requeued | queue=%s | message_id=%s | attempt=%s | reason=%s",
                    spec.name,
                    message.id,
                    again.attempt,
                    decision.reason,
                )
        else:
            await self._dead_letter(spec, message, reason=decision.reason or "rejected")

        # Write first, ack second: a crash in between duplicates, never loses.
        await self._ack(spec.name, tag)

    async def _dead_letter(self, spec: QueueSpec, message: QueueMessage, *, reason: str) -> None:
        if not spec.dead_letter_exchange:
            logger.error(
                "Message discarded, queue has no dead-letter exchange | queue=%s | message_id=%s | reason=%s | body=%s",
                spec.name,
                message.id,
                reason,
                message.body,
            )
            return

        routing_key = spec.dead_letter_routing_key or message.routing_key
        dead = dead_letter_copy(message, reason=reason, source_queue=spec.name, attempts=message.attempt)
        await self.publish(spec.dead_letter_exchange, routing_key, dead)
        logger.warning(
            "Message dead-lettered | queue=%s | message_id=%s | reason=%s",
            spec.name,
            message.id,
            reason,
        )

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def dead_letter_target(self, queue: str) -> Tuple[str, str]:
        """(exchange, routing_key) that `queue` dead-letters to."""
        spec = self.queue_spec(queue)
        if not spec.dead_letter_exchange:
            raise KeyError(f"queue {queue!r} has no dead-letter queue")
        return spec.dead_letter_exchange, spec.dead_letter_routing_key or ""

    def dead_letter_queue(self, queue: str) -> str:
        targets = self.route(*self.dead_letter_target(queue))
        if not targets:
            raise KeyError(f"queue {queue!r} dead-letter route has no queue")
        return targets[0]

    async def dead_letters(self, queue: str, limit: int = 50) -> List[QueueMessage]:
        return [m for _, m in await self._scan(self.dead_letter_queue(queue), limit)]

    async def requeue_dead_letter(self, queue: str, message_id: str) -> bool:
        """
        Move one message back from `queue`'s DLQ to its original exchange and
        routing key with attempt reset to 0. Returns False if not found.
        """
        dlq = self.dead_letter_queue(queue)
        for tag, message in await self._scan(dlq, None):
            if message.id != message_id:
                continue
            exchange = message.headers.get(HEADER_EXCHANGE)
            routing_key = message.headers.get(HEADER_ORIGINAL_ROUTING_KEY) or message.routing_key
            if not exchange:
                raise PublishError(f"dead letter {message_id} has no origin exchange")
            fresh = replace(message, attempt=0, headers={}, enqueued_at=datetime.now(timezone.utc))
            await self.publish(exchange, routing_key, fresh)
            await self._delete(dlq, tag)
            logger.info("Dead letter requeued | dlq=%s | message_id=%s | exchange=%s", dlq, message_id, exchange)
            return True
        return False

    @abstractmethod
    async def queue_depth(self, queue: str) -> int: ...

    # ------------------------------------------------------------------
    # Backend primitives
    # ------------------------------------------------------------------

    async def _persist_exchange(self, spec: ExchangeSpec) -> None:
        return None

    async def _persist_queue(self, spec: QueueSpec) -> None:
        return None

    async def _persist_binding(self, binding: Binding) -> None:
        return None

    async def _prepare_consumer(self, queue: str) -> None:
        return None

    async def _keepalive(self, queue: str, tags: FrozenSet[str]) -> None:
        """Called on every consume loop turn with the tags still being handled."""
        return None

    @abstractmethod
    async def _append(self, queue: str, message: QueueMessage) -> None: ...

    @abstractmethod
    async def _fetch(self, queue: str, count: int, block_ms: int) -> List[Delivery]: ...

    @abstractmethod
    async def _ack(self, queue: str, tag: str) -> None: ...

    @abstractmethod
    async def _scan(self, queue: str, limit: Optional[int]) -> List[Delivery]: ...

    @abstractmethod
    async def _delete(self, queue: str, tag: str) -> None: ...
