"""
Outbound Dispatcher (delivery runtime).

Responsibilities:
- Deliver GeneratedReplies through the configured provider sender
- At most one send per (conversation_id, source_event_id), across broker
  redeliveries and worker restarts
- Retry transient provider failures with the reply's max_attempts
- Dead-letter permanent failures and exhausted retries, never drop them
- Keep a DeliveryRecord for every reply it touches

Idempotency:
- A claim `sent:{conversation_id}:{source_event_id}` naming the owning
  reply_id is taken before the first provider call and held for the whole
  retry loop.
- Claim held by another reply -> skip, return that reply's record.
- Redelivery of the owning reply:
    sent / dead-lettered          -> skip
    attempt == 0                  -> never reached the provider, send
    pending / failed, attempt > 0 -> provider outcome unknown (a worker died
                                     mid-send): dead-letter instead of
                                     risking a second send
"""

from __future__ import annotations

import time
from typing import Optional, Tuple

from src.relay.contracts.queue_message import Ack, HandlerDecision, Nack, QueueMessage
from src.relay.contracts.replies import DeliveryRecord, DeliveryStatus, GeneratedReply
from src.relay.dispatchers.channels.base import ProviderSender, SendResult
from src.relay.errors import PermanentProviderError, RetryExhaustedError, TransientInfraError
from src.relay.infra.broker.base import HEADER_EXCHANGE, QueueBroker, dead_letter_copy
from src.relay.infra.broker.topology import outbound_routing_key
from src.relay.infra.delivery_store import DeliveryStore
from src.relay.logging.logger import setup_logger
from src.relay.runtime.retry import DeadLetterRoute, RetryManager, RetryPolicy

logger = setup_logger(__name__)


class OutboundDispatcher:
    def __init__(
        self,
        *,
        sender: ProviderSender,
        store: DeliveryStore,
        broker: QueueBroker,
        retry_manager: RetryManager,
        queue: str,
        exchange: str,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.sender = sender
        self.store = store
        self.broker = broker
        self.retry_manager = retry_manager
        self.queue = queue
        self.exchange = exchange
        self.retry_policy = retry_policy or RetryPolicy()

    async def handle(self, message: QueueMessage) -> HandlerDecision:
        """Broker handler for the outbound queue."""
        try:
            reply = GeneratedReply.from_dict(message.body)
        except (KeyError, ValueError, TypeError) as exc:
            logger.error("Malformed outbound message | message_id=%s | error=%s", message.id, exc)
            return Nack(requeue=False, reason="malformed")

        try:
            record, parked = await self._dispatch(reply, message)
        except TransientInfraError as exc:
            logger.warning("Outbound delivery deferred | message_id=%s | reply_id=%s | error=%s", message.id, reply.reply_id, exc)
            return Nack(requeue=True, reason="transient")

        if record.status is DeliveryStatus.DEAD_LETTERED and not parked:
            # Let the broker dead-letter it through the queue's own DLX.
            return Nack(requeue=False, reason=record.last_error or "dead-lettered")
        return Ack()

    async def dispatch(self, reply: GeneratedReply, source_message: Optional[QueueMessage] = None) -> DeliveryRecord:
        record, _ = await self._dispatch(reply, source_message)
        return record

    async def _dispatch(self, reply: GeneratedReply, source_message: Optional[QueueMessage]) -> Tuple[DeliveryRecord, bool]:
        """
        Returns (record, parked). parked is False only when a dead-lettered
        reply could not be written to the DLQ.
        """
        message = source_message or self._envelope(reply)

        holder = await self.store.claim(reply.conversation_id, reply.source_event_id, reply.reply_id)
        if holder is not None:
            logger.info(
                "Outbound already claimed (idempotent skip) | reply_id=%s | holder=%s | conversation=%s | source_event_id=%s",
                reply.reply_id,
                holder,
                reply.conversation_id,
                reply.source_event_id,
            )
            existing = await self.store.get(holder)
            return existing or DeliveryRecord(holder, reply.conversation_id, reply.source_event_id), True

        record = await self.store.get(reply.reply_id)
        if record is not None and record.status.terminal:
            logger.info("Outbound already settled (idempotent skip) | reply_id=%s | status=%s", reply.reply_id, record.status.value)
            return record, True

        if record is not None and record.attempt > 0:
            logger.error(
                "Outbound delivery unconfirmed after redelivery | reply_id=%s | status=%s | attempt=%s",
                reply.reply_id,
                record.status.value,
                record.attempt,
            )
            record = record.transition(
                DeliveryStatus.DEAD_LETTERED,
                last_error=f"unconfirmed_delivery: {record.last_error or record.status.value}",
            )
            await self.store.save(record)
            parked = await self._park(message, reason="unconfirmed_delivery", attempts=record.attempt)
            return record, parked

        return await self._send_with_retry(reply, message, record)

    async def _send_with_retry(
        self,
        reply: GeneratedReply,
        message: QueueMessage,
        record: Optional[DeliveryRecord],
    ) -> Tuple[DeliveryRecord, bool]:
        current = record or DeliveryRecord(reply.reply_id, reply.conversation_id, reply.source_event_id)
        policy = self.retry_policy.with_max_attempts(reply.max_attempts)
        dlx, dlq_routing_key = self.broker.dead_letter_target(self.queue)
        t_start = time.perf_counter()

        logger.info(
            "Delivering outbound | reply_id=%s | instance=%s | conversation=%s | max_attempts=%s",
            reply.reply_id,
            reply.instance_id,
            reply.conversation_id,
            policy.max_attempts,
        )

        async def attempt(n: int) -> SendResult:
            nonlocal current
            current = current.transition(DeliveryStatus.PENDING, attempt=n)
            await self.store.save(current)
            return await self.sender.send(reply.instance_id, reply.conversation_id, reply.text)

        async def on_retry(n: int, error: BaseException, delay_ms: float) -> None:
            nonlocal current
            current = current.transition(DeliveryStatus.FAILED, attempt=n, last_error=str(error))
            await self.store.save(current)

        try:
            result = await self.retry_manager.execute(
                attempt,
                policy,
                name=f"send:{reply.reply_id}",
                dead_letter=DeadLetterRoute(self.broker, dlx, dlq_routing_key, message, source_queue=self.queue),
                on_retry=on_retry,
            )
        except PermanentProviderError as exc:
            logger.error("Outbound permanent failure | reply_id=%s | status_code=%s | error=%s", reply.reply_id, exc.status_code, exc)
            current = current.transition(DeliveryStatus.FAILED, last_error=str(exc))
            await self.store.save(current)
            current = current.transition(DeliveryStatus.DEAD_LETTERED)
            await self.store.save(current)
            parked = await self._park(message, reason="permanent_provider_error", error=exc, attempts=current.attempt)
            return current, parked
        except RetryExhaustedError as exc:
            current = current.transition(
                DeliveryStatus.DEAD_LETTERED,
                attempt=exc.attempts,
                last_error=str(exc.last_error),
            )
            await self.store.save(current)
            return current, exc.dead_lettered

        current = current.transition(DeliveryStatus.SENT, provider_message_id=result.provider_message_id, last_error=None)
        await self.store.save(current)
        logger.info(
            "Outbound delivered | reply_id=%s | provider_message_id=%s | attempt=%s | total_s=%.3f",
            reply.reply_id,
            result.provider_message_id,
            current.attempt,
            time.perf_counter() - t_start,
        )
        return current, True

    async def _park(
        self,
        message: QueueMessage,
        *,
        reason: str,
        error: Optional[BaseException] = None,
        attempts: Optional[int] = None,
    ) -> bool:
        exchange, routing_key = self.broker.dead_letter_target(self.queue)
        dead = dead_letter_copy(message, reason=reason, source_queue=self.queue, error=error, attempts=attempts)
        try:
            await self.broker.publish(exchange, routing_key, dead)
        except TransientInfraError as exc:
            logger.error("Failed to dead-letter outbound message | message_id=%s", message.id, exc_info=exc)
            return False
        logger.warning("Outbound message dead-lettered | message_id=%s | reason=%s", message.id, reason)
        return True

    def _envelope(self, reply: GeneratedReply) -> QueueMessage:
        """Queue form of a reply dispatched without a source message."""
        return QueueMessage(
            body=reply.to_dict(),
            routing_key=outbound_routing_key(reply.instance_id),
            headers={HEADER_EXCHANGE: self.exchange},
        )
