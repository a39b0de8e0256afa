"""
Inbound worker (execution runtime for the inbound queue).

Responsibilities:
- Decode each inbound queue message into an InboundEvent
- Hand it to the AIResponseEngine
- Return the ack/nack decision to the broker; the broker only acks after
  the handler returns, i.e. after the engine's publish / escalation committed

Decisions:
- malformed body          -> Nack(requeue=False): dead-lettered, never retried
- engine outcome (any)    -> Ack
- TransientInfraError     -> Nack(requeue=True) after a backoff of
                             policy.backoff_ms(attempt + 1): redelivered,
                             bounded by the queue's delivery limit, spread
                             over the backoff schedule rather than burned
                             through in milliseconds
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from src.relay.contracts.events import InboundEvent
from src.relay.contracts.queue_message import Ack, HandlerDecision, Nack, QueueMessage
from src.relay.engine.ai_response_engine import AIResponseEngine
from src.relay.errors import TransientInfraError
from src.relay.logging.logger import setup_logger
from src.relay.runtime.retry import RetryPolicy

logger = setup_logger(__name__)


class InboundWorker:
    def __init__(
        self,
        engine: AIResponseEngine,
        *,
        requeue_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.requeue_policy = requeue_policy or RetryPolicy()
        self._sleep = sleep

    async def handle(self, message: QueueMessage) -> HandlerDecision:
        t_start = time.perf_counter()
        try:
            event = InboundEvent.from_dict(message.body)
        except (KeyError, ValueError, TypeError) as exc:
            logger.error("Malformed inbound message | message_id=%s | error=%s", message.id, exc)
            return Nack(requeue=False, reason="malformed")

        lag_s = (datetime.now(timezone.utc) - event.received_at).total_seconds()
        logger.info(
            "Processing inbound event | message_id=%s | event_id=%s | conversation=%s | attempt=%s | lag_s=%.3f",
            message.id,
            event.event_id,
            event.conversation_id,
            message.attempt,
            lag_s,
        )

        try:
            outcome = await self.engine.process(event)
        except TransientInfraError as exc:
            delay_ms = self.requeue_policy.backoff_ms(message.attempt + 1)
            logger.warning(
                "Inbound event deferred | message_id=%s | event_id=%s | attempt=%s | requeue_in_ms=%.0f | error=%s",
                message.id,
                event.event_id,
                message.attempt,
                delay_ms,
                exc,
            )
            await self._sleep(delay_ms / 1000)
            return Nack(requeue=True, reason="transient")

        logger.info(
            "Inbound event done | message_id=%s | state=%s | total_s=%.3f",
            message.id,
            outcome.state.value,
            time.perf_counter() - t_start,
        )
        return Ack()
