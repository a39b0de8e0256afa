"""
AIResponseEngine.

Turns one InboundEvent into exactly one outcome:

    Received -> Resolved -> Gated -> Responded | Escalated | Suppressed

- Suppressed: self event, no ticket/agent assignment, unusable agent config,
  or auto-response disabled for the agent. Nothing is published.
- Responded:  completion confidence >= the agent's threshold. One
  GeneratedReply is published to the outbound queue.
- Escalated:  confidence below threshold, empty completion, or completion
  retries exhausted. An EscalationSignal is emitted, no reply is published.

Resolver transient failures (errors and timeouts) are retried under the
settings retry policy; once that is exhausted they propagate as
TransientInfraError and the inbound worker requeues with a backoff.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

from src.relay.contracts.agent_config import TicketAgentConfig
from src.relay.contracts.events import InboundEvent
from src.relay.contracts.queue_message import QueueMessage
from src.relay.contracts.replies import GeneratedReply
from src.relay.engine.completion import AgentCompletion, CompletionContext, CompletionResult
from src.relay.engine.escalation import EscalationNotifier, EscalationSignal
from src.relay.engine.resolver import TicketAgentResolver
from src.relay.errors import ResolverNotFound, RetryExhaustedError, TransientInfraError, ValidationError
from src.relay.infra.broker.base import QueueBroker
from src.relay.infra.broker.topology import outbound_routing_key
from src.relay.logging.logger import setup_logger
from src.relay.runtime.retry import RetryManager, RetryPolicy

logger = setup_logger(__name__)


class EngineState(str, Enum):
    RECEIVED = "received"
    RESOLVED = "resolved"
    GATED = "gated"
    RESPONDED = "responded"
    ESCALATED = "escalated"
    SUPPRESSED = "suppressed"


@dataclass
class EngineOutcome:
    event_id: str
    state: EngineState = EngineState.RECEIVED
    ticket_id: Optional[str] = None
    reply: Optional[GeneratedReply] = None
    reason: Optional[str] = None
    confidence: Optional[float] = None
    history: List[EngineState] = field(default_factory=lambda: [EngineState.RECEIVED])

    def advance(self, state: EngineState, *, reason: Optional[str] = None) -> "EngineOutcome":
        self.state = state
        self.history.append(state)
        if reason is not None:
            self.reason = reason
        return self


class AIResponseEngine:
    def __init__(
        self,
        *,
        resolver: TicketAgentResolver,
        completion: AgentCompletion,
        broker: QueueBroker,
        retry_manager: RetryManager,
        escalation: EscalationNotifier,
        exchange: str,
        retry_policy: Optional[RetryPolicy] = None,
        resolver_timeout_s: float = 5.0,
    ) -> None:
        self.resolver = resolver
        self.completion = completion
        self.broker = broker
        self.retry_manager = retry_manager
        self.escalation = escalation
        self.exchange = exchange
        self.retry_policy = retry_policy or RetryPolicy()
        self.resolver_timeout_s = resolver_timeout_s

    async def process(self, event: InboundEvent) -> EngineOutcome:
        """
        Raises TransientInfraError when the resolver or the broker is
        unavailable; the caller decides whether to redeliver.
        """
        outcome = EngineOutcome(event_id=event.event_id)
        t0 = time.perf_counter()

        if event.sender_is_self:
            return self._finish(outcome.advance(EngineState.SUPPRESSED, reason="self_event"), event, t0)

        config = await self._resolve(event, outcome)
        if config is None:
            return self._finish(outcome, event, t0)
        outcome.ticket_id = config.ticket_id
        outcome.advance(EngineState.RESOLVED)

        if not config.auto_response_enabled:
            return self._finish(outcome.advance(EngineState.SUPPRESSED, reason="auto_response_disabled"), event, t0)

        try:
            result = await self._complete(event, config)
        except RetryExhaustedError as exc:
            outcome.advance(EngineState.GATED)
            await self._escalate(outcome, event, config, reason="completion_failed", detail=str(exc.last_error))
            return self._finish(outcome, event, t0)

        outcome.advance(EngineState.GATED)
        outcome.confidence = result.confidence

        if not result.text:
            outcome.confidence = 0.0
            await self._escalate(outcome, event, config, reason="empty_completion")
            return self._finish(outcome, event, t0)

        if result.confidence < config.confidence_threshold:
            await self._escalate(outcome, event, config, reason="low_confidence")
            return self._finish(outcome, event, t0)

        reply = GeneratedReply(
            instance_id=event.instance_id,
            conversation_id=event.conversation_id,
            ticket_id=config.ticket_id,
            text=result.text,
            confidence=result.confidence,
            source_event_id=event.event_id,
            max_attempts=config.max_attempts,
        )
        await self.broker.publish(
            self.exchange,
            outbound_routing_key(event.instance_id),
            QueueMessage(body=reply.to_dict()),
        )
        outcome.reply = reply
        outcome.advance(EngineState.RESPONDED)
        return self._finish(outcome, event, t0)

    async def _resolve(self, event: InboundEvent, outcome: EngineOutcome) -> Optional[TicketAgentConfig]:
        policy = replace(self.retry_policy, attempt_timeout_s=self.resolver_timeout_s)

        async def attempt(n: int) -> TicketAgentConfig:
            return await self.resolver.resolve(event.conversation_id)

        try:
            return await self.retry_manager.execute(attempt, policy, name=f"resolve:{event.event_id}")
        except ResolverNotFound:
            outcome.advance(EngineState.SUPPRESSED, reason="no_agent_assignment")
        except ValidationError as exc:
            logger.warning(
                "Unusable agent config | conversation=%s | error=%s",
                event.conversation_id,
                exc,
            )
            outcome.advance(EngineState.SUPPRESSED, reason="invalid_agent_config")
        except RetryExhaustedError as exc:
            raise TransientInfraError(f"resolver unavailable after {exc.attempts} attempt(s): {exc.last_error}") from exc
        return None

    async def _complete(self, event: InboundEvent, config: TicketAgentConfig) -> CompletionResult:
        context = CompletionContext(event=event, config=config)
        policy = self.retry_policy.with_max_attempts(config.max_attempts)

        async def attempt(n: int) -> CompletionResult:
            logger.debug("Completion attempt | event_id=%s | attempt=%s", event.event_id, n)
            return await self.completion.complete(context)

        return await self.retry_manager.execute(attempt, policy, name=f"completion:{event.event_id}")

    async def _escalate(
        self,
        outcome: EngineOutcome,
        event: InboundEvent,
        config: TicketAgentConfig,
        *,
        reason: str,
        detail: Optional[str] = None,
    ) -> None:
        outcome.advance(EngineState.ESCALATED, reason=reason)
        if detail:
            logger.warning("Completion failed | event_id=%s | error=%s", event.event_id, detail)
        await self.escalation.notify(
            EscalationSignal(
                ticket_id=config.ticket_id,
                conversation_id=event.conversation_id,
                event_id=event.event_id,
                reason=reason,
                confidence=outcome.confidence,
                escalation_timeout_minutes=config.escalation_timeout_minutes,
            )
        )

    def _finish(self, outcome: EngineOutcome, event: InboundEvent, t0: float) -> EngineOutcome:
        logger.info(
            "Engine outcome | event_id=%s | conversation=%s | state=%s | reason=%s | ticket=%s | confidence=%s | dt_ms=%s",
            event.event_id,
            event.conversation_id,
            outcome.state.value,
            outcome.reason,
            outcome.ticket_id,
            outcome.confidence,
            int((time.perf_counter() - t0) * 1000),
        )
        return outcome
