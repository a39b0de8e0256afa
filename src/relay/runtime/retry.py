"""
RetryManager: bounded exponential-backoff retry with DLQ handoff.

Design:
- Runs synchronously in the caller (awaited sleeps), no background timers.
- Only TransientInfraError is retried. Anything else propagates immediately
  and does not consume retry budget.
- delay(n) = min(max_delay_ms, base_delay_ms * 2^(n-1)) after the n-th failed
  attempt, randomized by +/-50% when jitter is on (still capped).
- An optional per-attempt timeout turns asyncio.TimeoutError into a
  transient failure.
- On exhaustion, if a DeadLetterRoute is given, the message is published to it
  with the terminal error attached before RetryExhaustedError is raised.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, TypeVar

from src.relay.config.settings import Settings
from src.relay.contracts.queue_message import QueueMessage
from src.relay.errors import RetryExhaustedError, TransientInfraError
from src.relay.infra.broker.base import QueueBroker, dead_letter_copy
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")

Operation = Callable[[int], Awaitable[T]]
RetryObserver = Callable[[int, BaseException, float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 500
    max_delay_ms: int = 30_000
    jitter: bool = True
    attempt_timeout_s: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings, *, attempt_timeout_s: Optional[float] = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter=settings.retry_jitter,
            attempt_timeout_s=attempt_timeout_s,
        )

    def with_max_attempts(self, max_attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max_attempts)

    def backoff_ms(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after the `attempt`-th (1-based) failure."""
        delay = min(float(self.max_delay_ms), self.base_delay_ms * (2 ** (attempt - 1)))
        if self.jitter:
            delay = delay * (rng or random).uniform(0.5, 1.5)
        return min(delay, float(self.max_delay_ms))


@dataclass(frozen=True)
class DeadLetterRoute:
    broker: QueueBroker
    exchange: str
    routing_key: str
    message: QueueMessage
    source_queue: Optional[str] = None


class RetryManager:
    def __init__(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._sleep = sleep
        self._rng = rng

    async def execute(
        self,
        operation: Operation,
        policy: RetryPolicy,
        *,
        name: str = "operation",
        dead_letter: Optional[DeadLetterRoute] = None,
        on_retry: Optional[RetryObserver] = None,
    ) -> T:
        """
        Run operation(attempt) until it succeeds or policy.max_attempts is hit.

        Raises RetryExhaustedError (with .dead_lettered) after the last attempt.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                if policy.attempt_timeout_s is not None:
                    return await asyncio.wait_for(operation(attempt), timeout=policy.attempt_timeout_s)
                return await operation(attempt)
            except asyncio.TimeoutError as exc:
                last_error = TransientInfraError(f"{name} timed out after {policy.attempt_timeout_s}s")
                last_error.__cause__ = exc
            except TransientInfraError as exc:
                last_error = exc

            if attempt == policy.max_attempts:
                break

            delay_ms = policy.backoff_ms(attempt, self._rng)
            logger.warning(
                "Transient failure, retrying | op=%s | attempt=%s/%s | delay_ms=%.0f | error=%s",
                name,
                attempt,
                policy.max_attempts,
                delay_ms,
                last_error,
            )
            if on_retry is not None:
                await on_retry(attempt, last_error, delay_ms)
            await self._sleep(delay_ms / 1000)

        assert last_error is not None
        logger.error(
            "Retry exhausted | op=%s | attempts=%s | error=%s",
            name,
            policy.max_attempts,
            last_error,
        )
        dead_lettered = False
        if dead_letter is not None:
            dead_lettered = await self._dead_letter(dead_letter, last_error, policy.max_attempts)
        raise RetryExhaustedError(policy.max_attempts, last_error, dead_lettered=dead_lettered) from last_error

    async def _dead_letter(self, route: DeadLetterRoute, error: BaseException, attempts: int) -> bool:
        dead = dead_letter_copy(
            route.message,
            reason="retry_exhausted",
            source_queue=route.source_queue,
            error=error,
            attempts=attempts,
        )
        try:
            await route.broker.publish(route.exchange, route.routing_key, dead)
        except TransientInfraError as exc:
            logger.error("Failed to dead-letter exhausted message | message_id=%s", route.message.id, exc_info=exc)
            return False
        logger.warning("Exhausted message dead-lettered | message_id=%s | exchange=%s", route.message.id, route.exchange)
        return True
