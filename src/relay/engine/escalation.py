"""
Escalation signals.

Emitted by the AIResponseEngine when a conversation must go to a human:
low confidence, completion failure or an empty completion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class EscalationSignal:
    ticket_id: str
    conversation_id: str
    event_id: str
    reason: str
    confidence: Optional[float] = None
    escalation_timeout_minutes: int = 30
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def respond_by(self) -> datetime:
        return self.created_at + timedelta(minutes=self.escalation_timeout_minutes)


class EscalationNotifier(Protocol):
    async def notify(self, signal: EscalationSignal) -> None: ...


class LoggingEscalationNotifier:
    """Default notifier: a structured warning per escalation."""

    async def notify(self, signal: EscalationSignal) -> None:
        logger.warning(
            "Escalation | ticket=%s | conversation=%s | event_id=%s | reason=%s | confidence=%s | respond_by=%s",
            signal.ticket_id,
            signal.conversation_id,
            signal.event_id,
            signal.reason,
            signal.confidence,
            signal.respond_by.isoformat(),
        )
