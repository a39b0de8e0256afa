"""
Outbound contracts.

GeneratedReply is produced by the AIResponseEngine and published to the
outbound queue. DeliveryRecord tracks what the OutboundDispatcher did with it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class GeneratedReply:
    instance_id: str
    conversation_id: str
    ticket_id: str
    text: str
    confidence: float
    source_event_id: str
    max_attempts: int = 3
    reply_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    generated_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply_id": self.reply_id,
            "instance_id": self.instance_id,
            "conversation_id": self.conversation_id,
            "ticket_id": self.ticket_id,
            "text": self.text,
            "confidence": self.confidence,
            "source_event_id": self.source_event_id,
            "max_attempts": self.max_attempts,
            "generated_at": self.generated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeneratedReply":
        return cls(
            reply_id=str(data["reply_id"]),
            instance_id=str(data["instance_id"]),
            conversation_id=str(data["conversation_id"]),
            ticket_id=str(data["ticket_id"]),
            text=str(data["text"]),
            confidence=float(data["confidence"]),
            source_event_id=str(data["source_event_id"]),
            max_attempts=int(data.get("max_attempts") or 3),
            generated_at=_parse_dt(data["generated_at"]),
        )


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DEAD_LETTERED = "dead-lettered"

    @property
    def terminal(self) -> bool:
        return self in (DeliveryStatus.SENT, DeliveryStatus.DEAD_LETTERED)


@dataclass(frozen=True)
class DeliveryRecord:
    reply_id: str
    conversation_id: str
    source_event_id: str
    attempt: int = 0
    status: DeliveryStatus = DeliveryStatus.PENDING
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
    updated_at: datetime = field(default_factory=_now)

    def transition(self, status: DeliveryStatus, **changes: Any) -> "DeliveryRecord":
        if self.status.terminal and status != self.status:
            raise ValueError(f"DeliveryRecord {self.reply_id} is terminal ({self.status.value})")
        return replace(self, status=status, updated_at=_now(), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply_id": self.reply_id,
            "conversation_id": self.conversation_id,
            "source_event_id": self.source_event_id,
            "attempt": self.attempt,
            "status": self.status.value,
            "last_error": self.last_error,
            "provider_message_id": self.provider_message_id,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryRecord":
        return cls(
            reply_id=str(data["reply_id"]),
            conversation_id=str(data["conversation_id"]),
            source_event_id=str(data["source_event_id"]),
            attempt=int(data.get("attempt") or 0),
            status=DeliveryStatus(data.get("status") or DeliveryStatus.PENDING.value),
            last_error=data.get("last_error"),
            provider_message_id=data.get("provider_message_id"),
            updated_at=_parse_dt(data["updated_at"]),
        )
