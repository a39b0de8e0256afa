"""
QueueMessage envelope + explicit handler decisions.

All values written to Redis Streams must be strings (decode_responses=True),
so body and headers are JSON-encoded by to_fields().
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueMessage:
    body: Dict[str, Any]
    routing_key: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 0
    enqueued_at: datetime = field(default_factory=_now)
    headers: Dict[str, str] = field(default_factory=dict)

    def redelivered(self) -> "QueueMessage":
        """Copy for a requeue: same id/body, attempt + 1, fresh enqueue time."""
        return replace(self, attempt=self.attempt + 1, enqueued_at=_now())

    def with_headers(self, **headers: Any) -> "QueueMessage":
        merged = dict(self.headers)
        merged.update({k: str(v) for k, v in headers.items() if v is not None})
        return replace(self, headers=merged)

    def age_ms(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.enqueued_at).total_seconds() * 1000

    def to_fields(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "routing_key": self.routing_key,
            "attempt": str(self.attempt),
            "enqueued_at": self.enqueued_at.isoformat(),
            "body": json.dumps(self.body),
            "headers": json.dumps(self.headers),
        }

    @classmethod
    def from_fields(cls, fields: Dict[str, str]) -> "QueueMessage":
        enqueued_at = datetime.fromisoformat(fields["enqueued_at"])
        if enqueued_at.tzinfo is None:
            enqueued_at = enqueued_at.replace(tzinfo=timezone.utc)
        return cls(
            id=fields["id"],
            routing_key=fields.get("routing_key", ""),
            attempt=int(fields.get("attempt") or 0),
            enqueued_at=enqueued_at,
            body=json.loads(fields.get("body") or "{}"),
            headers=json.loads(fields.get("headers") or "{}"),
        )


@dataclass(frozen=True)
class Ack:
    """Handler finished; remove the message."""


@dataclass(frozen=True)
class Nack:
    """
    Handler did not finish.

    requeue=True puts the message back (attempt + 1);
    requeue=False routes it to the queue's dead-letter exchange.
    """

    requeue: bool = True
    reason: str = ""


HandlerDecision = Union[Ack, Nack]
