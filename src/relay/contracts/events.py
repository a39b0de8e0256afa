"""
Inbound event contract.

An InboundEvent is the normalized, immutable form of one provider webhook
delivery. It is what the WebhookReceiver publishes to the inbound queue and
what the inbound worker hands to the AIResponseEngine.

Queue bodies are plain JSON dicts; to_dict/from_dict are the only codec.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _parse_dt(value: Any) -> datetime:
    dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class MessageContent:
    text: str
    message_type: str = "text"
    media_url: Optional[str] = None
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "message_type": self.message_type,
            "media_url": self.media_url,
            "mime_type": self.mime_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageContent":
        return cls(
            text=str(data.get("text") or ""),
            message_type=str(data.get("message_type") or "text"),
            media_url=data.get("media_url"),
            mime_type=data.get("mime_type"),
        )


@dataclass(frozen=True)
class InboundEvent:
    event_id: str
    instance_id: str
    conversation_id: str
    sender_is_self: bool
    payload: MessageContent
    received_at: datetime
    sent_at: Optional[datetime] = None  # provider timestamp

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.instance_id, self.event_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "instance_id": self.instance_id,
            "conversation_id": self.conversation_id,
            "sender_is_self": self.sender_is_self,
            "payload": self.payload.to_dict(),
            "received_at": self.received_at.isoformat(),
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InboundEvent":
        """
        Rebuild an event from a queue body. Raises KeyError/ValueError on a
        body that was not produced by to_dict.
        """
        sent_at = data.get("sent_at")
        return cls(
            event_id=str(data["event_id"]),
            instance_id=str(data["instance_id"]),
            conversation_id=str(data["conversation_id"]),
            sender_is_self=bool(data.get("sender_is_self", False)),
            payload=MessageContent.from_dict(data.get("payload") or {}),
            received_at=_parse_dt(data["received_at"]),
            sent_at=_parse_dt(sent_at) if sent_at else None,
        )
