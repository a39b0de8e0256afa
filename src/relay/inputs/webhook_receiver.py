"""
WebhookReceiver (ingress).

Responsibilities:
- Validate and normalize a raw provider webhook into an InboundEvent
- Record and drop self-echoes (our own outbound sends coming back)
- Gate everything else through the DeduplicationCache
- Publish new events to the inbound queue

Ordering (claim, publish, commit):
1) claim()   -> short-lived pending marker (atomic SET NX). A key that is
                already committed is a duplicate: ack, nothing enqueued. A key
                still pending belongs to a concurrent delivery that has not
                finished publishing: answer "retry later" so the event is
                neither enqueued twice nor lost if that publish fails.
2) publish   -> on PublishError the marker is released and the error
                propagates, so the provider's retry is not mistaken for a
                duplicate
3) commit()  -> promotes the marker to the full dedup TTL. A commit failure
                after a successful publish is logged and the event is still
                answered as accepted: it is already queued.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from src.relay.contracts.events import InboundEvent, MessageContent
from src.relay.contracts.queue_message import QueueMessage
from src.relay.errors import TransientInfraError, ValidationError
from src.relay.infra.broker.base import QueueBroker
from src.relay.infra.broker.topology import inbound_routing_key
from src.relay.infra.dedup import ClaimResult, DeduplicationCache
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

ROUTING_KEY_RESERVED = (".", "*", "#")


class ReceiveStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    SELF_ECHO = "self_echo"
    IN_FLIGHT = "in_flight"


@dataclass(frozen=True)
class ReceiveResult:
    status: ReceiveStatus
    event: InboundEvent

    @property
    def enqueued(self) -> bool:
        return self.status is ReceiveStatus.ACCEPTED


def _required_str(data: Mapping[str, Any], key: str, field: str) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"missing required field {field!r}", field=field)
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"field {field!r} must be a string", field=field)
    return str(value).strip()


def parse_timestamp(value: Any) -> datetime:
    """
    Accept epoch seconds, epoch milliseconds or an ISO-8601 string.
    """
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError("missing required field 'event.timestamp'", field="event.timestamp")

    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().lstrip("-").isdigit()):
        number = float(value)
        if number > 1e11:  # milliseconds
            number = number / 1000
        try:
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValidationError(f"invalid timestamp {value!r}", field="event.timestamp") from exc

    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"invalid timestamp {value!r}", field="event.timestamp") from exc
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    raise ValidationError(f"invalid timestamp {value!r}", field="event.timestamp")


def parse_content(value: Any) -> MessageContent:
    """
    `content` is either plain text or an object such as
    {"text"|"conversation": ..., "type": ..., "mediaUrl": ..., "mimeType": ...}.
    """
    if value is None:
        return MessageContent(text="")
    if isinstance(value, str):
        return MessageContent(text=value.strip())
    if not isinstance(value, dict):
        raise ValidationError("field 'event.content' must be a string or an object", field="event.content")

    text = value.get("text") or value.get("conversation") or value.get("caption") or ""
    return MessageContent(
        text=str(text).strip(),
        message_type=str(value.get("type") or value.get("messageType") or "text"),
        media_url=value.get("mediaUrl") or value.get("media_url"),
        mime_type=value.get("mimeType") or value.get("mime_type"),
    )


def normalize_event(raw: Any, *, received_at: Optional[datetime] = None) -> InboundEvent:
    """
    Validate a raw webhook body and build an InboundEvent.

    Raises ValidationError on anything malformed.
    """
    if not isinstance(raw, dict):
        raise ValidationError("body must be a JSON object")

    instance_id = _required_str(raw, "instanceId", "instanceId")
    if any(ch in instance_id for ch in ROUTING_KEY_RESERVED):
        # It becomes one word of the "<instanceId>.inbound" topic routing key.
        raise ValidationError("field 'instanceId' must not contain '.', '*' or '#'", field="instanceId")

    event = raw.get("event")
    if not isinstance(event, dict):
        raise ValidationError("missing required object 'event'", field="event")

    event_id = _required_str(event, "id", "event.id")
    conversation_id = _required_str(event, "conversationId", "event.conversationId")
    sent_at = parse_timestamp(event.get("timestamp"))

    from_self = event.get("fromSelf", False)
    if not isinstance(from_self, bool):
        raise ValidationError("field 'event.fromSelf' must be a boolean", field="event.fromSelf")

    return InboundEvent(
        event_id=event_id,
        instance_id=instance_id,
        conversation_id=conversation_id,
        sender_is_self=from_self,
        payload=parse_content(event.get("content")),
        received_at=received_at or datetime.now(timezone.utc),
        sent_at=sent_at,
    )


class WebhookReceiver:
    def __init__(self, dedup: DeduplicationCache, broker: QueueBroker, *, exchange: str) -> None:
        self.dedup = dedup
        self.broker = broker
        self.exchange = exchange
        self.counters: Dict[str, int] = {
            "received": 0,
            "rejected": 0,
            "self_echo": 0,
            "duplicates": 0,
            "in_flight": 0,
            "published": 0,
            "commit_failed": 0,
        }

    async def handle(self, raw: Any) -> ReceiveResult:
        """
        Returns a ReceiveResult for every outcome the provider should see as handled
        or, for IN_FLIGHT, retry later.

        Raises:
            ValidationError: malformed payload (reject, do not retry)
            TransientInfraError: dedup store or broker unavailable (provider should retry)
        """
        self.counters["received"] += 1
        try:
            event = normalize_event(raw)
        except ValidationError as exc:
            self.counters["rejected"] += 1
            logger.warning("Rejected webhook payload | field=%s | error=%s", exc.field, exc)
            raise

        if event.sender_is_self:
            self.counters["self_echo"] += 1
            logger.info(
                "Self echo recorded and dropped | instance=%s | event_id=%s | conversation=%s",
                event.instance_id,
                event.event_id,
                event.conversation_id,
            )
            return ReceiveResult(ReceiveStatus.SELF_ECHO, event)

        claim = await self.dedup.claim(event.instance_id, event.event_id)
        if claim is ClaimResult.COMMITTED:
            self.counters["duplicates"] += 1
            logger.info(
                "Duplicate webhook acked without enqueue | instance=%s | event_id=%s",
                event.instance_id,
                event.event_id,
            )
            return ReceiveResult(ReceiveStatus.DUPLICATE, event)
        if claim is ClaimResult.PENDING:
            self.counters["in_flight"] += 1
            logger.info(
                "Duplicate webhook while first delivery is publishing | instance=%s | event_id=%s",
                event.instance_id,
                event.event_id,
            )
            return ReceiveResult(ReceiveStatus.IN_FLIGHT, event)

        message = QueueMessage(body=event.to_dict())
        try:
            await self.broker.publish(self.exchange, inbound_routing_key(event.instance_id), message)
        except BaseException:
            await self._release_quietly(event)
            raise

        self.counters["published"] += 1
        await self._commit_quietly(event)

        logger.info(
            "Inbound event published | instance=%s | event_id=%s | conversation=%s | message_id=%s",
            event.instance_id,
            event.event_id,
            event.conversation_id,
            message.id,
        )
        return ReceiveResult(ReceiveStatus.ACCEPTED, event)

    async def _commit_quietly(self, event: InboundEvent) -> None:
        """
        The event is already queued, so a failed commit must not turn into a
        "retry later" answer: the provider would redeliver and, once the
        pending marker expires, the event would be queued a second time.
        Retried once, then left to the pending marker.
        """
        for attempt in (1, 2):
            try:
                await self.dedup.commit(event.instance_id, event.event_id)
                return
            except TransientInfraError:
                logger.warning(
                    "Dedup commit failed after publish | instance=%s | event_id=%s | attempt=%s",
                    event.instance_id,
                    event.event_id,
                    attempt,
                    exc_info=True,
                )
        self.counters["commit_failed"] += 1

    async def _release_quietly(self, event: InboundEvent) -> None:
        try:
            await self.dedup.release(event.instance_id, event.event_id)
        except TransientInfraError:
            # The pending marker still expires on its own.
            logger.warning(
                "Dedup release failed after publish error | instance=%s | event_id=%s",
                event.instance_id,
                event.event_id,
                exc_info=True,
            )
