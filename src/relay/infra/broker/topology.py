"""
Exchange / queue topology.

Mirrors AMQP semantics closely enough for the pipeline:
- exchanges are "topic", "direct" or "fanout"
- queues may name a dead-letter exchange + routing key, a message TTL and a
  delivery limit
- bindings attach a queue to an exchange with a routing pattern

Specs are compared field-by-field on redeclaration; any difference is a
TopologyConflictError.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from src.relay.config.settings import Settings

EXCHANGE_TYPES = ("topic", "direct", "fanout")


@dataclass(frozen=True)
class ExchangeSpec:
    name: str
    type: str = "topic"
    durable: bool = True

    def __post_init__(self) -> None:
        if self.type not in EXCHANGE_TYPES:
            raise ValueError(f"Unsupported exchange type={self.type!r}")

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class QueueSpec:
    name: str
    durable: bool = True
    dead_letter_exchange: Optional[str] = None
    dead_letter_routing_key: Optional[str] = None
    message_ttl_ms: Optional[int] = None
    delivery_limit: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Binding:
    queue: str
    exchange: str
    pattern: str


@dataclass(frozen=True)
class Topology:
    exchanges: List[ExchangeSpec] = field(default_factory=list)
    queues: List[QueueSpec] = field(default_factory=list)
    bindings: List[Binding] = field(default_factory=list)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    AMQP topic matching: words separated by '.', '*' matches exactly one
    word, '#' matches zero or more words.
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: List[str], words: List[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


def binding_matches(exchange: ExchangeSpec, pattern: str, routing_key: str) -> bool:
    if exchange.type == "fanout":
        return True
    if exchange.type == "direct":
        return pattern == routing_key
    return topic_matches(pattern, routing_key)


def inbound_routing_key(instance_id: str) -> str:
    return f"{instance_id}.inbound"


def outbound_routing_key(instance_id: str) -> str:
    return f"{instance_id}.outbound"


def default_topology(settings: Settings) -> Topology:
    """
    exchange `messages` (topic) -> messages.inbound  (*.inbound)
                                -> messages.outbound (*.outbound)
    exchange `messages.dlx` (direct) -> messages.inbound.dlq / messages.outbound.dlq
    """
    dlx = settings.exchange_dead_letter
    work_queues = [settings.queue_inbound, settings.queue_outbound]

    exchanges = [
        ExchangeSpec(name=settings.exchange_messages, type="topic"),
        ExchangeSpec(name=dlx, type="direct"),
    ]
    queues: List[QueueSpec] = []
    bindings: List[Binding] = []

    for name in work_queues:
        dlq = f"{name}{settings.dlq_suffix}"
        queues.append(
            QueueSpec(
                name=name,
                dead_letter_exchange=dlx,
                dead_letter_routing_key=dlq,
                message_ttl_ms=settings.queue_message_ttl_ms,
                delivery_limit=settings.queue_delivery_limit,
            )
        )
        queues.append(QueueSpec(name=dlq))
        bindings.append(Binding(queue=dlq, exchange=dlx, pattern=dlq))

    bindings.append(Binding(queue=settings.queue_inbound, exchange=settings.exchange_messages, pattern="*.inbound"))
    bindings.append(Binding(queue=settings.queue_outbound, exchange=settings.exchange_messages, pattern="*.outbound"))

    return Topology(exchanges=exchanges, queues=queues, bindings=bindings)
