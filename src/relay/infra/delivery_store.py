"""
Delivery store.

Tracks outbound delivery state so the OutboundDispatcher never sends the same
reply twice, even across broker redeliveries and worker restarts.

Two pieces of state:
- a send claim per (conversation_id, source_event_id): which reply owns the
  right to be sent for that inbound event (first writer wins)
- a DeliveryRecord per reply_id: attempt count, status, last error
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from src.relay.contracts.replies import DeliveryRecord
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


def claim_key(conversation_id: str, source_event_id: str) -> str:
    return f"sent:{conversation_id}:{source_event_id}"


def record_key(reply_id: str) -> str:
    return f"delivery:{reply_id}"


class DeliveryStore(ABC):
    @abstractmethod
    async def claim(self, conversation_id: str, source_event_id: str, reply_id: str) -> Optional[str]:
        """
        Atomically claim the send for an inbound event.

        Returns None when the claim was taken (or is already held by reply_id),
        otherwise the reply_id that holds it.
        """

    @abstractmethod
    async def get(self, reply_id: str) -> Optional[DeliveryRecord]: ...

    @abstractmethod
    async def save(self, record: DeliveryRecord) -> None: ...


class InMemoryDeliveryStore(DeliveryStore):
    """
    Process-local store for tests and the single-process memory backend.

    Claims and records expire after ttl_seconds like their Redis keys; expired
    entries read as absent and are swept every `sweep_every` writes, so the
    store is bounded by TTL x reply rate.
    """

    def __init__(
        self,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        *,
        sweep_every: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._claims: Dict[str, Tuple[str, float]] = {}
        self._records: Dict[str, Tuple[DeliveryRecord, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._writes = 0

    async def claim(self, conversation_id: str, source_event_id: str, reply_id: str) -> Optional[str]:
        key = claim_key(conversation_id, source_event_id)
        with self._lock:
            now = self._clock()
            held = self._claims.get(key)
            if held is None or held[1] <= now:
                self._claims[key] = (reply_id, now + self.ttl_seconds)
                self._wrote(now)
                return None
        return None if held[0] == reply_id else held[0]

    async def get(self, reply_id: str) -> Optional[DeliveryRecord]:
        with self._lock:
            entry = self._records.get(reply_id)
            if entry is None:
                return None
            if entry[1] <= self._clock():
                del self._records[reply_id]
                return None
            return entry[0]

    async def save(self, record: DeliveryRecord) -> None:
        with self._lock:
            now = self._clock()
            self._records[record.reply_id] = (record, now + self.ttl_seconds)
            self._wrote(now)

    def _wrote(self, now: float) -> None:
        self._writes += 1
        if self._writes % self._sweep_every == 0:
            self._sweep(now)

    def _sweep(self, now: float) -> None:
        claims = [k for k, (_, expires_at) in self._claims.items() if expires_at <= now]
        for k in claims:
            del self._claims[k]
        records = [k for k, (_, expires_at) in self._records.items() if expires_at <= now]
        for k in records:
            del self._records[k]
        if claims or records:
            logger.debug(
                "Delivery store sweep | claims_removed=%s | records_removed=%s | remaining=%s",
                len(claims),
                len(records),
                len(self._claims) + len(self._records),
            )

    def size(self) -> int:
        with self._lock:
            self._sweep(self._clock())
            return len(self._claims) + len(self._records)

    def records(self) -> Dict[str, DeliveryRecord]:
        with self._lock:
            now = self._clock()
            return {k: record for k, (record, expires_at) in self._records.items() if expires_at > now}
