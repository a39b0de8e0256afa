"""
Deduplication cache.

Answers "have I already accepted this inbound event?" for an
(instance_id, event_id) pair with a bounded TTL.

Two backends:
- RedisDedupCache (infra/redis/dedup_cache.py): shared across processes.
- LocalDedupCache (here): process-only. The at-most-once guarantee degrades
  to "at most once per process"; this is exposed as scope == "process" and
  logged at startup, never hidden.

Besides the one-shot accept(), the cache supports a two-phase protocol so the
WebhookReceiver only keeps a dedup record for events it actually published:
- claim():   atomic set-if-absent of a short-lived "pending" marker
- commit():  promote the marker to "committed" with the full TTL
- release(): drop the marker (publish failed)
A pending marker that is never committed expires after pending_ttl_seconds,
so a crash between claim and publish cannot swallow the event for good.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

PENDING = "pending"
COMMITTED = "committed"


def dedup_key(instance_id: str, event_id: str) -> str:
    return f"dedup:{instance_id}:{event_id}"


class ClaimResult(str, Enum):
    ACQUIRED = "acquired"  # caller owns the event
    PENDING = "pending"  # another delivery is publishing it right now
    COMMITTED = "committed"  # already accepted within the TTL window


@dataclass
class DedupStats:
    total_events: int = 0
    duplicates_filtered: int = 0
    unique_events: int = 0

    def as_dict(self, cache_size: Optional[int]) -> Dict[str, object]:
        filter_rate = (self.duplicates_filtered / self.total_events) * 100 if self.total_events else 0.0
        return {
            "totalEvents": self.total_events,
            "duplicatesFiltered": self.duplicates_filtered,
            "uniqueEvents": self.unique_events,
            "filterRate": round(filter_rate, 2),
            "cacheSize": cache_size,
        }


class DeduplicationCache(ABC):
    scope: str = "shared"

    def __init__(self, ttl_seconds: int, *, pending_ttl_seconds: int = 30) -> None:
        if ttl_seconds <= 0 or pending_ttl_seconds <= 0:
            raise ValueError("TTLs must be positive")
        self.ttl_seconds = ttl_seconds
        self.pending_ttl_seconds = min(pending_ttl_seconds, ttl_seconds)
        self._stats = DedupStats()
        self._stats_lock = threading.Lock()

    async def accept(self, instance_id: str, event_id: str) -> bool:
        """True (and the key is recorded with the full TTL) iff the key was absent."""
        won = await self._set_if_absent(dedup_key(instance_id, event_id), COMMITTED, self.ttl_seconds)
        self._record(unique=won)
        return won

    async def claim(self, instance_id: str, event_id: str) -> ClaimResult:
        key = dedup_key(instance_id, event_id)
        if await self._set_if_absent(key, PENDING, self.pending_ttl_seconds):
            return ClaimResult.ACQUIRED
        state = await self._state(key)
        if state == COMMITTED:
            self._record(unique=False)
            return ClaimResult.COMMITTED
        # Pending, or expired between the two calls: the caller must not ack.
        return ClaimResult.PENDING

    async def commit(self, instance_id: str, event_id: str) -> None:
        await self._put(dedup_key(instance_id, event_id), COMMITTED, self.ttl_seconds)
        self._record(unique=True)

    async def release(self, instance_id: str, event_id: str) -> None:
        await self._delete(dedup_key(instance_id, event_id))

    def _record(self, *, unique: bool) -> None:
        with self._stats_lock:
            self._stats.total_events += 1
            if unique:
                self._stats.unique_events += 1
            else:
                self._stats.duplicates_filtered += 1

    async def stats(self) -> Dict[str, object]:
        size = await self.size()
        with self._stats_lock:
            return self._stats.as_dict(size)

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = DedupStats()

    @abstractmethod
    async def size(self) -> Optional[int]: ...

    @abstractmethod
    async def _set_if_absent(self, key: str, state: str, ttl_seconds: int) -> bool: ...

    @abstractmethod
    async def _state(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def _put(self, key: str, state: str, ttl_seconds: int) -> None: ...

    @abstractmethod
    async def _delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class DedupEntry:
    key: str
    state: str
    first_seen_at: datetime
    expires_at: float  # clock() value


class LocalDedupCache(DeduplicationCache):
    """
    In-process dedup table.

    A threading.Lock (never held across an await) makes the check-and-set
    atomic even when the app runs handlers on several threads/event loops.
    Expired entries are treated as absent on lookup and swept every
    `sweep_every` writes, so the table is bounded by TTL x event rate.
    """

    scope = "process"

    def __init__(
        self,
        ttl_seconds: int,
        *,
        pending_ttl_seconds: int = 30,
        sweep_every: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(ttl_seconds, pending_ttl_seconds=pending_ttl_seconds)
        self._entries: Dict[str, DedupEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._writes = 0

    def _live(self, key: str, now: float) -> Optional[DedupEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _write(self, key: str, state: str, ttl_seconds: int, now: float) -> None:
        previous = self._entries.get(key)
        self._entries[key] = DedupEntry(
            key=key,
            state=state,
            first_seen_at=previous.first_seen_at if previous else datetime.now(timezone.utc),
            expires_at=now + ttl_seconds,
        )
        self._writes += 1
        if self._writes % self._sweep_every == 0:
            self._sweep(now)

    async def _set_if_absent(self, key: str, state: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._write(key, state, ttl_seconds, now)
            return True

    async def _state(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry.state if entry else None

    async def _put(self, key: str, state: str, ttl_seconds: int) -> None:
        with self._lock:
            self._write(key, state, ttl_seconds, self._clock())

    async def _delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _sweep(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug("Dedup sweep | removed=%s | remaining=%s", len(expired), len(self._entries))

    async def size(self) -> Optional[int]:
        with self._lock:
            self._sweep(self._clock())
            return len(self._entries)

    def entry(self, instance_id: str, event_id: str) -> Optional[DedupEntry]:
        with self._lock:
            return self._live(dedup_key(instance_id, event_id), self._clock())
