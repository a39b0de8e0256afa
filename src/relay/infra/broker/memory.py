"""
In-process QueueBroker.

Same routing, ack/nack and dead-letter semantics as the Redis backend, held
in process memory. Used for local mode (queue_backend=memory) and tests.
Nothing survives a restart; AppContext logs that at startup.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
import time
from collections import deque
from typing import Deque, Dict, List, Optional

from src.relay.contracts.queue_message import QueueMessage
from src.relay.errors import PublishError
from src.relay.infra.broker.base import Delivery, QueueBroker
from src.relay.infra.broker.topology import QueueSpec


class InMemoryBroker(QueueBroker):
    backend = "memory"

    def __init__(self, *, block_ms: int = 200, poll_interval_s: float = 0.01) -> None:
        super().__init__(block_ms=block_ms)
        self._poll_interval_s = poll_interval_s
        self._ready: Dict[str, Deque[Delivery]] = {}
        self._unacked: Dict[str, Dict[str, QueueMessage]] = {}
        self._tags = itertools.count(1)
        self._lock = threading.Lock()
        self._closed = False

    async def _persist_queue(self, spec: QueueSpec) -> None:
        with self._lock:
            self._ready.setdefault(spec.name, deque())
            self._unacked.setdefault(spec.name, {})

    async def _append(self, queue: str, message: QueueMessage) -> None:
        with self._lock:
            if self._closed:
                raise PublishError("broker is closed")
            if queue not in self._ready:
                raise PublishError(f"queue {queue!r} is not declared")
            self._ready[queue].append((str(next(self._tags)), message))

    async def _fetch(self, queue: str, count: int, block_ms: int) -> List[Delivery]:
        deadline = time.monotonic() + block_ms / 1000
        while True:
            with self._lock:
                ready = self._ready[queue]
                batch: List[Delivery] = []
                while ready and len(batch) < count:
                    tag, message = ready.popleft()
                    self._unacked[queue][tag] = message
                    batch.append((tag, message))
            if batch or time.monotonic() >= deadline or self._stopping.is_set():
                return batch
            await asyncio.sleep(self._poll_interval_s)

    async def _ack(self, queue: str, tag: str) -> None:
        with self._lock:
            self._unacked[queue].pop(tag, None)

    async def _scan(self, queue: str, limit: Optional[int]) -> List[Delivery]:
        with self._lock:
            items = list(self._ready.get(queue, ()))
        return items if limit is None else items[:limit]

    async def _delete(self, queue: str, tag: str) -> None:
        with self._lock:
            ready = self._ready[queue]
            self._ready[queue] = deque(d for d in ready if d[0] != tag)

    async def queue_depth(self, queue: str) -> int:
        with self._lock:
            return len(self._ready.get(queue, ())) + len(self._unacked.get(queue, {}))

    def recover(self, queue: str) -> int:
        """
        Put every unacked message back at the head of `queue`, as a broker does
        when a consumer connection dies before acking.
        """
        with self._lock:
            unacked = self._unacked[queue]
            pending = list(unacked.items())
            unacked.clear()
            for tag, message in reversed(pending):
                self._ready[queue].appendleft((tag, message))
            return len(pending)

    def drain(self, queue: str) -> List[QueueMessage]:
        """Pop every ready message from `queue` (used by local tooling and tests)."""
        with self._lock:
            ready = self._ready[queue]
            messages = [m for _, m in ready]
            ready.clear()
            return messages

    async def close(self) -> None:
        await super().close()
        with self._lock:
            self._closed = True
