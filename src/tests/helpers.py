"""Fakes and builders shared by the test modules."""

import asyncio
import fnmatch
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from redis.exceptions import ResponseError

from src.relay.config.settings import Settings
from src.relay.contracts.agent_config import TicketAgentConfig
from src.relay.dispatchers.channels.base import SendResult
from src.relay.engine.completion import CompletionContext, CompletionResult


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "queue_backend": "memory",
        "dedup_backend": "memory",
        "delivery_store_backend": "memory",
        "resolver_backend": "static",
        "retry_jitter": False,
        "retry_base_delay_ms": 10,
        "retry_max_delay_ms": 100,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingSleep:
    """Stands in for asyncio.sleep in RetryManager; records requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeRedis:
    """
    Subset of redis.asyncio.Redis used by the relay (decode_responses=True, no expiry).

    Streams keep a per-group pending list; idle time is measured against a
    manual clock (now_ms, moved with advance()) so reclaim is deterministic.
    """

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.streams: Dict[str, List[Tuple[str, Dict[str, str]]]] = {}
        self.groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.xclaim_calls: List[List[str]] = []
        self.now_ms = 0.0
        self.fail_with: Optional[Exception] = None
        self._seq = 0

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def advance(self, ms: float) -> None:
        self.now_ms += ms

    async def set(self, key: str, value: str, nx: bool = False, xx: bool = False, ex: Optional[int] = None):
        self._check()
        if nx and key in self.data:
            return None
        if xx and key not in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def get(self, key: str):
        self._check()
        return self.data.get(key)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    async def scan_iter(self, match: str = "*", count: int = 100):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key

    async def sadd(self, key: str, *values: str) -> int:
        self._check()
        members = self.sets.setdefault(key, set())
        added = len(set(values) - members)
        members.update(values)
        return added

    # -- streams -------------------------------------------------------

    async def xadd(self, name: str, fields: Dict[str, str], id: str = "*") -> str:
        self._check()
        self._seq += 1
        stream_id = f"{self._seq}-0"
        self.streams.setdefault(name, []).append((stream_id, {k: str(v) for k, v in fields.items()}))
        return stream_id

    async def xgroup_create(self, name: str, groupname: str, id: str = "$", mkstream: bool = False) -> bool:
        self._check()
        if name not in self.streams:
            if not mkstream:
                raise ResponseError("ERR The XGROUP subcommand requires the key to exist")
            self.streams[name] = []
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.groups[(name, groupname)] = {"last": 0, "pending": {}}
        return True

    async def xreadgroup(self, groupname: str, consumername: str, streams: Dict[str, str], count=None, block=None):
        self._check()
        response = []
        for name in streams:
            group = self.groups[(name, groupname)]
            fresh = [e for e in self.streams.get(name, []) if _seq_of(e[0]) > group["last"]]
            fresh = fresh[:count] if count else fresh
            for stream_id, _ in fresh:
                group["last"] = _seq_of(stream_id)
                group["pending"][stream_id] = [consumername, self.now_ms, 1]
            if fresh:
                response.append([name, fresh])
        if not response and block:
            await asyncio.sleep(min(block, 10) / 1000)
        return response

    async def xautoclaim(
        self, name: str, groupname: str, consumername: str, min_idle_time: int, start_id: str = "0-0", count=None
    ):
        self._check()
        pending = self.groups[(name, groupname)]["pending"]
        candidates = sorted((i for i in pending if _seq_of(i) >= _seq_of(start_id)), key=_seq_of)
        scanned = candidates[:count] if count else candidates
        cursor = candidates[len(scanned)] if len(candidates) > len(scanned) else "0-0"
        entries = dict(self.streams.get(name, []))
        claimed, deleted = [], []
        for stream_id in scanned:
            owner = pending[stream_id]
            if self.now_ms - owner[1] < min_idle_time:
                continue
            if stream_id not in entries:
                deleted.append(stream_id)
                del pending[stream_id]
                continue
            pending[stream_id] = [consumername, self.now_ms, owner[2] + 1]
            claimed.append((stream_id, entries[stream_id]))
        return [cursor, claimed, deleted]

    async def xclaim(
        self, name: str, groupname: str, consumername: str, min_idle_time: int, message_ids, justid: bool = False
    ):
        self._check()
        self.xclaim_calls.append(list(message_ids))
        pending = self.groups[(name, groupname)]["pending"]
        claimed = []
        for stream_id in message_ids:
            owner = pending.get(stream_id)
            if owner is None or self.now_ms - owner[1] < min_idle_time:
                continue
            pending[stream_id] = [consumername, self.now_ms, owner[2] if justid else owner[2] + 1]
            claimed.append(stream_id)
        return claimed

    async def xack(self, name: str, groupname: str, *ids: str) -> int:
        self._check()
        pending = self.groups[(name, groupname)]["pending"]
        return sum(1 for i in ids if pending.pop(i, None) is not None)

    async def xdel(self, name: str, *ids: str) -> int:
        self._check()
        entries = self.streams.get(name, [])
        kept = [e for e in entries if e[0] not in ids]
        self.streams[name] = kept
        return len(entries) - len(kept)

    async def xrange(self, name: str, min: str = "-", max: str = "+", count=None):
        self._check()
        entries = list(self.streams.get(name, []))
        return entries[:count] if count else entries

    async def xlen(self, name: str) -> int:
        self._check()
        return len(self.streams.get(name, []))

    def pending_owner(self, name: str, groupname: str, stream_id: str) -> Optional[str]:
        owner = self.groups[(name, groupname)]["pending"].get(stream_id)
        return owner[0] if owner else None

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)


class FakePipeline:
    """Queues stream calls and runs them in order on execute()."""

    def __init__(self, redis: FakeRedis) -> None:
        self.redis = redis
        self.calls: List[Tuple[str, tuple]] = []

    def xack(self, *args: Any) -> "FakePipeline":
        self.calls.append(("xack", args))
        return self

    def xdel(self, *args: Any) -> "FakePipeline":
        self.calls.append(("xdel", args))
        return self

    async def execute(self) -> List[Any]:
        return [await getattr(self.redis, name)(*args) for name, args in self.calls]


def _seq_of(stream_id: str) -> int:
    return int(stream_id.split("-")[0])


class FakeRedisClient:
    """Stands in for src.relay.infra.redis.client.RedisClient."""

    def __init__(self, redis: Optional[FakeRedis] = None) -> None:
        self.redis = redis or FakeRedis()

    async def get_client(self) -> FakeRedis:
        return self.redis


class ScriptedCompletion:
    """AgentCompletion returning (or raising) the scripted items in order; the last one repeats."""

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: List[CompletionContext] = []

    async def complete(self, context: CompletionContext) -> CompletionResult:
        self.calls.append(context)
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedSender:
    """ProviderSender returning (or raising) the scripted items in order; the last one repeats."""

    def __init__(self, *script: Any) -> None:
        self.script = list(script) or [SendResult(provider_message_id="wamid-1")]
        self.calls: List[tuple] = []

    async def send(self, instance_id: str, conversation_id: str, text: str) -> SendResult:
        self.calls.append((instance_id, conversation_id, text))
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


class RecordingNotifier:
    def __init__(self) -> None:
        self.signals: list = []

    async def notify(self, signal) -> None:
        self.signals.append(signal)


def agent_config(**overrides: Any) -> TicketAgentConfig:
    values: Dict[str, Any] = {
        "ticketId": "T1",
        "agentId": "A1",
        "autoResponseEnabled": True,
        "confidenceThreshold": 0.4,
        "maxAttempts": 3,
    }
    values.update(overrides)
    return TicketAgentConfig.from_payload(values)


def webhook_payload(event_id: str = "E1", **event_overrides: Any) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "id": event_id,
        "conversationId": "5511999990000@s.whatsapp.net",
        "fromSelf": False,
        "timestamp": 1760000000,
        "content": {"text": "Where is my order?"},
    }
    event.update(event_overrides)
    return {"instanceId": "I1", "event": event}


async def wait_for(predicate: Callable[[], Any], timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)
