import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.relay.contracts.queue_message import Ack, Nack, QueueMessage
from src.relay.contracts.replies import DeliveryRecord, DeliveryStatus, GeneratedReply
from src.relay.dispatchers.channels.base import SendResult
from src.relay.dispatchers.outbound_dispatcher import OutboundDispatcher
from src.relay.errors import PermanentProviderError, TransientInfraError, TransientProviderError
from src.relay.infra.broker.base import HEADER_DEATH_REASON
from src.relay.infra.delivery_store import InMemoryDeliveryStore
from src.relay.infra.redis.delivery_store import RedisDeliveryStore
from src.tests.helpers import ScriptedSender


def reply(reply_id="R1", source_event_id="E1", max_attempts=3):
    return GeneratedReply(
        instance_id="I1",
        conversation_id="5511999990000@s.whatsapp.net",
        ticket_id="T1",
        text="Your order ships tomorrow.",
        confidence=0.55,
        source_event_id=source_event_id,
        max_attempts=max_attempts,
        reply_id=reply_id,
    )


@pytest.fixture
def store():
    return InMemoryDeliveryStore()


def make_dispatcher(sender, store, broker, retry_manager):
    return OutboundDispatcher(
        sender=sender,
        store=store,
        broker=broker,
        retry_manager=retry_manager,
        queue="messages.outbound",
        exchange="messages",
    )


@pytest.mark.asyncio
async def test_successful_send(store, broker, retry_manager):
    sender = ScriptedSender(SendResult(provider_message_id="wamid-42"))
    record = await make_dispatcher(sender, store, broker, retry_manager).dispatch(reply())

    assert record.status is DeliveryStatus.SENT
    assert record.provider_message_id == "wamid-42"
    assert record.attempt == 1
    assert sender.calls == [("I1", "5511999990000@s.whatsapp.net", "Your order ships tomorrow.")]
    assert await store.get("R1") == record


@pytest.mark.asyncio
async def test_three_transient_failures_dead_letter_without_fourth_attempt(store, broker, retry_manager, sleeper):
    sender = ScriptedSender(TransientProviderError("HTTP 503", status_code=503))
    record = await make_dispatcher(sender, store, broker, retry_manager).dispatch(reply(max_attempts=3))

    assert len(sender.calls) == 3
    assert len(sleeper.delays) == 2
    assert record.status is DeliveryStatus.DEAD_LETTERED
    assert record.attempt == 3
    assert "HTTP 503" in record.last_error

    [dead] = await broker.dead_letters("messages.outbound")
    assert dead.headers[HEADER_DEATH_REASON] == "retry_exhausted"
    assert GeneratedReply.from_dict(dead.body).reply_id == "R1"


@pytest.mark.asyncio
async def test_transient_failure_then_success(store, broker, retry_manager):
    sender = ScriptedSender(TransientProviderError("429", status_code=429), SendResult("wamid-2"))
    record = await make_dispatcher(sender, store, broker, retry_manager).dispatch(reply())

    assert record.status is DeliveryStatus.SENT
    assert record.attempt == 2
    assert len(sender.calls) == 2


@pytest.mark.asyncio
async def test_permanent_failure_is_dead_lettered_without_retry(store, broker, retry_manager, sleeper):
    sender = ScriptedSender(PermanentProviderError("invalid recipient", status_code=400))
    record = await make_dispatcher(sender, store, broker, retry_manager).dispatch(reply())

    assert len(sender.calls) == 1
    assert sleeper.delays == []
    assert record.status is DeliveryStatus.DEAD_LETTERED
    assert record.last_error == "invalid recipient"
    [dead] = await broker.dead_letters("messages.outbound")
    assert dead.headers[HEADER_DEATH_REASON] == "permanent_provider_error"


@pytest.mark.asyncio
async def test_redelivery_of_sent_reply_does_not_send_again(store, broker, retry_manager):
    sender = ScriptedSender()
    dispatcher = make_dispatcher(sender, store, broker, retry_manager)

    first = await dispatcher.dispatch(reply())
    second = await dispatcher.dispatch(reply())

    assert len(sender.calls) == 1
    assert second == first


@pytest.mark.asyncio
async def test_second_reply_for_same_source_event_is_skipped(store, broker, retry_manager):
    sender = ScriptedSender()
    dispatcher = make_dispatcher(sender, store, broker, retry_manager)

    first = await dispatcher.dispatch(reply(reply_id="R1"))
    second = await dispatcher.dispatch(reply(reply_id="R2"))

    assert len(sender.calls) == 1
    assert second.reply_id == "R1"
    assert second.status is DeliveryStatus.SENT
    assert await store.get("R2") is None
    assert first.reply_id == "R1"


@pytest.mark.asyncio
async def test_unconfirmed_attempt_is_dead_lettered_instead_of_resent(store, broker, retry_manager):
    # A previous worker claimed, reached the provider and died before recording the outcome.
    await store.claim("5511999990000@s.whatsapp.net", "E1", "R1")
    await store.save(DeliveryRecord("R1", "5511999990000@s.whatsapp.net", "E1", attempt=1))
    sender = ScriptedSender()

    record = await make_dispatcher(sender, store, broker, retry_manager).dispatch(reply())

    assert sender.calls == []
    assert record.status is DeliveryStatus.DEAD_LETTERED
    assert record.last_error.startswith("unconfirmed_delivery")
    [dead] = await broker.dead_letters("messages.outbound")
    assert dead.headers[HEADER_DEATH_REASON] == "unconfirmed_delivery"


@pytest.mark.asyncio
async def test_claim_without_attempt_is_sent(store, broker, retry_manager):
    # Crash after the claim but before the first provider call.
    await store.claim("5511999990000@s.whatsapp.net", "E1", "R1")
    sender = ScriptedSender()

    record = await make_dispatcher(sender, store, broker, retry_manager).dispatch(reply())

    assert len(sender.calls) == 1
    assert record.status is DeliveryStatus.SENT


class TestHandle:
    @pytest.mark.asyncio
    async def test_sent_is_acked(self, store, broker, retry_manager):
        dispatcher = make_dispatcher(ScriptedSender(), store, broker, retry_manager)
        assert await dispatcher.handle(QueueMessage(body=reply().to_dict())) == Ack()

    @pytest.mark.asyncio
    async def test_parked_dead_letter_is_acked(self, store, broker, retry_manager):
        sender = ScriptedSender(PermanentProviderError("blocked", status_code=403))
        dispatcher = make_dispatcher(sender, store, broker, retry_manager)

        assert await dispatcher.handle(QueueMessage(body=reply().to_dict())) == Ack()
        assert len(await broker.dead_letters("messages.outbound")) == 1

    @pytest.mark.asyncio
    async def test_dead_letter_falls_back_to_broker_when_dlq_publish_fails(self, store, broker, retry_manager):
        sender = ScriptedSender(TransientProviderError("timeout"))
        dispatcher = make_dispatcher(sender, store, broker, retry_manager)
        await broker.close()

        decision = await dispatcher.handle(QueueMessage(body=reply().to_dict()))

        assert isinstance(decision, Nack)
        assert decision.requeue is False

    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected(self, store, broker, retry_manager):
        sender = ScriptedSender()
        dispatcher = make_dispatcher(sender, store, broker, retry_manager)

        decision = await dispatcher.handle(QueueMessage(body={"text": "no ids"}))

        assert decision == Nack(requeue=False, reason="malformed")
        assert sender.calls == []

    @pytest.mark.asyncio
    async def test_store_outage_requeues(self, broker, retry_manager):
        class DownStore(InMemoryDeliveryStore):
            async def claim(self, conversation_id, source_event_id, reply_id):
                raise TransientInfraError("redis down")

        sender = ScriptedSender()
        dispatcher = make_dispatcher(sender, DownStore(), broker, retry_manager)

        decision = await dispatcher.handle(QueueMessage(body=reply().to_dict()))

        assert decision == Nack(requeue=True, reason="transient")
        assert sender.calls == []


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestInMemoryDeliveryStore:
    @pytest.mark.asyncio
    async def test_claim_and_record_expire_after_ttl(self):
        clock = FakeClock()
        store = InMemoryDeliveryStore(60, clock=clock)
        await store.claim("C1", "E1", "R1")
        await store.save(DeliveryRecord(reply_id="R1", conversation_id="C1", source_event_id="E1"))

        assert await store.claim("C1", "E1", "R2") == "R1"
        clock.now += 61

        assert await store.get("R1") is None
        assert await store.claim("C1", "E1", "R2") is None
        assert store.records() == {}

    @pytest.mark.asyncio
    async def test_expired_entries_are_swept_as_writes_arrive(self):
        clock = FakeClock()
        store = InMemoryDeliveryStore(60, sweep_every=4, clock=clock)
        for n in range(50):
            await store.claim("C1", f"E{n}", f"R{n}")
            await store.save(DeliveryRecord(reply_id=f"R{n}", conversation_id="C1", source_event_id=f"E{n}"))
            clock.now += 10

        # only entries written in the last 60s survive, not the 100 ever written
        assert len(store._claims) + len(store._records) <= 2 * (6 + 4)
        assert store.size() == 2 * 5


class TestRedisDeliveryStore:
    @pytest.mark.asyncio
    async def test_claim_is_first_writer_wins(self, fake_redis_client):
        store = RedisDeliveryStore(fake_redis_client, ttl_seconds=3600)

        assert await store.claim("C1", "E1", "R1") is None
        assert await store.claim("C1", "E1", "R1") is None
        assert await store.claim("C1", "E1", "R2") == "R1"
        assert fake_redis_client.redis.ttls["sent:C1:E1"] == 3600

    @pytest.mark.asyncio
    async def test_record_roundtrip(self, fake_redis_client):
        store = RedisDeliveryStore(fake_redis_client, ttl_seconds=3600)
        record = DeliveryRecord("R1", "C1", "E1", attempt=2, status=DeliveryStatus.FAILED, last_error="429")

        await store.save(record)

        assert await store.get("R1") == record
        assert await store.get("R2") is None

    @pytest.mark.asyncio
    async def test_unreadable_record_is_treated_as_missing(self, fake_redis_client):
        store = RedisDeliveryStore(fake_redis_client, ttl_seconds=3600)
        fake_redis_client.redis.data["delivery:R1"] = "{broken"
        assert await store.get("R1") is None

    @pytest.mark.asyncio
    async def test_redis_failure_is_transient(self, fake_redis_client):
        store = RedisDeliveryStore(fake_redis_client, ttl_seconds=3600)
        fake_redis_client.redis.fail_with = RedisConnectionError("down")
        with pytest.raises(TransientInfraError):
            await store.claim("C1", "E1", "R1")


def test_terminal_record_cannot_change_status():
    record = DeliveryRecord("R1", "C1", "E1").transition(DeliveryStatus.SENT)
    with pytest.raises(ValueError):
        record.transition(DeliveryStatus.FAILED)
