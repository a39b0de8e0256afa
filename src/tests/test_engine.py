import asyncio

import pytest

from src.relay.contracts.queue_message import Ack, Nack, QueueMessage
from src.relay.contracts.replies import GeneratedReply
from src.relay.engine.ai_response_engine import AIResponseEngine, EngineState
from src.relay.engine.completion import CompletionResult
from src.relay.engine.resolver import StaticTicketAgentResolver
from src.relay.errors import PublishError, TransientInfraError, ValidationError
from src.relay.infra.broker.memory import InMemoryBroker
from src.relay.infra.broker.topology import Binding, ExchangeSpec, QueueSpec, Topology
from src.relay.inputs.webhook_receiver import normalize_event
from src.relay.runtime.inbound_worker import InboundWorker
from src.relay.runtime.retry import RetryPolicy
from src.tests.helpers import RecordingNotifier, ScriptedCompletion, agent_config, webhook_payload

CONVERSATION = "5511999990000@s.whatsapp.net"


@pytest.fixture
def resolver():
    return StaticTicketAgentResolver({CONVERSATION: agent_config()})


@pytest.fixture
def notifier():
    return RecordingNotifier()


def make_engine(broker, retry_manager, resolver, completion, notifier, **kwargs):
    return AIResponseEngine(
        resolver=resolver,
        completion=completion,
        broker=broker,
        retry_manager=retry_manager,
        escalation=notifier,
        exchange="messages",
        **kwargs,
    )


def event(event_id="E1", **overrides):
    return normalize_event(webhook_payload(event_id, **overrides))


@pytest.mark.asyncio
async def test_confident_completion_publishes_one_reply(broker, retry_manager, resolver, notifier):
    completion = ScriptedCompletion(CompletionResult("Your order ships tomorrow.", 0.55))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.RESPONDED
    assert outcome.history == [
        EngineState.RECEIVED,
        EngineState.RESOLVED,
        EngineState.GATED,
        EngineState.RESPONDED,
    ]
    [message] = broker.drain("messages.outbound")
    assert message.routing_key == "I1.outbound"
    reply = GeneratedReply.from_dict(message.body)
    assert reply == outcome.reply
    assert reply.text == "Your order ships tomorrow."
    assert reply.source_event_id == "E1"
    assert reply.ticket_id == "T1"
    assert reply.max_attempts == 3
    assert notifier.signals == []


@pytest.mark.asyncio
async def test_low_confidence_escalates_without_reply(broker, retry_manager, resolver, notifier):
    completion = ScriptedCompletion(CompletionResult("Maybe?", 0.2))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.ESCALATED
    assert outcome.reason == "low_confidence"
    assert broker.drain("messages.outbound") == []
    [signal] = notifier.signals
    assert signal.reason == "low_confidence"
    assert signal.confidence == 0.2
    assert signal.ticket_id == "T1"
    assert (signal.respond_by - signal.created_at).total_seconds() == 30 * 60


@pytest.mark.asyncio
async def test_confidence_equal_to_threshold_responds(broker, retry_manager, resolver, notifier):
    completion = ScriptedCompletion(CompletionResult("ok", 0.4))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))
    assert outcome.state is EngineState.RESPONDED


@pytest.mark.asyncio
async def test_auto_response_disabled_suppresses(broker, retry_manager, notifier):
    resolver = StaticTicketAgentResolver({CONVERSATION: agent_config(autoResponseEnabled=False)})
    completion = ScriptedCompletion(CompletionResult("hi", 0.99))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.SUPPRESSED
    assert outcome.reason == "auto_response_disabled"
    assert completion.calls == []
    assert broker.drain("messages.outbound") == []


@pytest.mark.asyncio
async def test_unassigned_conversation_suppresses(broker, retry_manager, notifier):
    completion = ScriptedCompletion(CompletionResult("hi", 0.99))
    engine = make_engine(broker, retry_manager, StaticTicketAgentResolver(), completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.SUPPRESSED
    assert outcome.reason == "no_agent_assignment"
    assert completion.calls == []


@pytest.mark.asyncio
async def test_self_event_never_produces_a_reply(broker, retry_manager, resolver, notifier):
    completion = ScriptedCompletion(CompletionResult("hi", 0.99))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1", fromSelf=True))

    assert outcome.state is EngineState.SUPPRESSED
    assert completion.calls == []
    assert broker.drain("messages.outbound") == []


@pytest.mark.asyncio
async def test_completion_failures_retry_then_escalate(broker, retry_manager, resolver, notifier, sleeper):
    completion = ScriptedCompletion(TransientInfraError("model overloaded"))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert len(completion.calls) == 3
    assert len(sleeper.delays) == 2
    assert outcome.state is EngineState.ESCALATED
    assert outcome.reason == "completion_failed"
    assert notifier.signals[0].reason == "completion_failed"
    assert broker.drain("messages.outbound") == []


@pytest.mark.asyncio
async def test_completion_attempts_follow_agent_config(broker, retry_manager, notifier):
    resolver = StaticTicketAgentResolver({CONVERSATION: agent_config(maxAttempts=5)})
    completion = ScriptedCompletion(TransientInfraError("x"))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    await engine.process(event("E1"))
    assert len(completion.calls) == 5


@pytest.mark.asyncio
async def test_completion_recovers_after_transient_failure(broker, retry_manager, resolver, notifier):
    completion = ScriptedCompletion(TransientInfraError("x"), CompletionResult("Done!", 0.9))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.RESPONDED
    assert len(broker.drain("messages.outbound")) == 1


@pytest.mark.asyncio
async def test_empty_completion_escalates(broker, retry_manager, resolver, notifier):
    completion = ScriptedCompletion(CompletionResult("", 0.95))
    engine = make_engine(broker, retry_manager, resolver, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.ESCALATED
    assert outcome.reason == "empty_completion"
    assert outcome.confidence == 0.0


@pytest.mark.asyncio
async def test_invalid_agent_config_suppresses(broker, retry_manager, notifier):
    class BrokenResolver:
        async def resolve(self, conversation_id):
            raise ValidationError("invalid agent config")

    engine = make_engine(broker, retry_manager, BrokenResolver(), ScriptedCompletion(), notifier)
    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.SUPPRESSED
    assert outcome.reason == "invalid_agent_config"


@pytest.mark.asyncio
async def test_slow_resolver_is_transient(broker, retry_manager, notifier):
    class SlowResolver:
        async def resolve(self, conversation_id):
            await asyncio.sleep(1)

    engine = make_engine(broker, retry_manager, SlowResolver(), ScriptedCompletion(), notifier, resolver_timeout_s=0.01)
    with pytest.raises(TransientInfraError):
        await engine.process(event("E1"))


@pytest.mark.asyncio
async def test_resolver_blip_is_retried_in_process(broker, retry_manager, notifier, sleeper):
    class FlakyResolver:
        def __init__(self):
            self.calls = 0

        async def resolve(self, conversation_id):
            self.calls += 1
            if self.calls < 3:
                raise TransientInfraError("ticket service restarting")
            return agent_config()

    flaky = FlakyResolver()
    completion = ScriptedCompletion(CompletionResult("On its way.", 0.9))
    engine = make_engine(broker, retry_manager, flaky, completion, notifier)

    outcome = await engine.process(event("E1"))

    assert outcome.state is EngineState.RESPONDED
    assert flaky.calls == 3
    assert len(sleeper.delays) == 2
    assert len(broker.drain("messages.outbound")) == 1


@pytest.mark.asyncio
async def test_resolver_outage_surfaces_after_retries(broker, retry_manager, notifier, sleeper):
    class DownResolver:
        def __init__(self):
            self.calls = 0

        async def resolve(self, conversation_id):
            self.calls += 1
            raise TransientInfraError("ticket service down")

    down = DownResolver()
    engine = make_engine(
        broker, retry_manager, down, ScriptedCompletion(), notifier, retry_policy=RetryPolicy(max_attempts=4)
    )

    with pytest.raises(TransientInfraError, match="after 4 attempt"):
        await engine.process(event("E1"))
    assert down.calls == 4
    assert len(sleeper.delays) == 3


@pytest.mark.asyncio
async def test_unroutable_reply_is_not_reported_as_responded(retry_manager, resolver, notifier):
    inbound_only = InMemoryBroker(block_ms=50, poll_interval_s=0.005)
    await inbound_only.declare_topology(
        Topology(
            exchanges=[ExchangeSpec("messages")],
            queues=[QueueSpec("messages.inbound")],
            bindings=[Binding("messages.inbound", "messages", "*.inbound")],
        )
    )
    completion = ScriptedCompletion(CompletionResult("Your order ships tomorrow.", 0.9))
    engine = make_engine(inbound_only, retry_manager, resolver, completion, notifier)

    with pytest.raises(PublishError):
        await engine.process(event("E1"))
    await inbound_only.close()


class TestInboundWorker:
    @pytest.mark.asyncio
    async def test_processed_event_is_acked(self, broker, retry_manager, resolver, notifier):
        completion = ScriptedCompletion(CompletionResult("hi", 0.9))
        worker = InboundWorker(make_engine(broker, retry_manager, resolver, completion, notifier))

        decision = await worker.handle(QueueMessage(body=event("E1").to_dict()))

        assert decision == Ack()
        assert len(broker.drain("messages.outbound")) == 1

    @pytest.mark.asyncio
    async def test_escalated_event_is_acked(self, broker, retry_manager, resolver, notifier):
        completion = ScriptedCompletion(CompletionResult("hmm", 0.1))
        worker = InboundWorker(make_engine(broker, retry_manager, resolver, completion, notifier))

        assert await worker.handle(QueueMessage(body=event("E1").to_dict())) == Ack()

    @pytest.mark.asyncio
    async def test_malformed_body_is_dead_lettered(self, broker, retry_manager, resolver, notifier):
        worker = InboundWorker(make_engine(broker, retry_manager, resolver, ScriptedCompletion(), notifier))

        decision = await worker.handle(QueueMessage(body={"unexpected": True}))

        assert decision == Nack(requeue=False, reason="malformed")

    @pytest.mark.asyncio
    async def test_transient_failure_is_requeued_after_backoff(self, broker, retry_manager, notifier, sleeper):
        class DownResolver:
            async def resolve(self, conversation_id):
                raise TransientInfraError("ticket service down")

        worker = InboundWorker(
            make_engine(broker, retry_manager, DownResolver(), ScriptedCompletion(), notifier),
            requeue_policy=RetryPolicy(base_delay_ms=200, jitter=False),
            sleep=sleeper,
        )

        decision = await worker.handle(QueueMessage(body=event("E1").to_dict(), attempt=2))

        assert decision == Nack(requeue=True, reason="transient")
        # two in-process resolver retries, then the redelivery backoff for attempt 3
        assert len(sleeper.delays) == 3
        assert sleeper.delays[-1] == pytest.approx(0.8)
        assert await broker.queue_depth("messages.outbound") == 0
