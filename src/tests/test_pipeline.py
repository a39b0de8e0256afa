"""End-to-end over the in-memory backends: webhook -> inbound worker -> engine -> dispatcher -> sender."""

import asyncio

import pytest
import pytest_asyncio

from src.relay.contracts.replies import DeliveryStatus
from src.relay.engine.completion import CompletionResult
from src.relay.engine.resolver import StaticTicketAgentResolver
from src.relay.inputs.webhook_receiver import ReceiveStatus
from src.relay.runtime.context import AppContext
from src.relay.runtime.worker import start_consumers, stop_consumers
from src.tests.helpers import (
    RecordingNotifier,
    ScriptedCompletion,
    ScriptedSender,
    agent_config,
    make_settings,
    wait_for,
    webhook_payload,
)

CONVERSATION = "5511999990000@s.whatsapp.net"


@pytest_asyncio.fixture
async def ctx():
    context = await AppContext.create(make_settings())
    yield context
    await context.close()


async def run_pipeline(ctx, completion, sender, notifier):
    resolver = StaticTicketAgentResolver({CONVERSATION: agent_config(confidenceThreshold=0.4)})
    worker = ctx.build_inbound_worker(resolver=resolver, completion=completion, escalation=notifier)
    dispatcher = ctx.build_outbound_dispatcher(sender=sender)
    return start_consumers(ctx, inbound_worker=worker, dispatcher=dispatcher)


@pytest.mark.asyncio
async def test_confident_reply_is_sent_once_even_when_webhook_is_redelivered(ctx):
    completion = ScriptedCompletion(CompletionResult("Your order ships tomorrow.", 0.55))
    sender = ScriptedSender()
    notifier = RecordingNotifier()
    tasks = await run_pipeline(ctx, completion, sender, notifier)
    receiver = ctx.build_receiver()
    try:
        first = await receiver.handle(webhook_payload("E1"))
        await wait_for(lambda: len(sender.calls) == 1)

        second = await receiver.handle(webhook_payload("E1"))
        await asyncio.sleep(0.3)
    finally:
        await stop_consumers(ctx, tasks)

    assert first.status is ReceiveStatus.ACCEPTED
    assert second.status is ReceiveStatus.DUPLICATE
    assert sender.calls == [("I1", CONVERSATION, "Your order ships tomorrow.")]
    assert len(completion.calls) == 1
    assert notifier.signals == []

    [record] = ctx.delivery_store.records().values()
    assert record.status is DeliveryStatus.SENT
    assert record.source_event_id == "E1"


@pytest.mark.asyncio
async def test_low_confidence_escalates_without_outbound(ctx):
    completion = ScriptedCompletion(CompletionResult("Maybe?", 0.2))
    sender = ScriptedSender()
    notifier = RecordingNotifier()
    tasks = await run_pipeline(ctx, completion, sender, notifier)
    try:
        await ctx.build_receiver().handle(webhook_payload("E2"))
        await wait_for(lambda: len(notifier.signals) == 1)
        await asyncio.sleep(0.2)
    finally:
        await stop_consumers(ctx, tasks)

    [signal] = notifier.signals
    assert signal.reason == "low_confidence"
    assert signal.event_id == "E2"
    assert sender.calls == []
    assert await ctx.broker.queue_depth(ctx.settings.queue_outbound) == 0


@pytest.mark.asyncio
async def test_self_echo_never_reaches_the_engine(ctx):
    completion = ScriptedCompletion(CompletionResult("hi", 0.9))
    sender = ScriptedSender()
    tasks = await run_pipeline(ctx, completion, sender, RecordingNotifier())
    try:
        result = await ctx.build_receiver().handle(webhook_payload("E3", fromSelf=True))
        await asyncio.sleep(0.2)
    finally:
        await stop_consumers(ctx, tasks)

    assert result.status is ReceiveStatus.SELF_ECHO
    assert completion.calls == []
    assert sender.calls == []
