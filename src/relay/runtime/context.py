"""
Process-scoped application context.

Builds the shared handles once per process (Redis connection, broker,
dedup cache, delivery store, retry manager) from Settings and declares the
queue topology. The API and the workers receive the context explicitly;
nothing here is a module-level singleton.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from src.relay.config.settings import Settings
from src.relay.dispatchers.channels.base import ProviderSender
from src.relay.dispatchers.channels.evolution_sender import EvolutionApiSender
from src.relay.dispatchers.channels.twilio_whatsapp_sender import TwilioWhatsAppSender
from src.relay.dispatchers.outbound_dispatcher import OutboundDispatcher
from src.relay.engine.ai_response_engine import AIResponseEngine
from src.relay.engine.completion import AgentCompletion, LangChainAgentCompletion, build_chat_model
from src.relay.engine.escalation import EscalationNotifier, LoggingEscalationNotifier
from src.relay.engine.resolver import HttpTicketAgentResolver, StaticTicketAgentResolver, TicketAgentResolver
from src.relay.infra.broker.base import QueueBroker
from src.relay.infra.broker.memory import InMemoryBroker
from src.relay.infra.broker.topology import Topology, default_topology
from src.relay.infra.dedup import DeduplicationCache, LocalDedupCache
from src.relay.infra.delivery_store import DeliveryStore, InMemoryDeliveryStore
from src.relay.infra.redis import RedisClient, RedisDedupCache, RedisDeliveryStore, RedisStreamBroker
from src.relay.inputs.webhook_receiver import WebhookReceiver
from src.relay.logging.logger import setup_logger
from src.relay.runtime.inbound_worker import InboundWorker
from src.relay.runtime.retry import RetryManager, RetryPolicy

logger = setup_logger(__name__)

BACKENDS = ("redis", "memory")


def _backend(name: str, value: str) -> str:
    value = (value or "").lower()
    if value not in BACKENDS:
        raise ValueError(f"Unsupported {name}={value!r}. Use 'redis' or 'memory'.")
    return value


@dataclass
class AppContext:
    settings: Settings
    broker: QueueBroker
    dedup: DeduplicationCache
    delivery_store: DeliveryStore
    retry_manager: RetryManager
    topology: Topology
    redis: Optional[RedisClient] = None

    @classmethod
    async def create(cls, settings: Settings) -> "AppContext":
        queue_backend = _backend("queue_backend", settings.queue_backend)
        dedup_backend = _backend("dedup_backend", settings.dedup_backend)
        store_backend = _backend("delivery_store_backend", settings.delivery_store_backend)

        redis_client: Optional[RedisClient] = None
        if "redis" in (queue_backend, dedup_backend, store_backend):
            redis_client = RedisClient(settings)
            await redis_client.connect()

        broker: QueueBroker
        if queue_backend == "redis":
            broker = RedisStreamBroker(
                redis_client,
                group_name=settings.redis_consumer_group,
                consumer_name=f"{settings.redis_consumer_name}:{os.getpid()}",
                topology_prefix=settings.redis_topology_prefix,
                block_ms=settings.consumer_block_ms,
                reclaim_idle_ms=settings.consumer_reclaim_idle_ms,
            )
        else:
            broker = InMemoryBroker()
            logger.warning("Queue backend is in-memory | messages do not survive a restart or leave this process")

        dedup: DeduplicationCache
        if dedup_backend == "redis":
            dedup = RedisDedupCache(
                redis_client,
                settings.dedup_ttl_seconds,
                pending_ttl_seconds=settings.dedup_pending_ttl_seconds,
            )
        else:
            dedup = LocalDedupCache(
                settings.dedup_ttl_seconds,
                pending_ttl_seconds=settings.dedup_pending_ttl_seconds,
                sweep_every=settings.dedup_local_sweep_every,
            )
            logger.warning("Dedup cache is process-local | scope=process | duplicates are only filtered per process")

        store: DeliveryStore
        if store_backend == "redis":
            store = RedisDeliveryStore(redis_client, settings.outbound_idempotency_ttl_seconds)
        else:
            store = InMemoryDeliveryStore(settings.outbound_idempotency_ttl_seconds)

        topology = default_topology(settings)
        await broker.declare_topology(topology)

        logger.info(
            "App context ready | env=%s | queue=%s | dedup=%s | delivery_store=%s | dedup_ttl_s=%s",
            settings.app_env,
            queue_backend,
            dedup_backend,
            store_backend,
            settings.dedup_ttl_seconds,
        )
        return cls(
            settings=settings,
            broker=broker,
            dedup=dedup,
            delivery_store=store,
            retry_manager=RetryManager(),
            topology=topology,
            redis=redis_client,
        )

    async def close(self) -> None:
        await self.broker.close()
        if self.redis is not None:
            await self.redis.close()

    def retry_policy(self, *, attempt_timeout_s: Optional[float] = None) -> RetryPolicy:
        return RetryPolicy.from_settings(self.settings, attempt_timeout_s=attempt_timeout_s)

    def build_receiver(self) -> WebhookReceiver:
        return WebhookReceiver(self.dedup, self.broker, exchange=self.settings.exchange_messages)

    def build_inbound_worker(
        self,
        *,
        resolver: Optional[TicketAgentResolver] = None,
        completion: Optional[AgentCompletion] = None,
        escalation: Optional[EscalationNotifier] = None,
    ) -> InboundWorker:
        engine = AIResponseEngine(
            resolver=resolver or build_resolver(self.settings),
            completion=completion or LangChainAgentCompletion(build_chat_model(self.settings)),
            broker=self.broker,
            retry_manager=self.retry_manager,
            escalation=escalation or LoggingEscalationNotifier(),
            exchange=self.settings.exchange_messages,
            retry_policy=self.retry_policy(attempt_timeout_s=self.settings.completion_timeout_s),
            resolver_timeout_s=self.settings.resolver_timeout_s,
        )
        return InboundWorker(engine, requeue_policy=self.retry_policy())

    def build_outbound_dispatcher(self, *, sender: Optional[ProviderSender] = None) -> OutboundDispatcher:
        return OutboundDispatcher(
            sender=sender or build_sender(self.settings),
            store=self.delivery_store,
            broker=self.broker,
            retry_manager=self.retry_manager,
            queue=self.settings.queue_outbound,
            exchange=self.settings.exchange_messages,
            retry_policy=self.retry_policy(attempt_timeout_s=self.settings.provider_send_timeout_s),
        )


def build_resolver(settings: Settings) -> TicketAgentResolver:
    backend = (settings.resolver_backend or "http").lower()
    if backend == "static":
        return StaticTicketAgentResolver(settings.resolver_static_agents)
    if backend == "http":
        return HttpTicketAgentResolver(
            settings.resolver_base_url,
            api_key=settings.resolver_api_key,
            timeout_s=settings.resolver_timeout_s,
        )
    raise ValueError(f"Unsupported resolver_backend={backend!r}. Use 'http' or 'static'.")


def build_sender(settings: Settings) -> ProviderSender:
    provider = (settings.outbound_provider or "evolution").lower()
    if provider == "evolution":
        return EvolutionApiSender(
            settings.evolution_api_url,
            api_key=settings.evolution_api_key,
            timeout_s=settings.provider_send_timeout_s,
        )
    if provider == "twilio":
        return TwilioWhatsAppSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            whatsapp_from=settings.twilio_whatsapp_from,
            timeout_s=settings.provider_send_timeout_s,
        )
    raise ValueError(f"Unsupported outbound_provider={provider!r}. Use 'evolution' or 'twilio'.")
