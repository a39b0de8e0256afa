from typing import Any, Dict

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    app_env: str = "local"
    app_log_level: str = "INFO"
    # Run the inbound worker and outbound dispatcher inside the API process
    # (required when queue_backend == "memory")
    embedded_workers: bool = False

    # Backends: "redis" (shared across processes) or "memory" (process-only)
    queue_backend: str = "redis"
    dedup_backend: str = "redis"
    delivery_store_backend: str = "redis"

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_socket_timeout_s: float = 5.0
    redis_topology_prefix: str = "topology"

    # Deduplication
    dedup_ttl_seconds: int = Field(default=120, ge=60, le=300)
    dedup_pending_ttl_seconds: int = 30
    dedup_local_sweep_every: int = 256

    # Queue topology
    exchange_messages: str = "messages"
    exchange_dead_letter: str = "messages.dlx"
    queue_inbound: str = "messages.inbound"
    queue_outbound: str = "messages.outbound"
    dlq_suffix: str = ".dlq"
    queue_message_ttl_ms: int = 60 * 60 * 1000  # 1 hour
    queue_delivery_limit: int = 5

    # Consumers
    redis_consumer_group: str = "relay_workers"
    redis_consumer_name: str = "worker-1"
    inbound_prefetch: int = 10
    outbound_prefetch: int = 10
    consumer_block_ms: int = 2000  # keep below redis_socket_timeout_s
    consumer_reclaim_idle_ms: int = 60_000

    # Retry defaults (per-ticket max_attempts overrides max attempts)
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 500
    retry_max_delay_ms: int = 30_000
    retry_jitter: bool = True

    # Collaborator timeouts
    resolver_timeout_s: float = 5.0
    completion_timeout_s: float = 30.0
    provider_send_timeout_s: float = 15.0

    # Outbound idempotency
    outbound_idempotency_ttl_seconds: int = 7 * 24 * 60 * 60  # 7 days

    # Outbound provider: "evolution" or "twilio"
    outbound_provider: str = "evolution"
    evolution_api_url: str = "http://localhost:8080"
    evolution_api_key: str | None = None

    # Twilio
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_whatsapp_from: str | None = None

    # Ticket / agent resolver: "http" or "static" (static uses resolver_static_agents)
    resolver_backend: str = "http"
    resolver_base_url: str = "http://localhost:3000/api"
    resolver_api_key: str | None = None
    resolver_static_agents: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    # LLM
    llm_provider: str = "openai"
    llm_model_name: str | None = None
    openai_api_key: str | None = None

    # LangSmith / LangChain tracing (optional)
    langchain_tracing_v2: bool = Field(
        default=False,
        validation_alias=AliasChoices("LANGCHAIN_TRACING_V2", "LANGSMITH_TRACING"),
    )
    langchain_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LANGCHAIN_API_KEY", "LANGSMITH_API_KEY"),
    )
    langchain_project: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LANGCHAIN_PROJECT", "LANGSMITH_PROJECT"),
    )
    langchain_endpoint: str | None = Field(
        default=None,
        validation_alias=AliasChoices("LANGCHAIN_ENDPOINT", "LANGSMITH_ENDPOINT"),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
