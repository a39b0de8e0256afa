"""
Ticket / agent resolvers.

A resolver maps a conversation to its ticket and assigned agent
configuration. The AIResponseEngine only depends on the protocol:

    async resolve(conversation_id) -> TicketAgentConfig

and expects:
- ResolverNotFound when no ticket / agent is assigned
- TransientInfraError when the backing service is unreachable or slow
- ValidationError when the backing service answers with an unusable config
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import quote

from pydantic import ValidationError as PydanticValidationError

from src.relay.contracts.agent_config import TicketAgentConfig
from src.relay.errors import ResolverNotFound, TransientInfraError, ValidationError
from src.relay.infra.http_client import request_json
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


class TicketAgentResolver(Protocol):
    async def resolve(self, conversation_id: str) -> TicketAgentConfig: ...


def parse_agent_config(payload: Any) -> TicketAgentConfig:
    if not isinstance(payload, dict):
        raise ValidationError("agent config must be a JSON object")
    try:
        return TicketAgentConfig.from_payload(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid agent config: {exc.errors()[0].get('msg')}") from exc


class StaticTicketAgentResolver:
    """In-memory mapping conversation_id -> config (local mode and tests)."""

    def __init__(self, configs: Optional[Mapping[str, Any]] = None) -> None:
        self._configs: Dict[str, TicketAgentConfig] = {}
        for conversation_id, config in (configs or {}).items():
            self.assign(conversation_id, config)

    def assign(self, conversation_id: str, config: Any) -> None:
        if not isinstance(config, TicketAgentConfig):
            config = parse_agent_config(config)
        self._configs[conversation_id] = config

    def unassign(self, conversation_id: str) -> None:
        self._configs.pop(conversation_id, None)

    async def resolve(self, conversation_id: str) -> TicketAgentConfig:
        config = self._configs.get(conversation_id)
        if config is None:
            raise ResolverNotFound(f"no agent assigned to conversation {conversation_id}")
        return config


class HttpTicketAgentResolver:
    """
    Resolves through the ticketing service:

        GET {base_url}/conversations/{conversation_id}/agent

    200 -> config, 404 -> ResolverNotFound, 408/429/5xx and network errors
    -> TransientInfraError, any other status -> ValidationError.
    """

    def __init__(self, base_url: str, *, api_key: Optional[str] = None, timeout_s: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s

    async def resolve(self, conversation_id: str) -> TicketAgentConfig:
        url = f"{self.base_url}/conversations/{quote(conversation_id, safe='')}/agent"
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        try:
            resp = await request_json("GET", url, headers=headers, timeout_s=self.timeout_s)
        except (OSError, TimeoutError) as exc:
            raise TransientInfraError(f"resolver unreachable: {exc}") from exc

        if resp.status == 404:
            raise ResolverNotFound(f"no agent assigned to conversation {conversation_id}")
        if resp.status in (408, 429) or resp.status >= 500:
            raise TransientInfraError(f"resolver returned HTTP {resp.status}")
        if not resp.ok:
            raise ValidationError(f"resolver returned HTTP {resp.status}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise ValidationError("resolver returned invalid JSON") from exc

        config = parse_agent_config(payload)
        logger.debug(
            "Resolved agent config | conversation=%s | ticket=%s | agent=%s",
            conversation_id,
            config.ticket_id,
            config.agent_id,
        )
        return config
