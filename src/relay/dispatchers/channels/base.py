"""
Provider sender contract.

Every channel adapter exposes:

    async send(instance_id, conversation_id, text) -> SendResult

and raises ProviderError classified at the point of failure:
- TransientProviderError: timeout, network failure, 408, 429, 5xx
- PermanentProviderError: invalid recipient, blocked number, other 4xx
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from src.relay.errors import PermanentProviderError, ProviderError, TransientProviderError

TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class SendResult:
    provider_message_id: Optional[str]


class ProviderSender(Protocol):
    async def send(self, instance_id: str, conversation_id: str, text: str) -> SendResult: ...


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


def provider_error(message: str, status_code: int) -> ProviderError:
    if is_transient_status(status_code):
        return TransientProviderError(message, status_code=status_code)
    return PermanentProviderError(message, status_code=status_code)
