"""
Evolution API WhatsApp sender.

POST {base_url}/message/sendText/{instance}
headers: apikey
body:    {"number": "<jid>", "text": "<text>"}

Bare phone numbers are normalized to "<digits>@s.whatsapp.net"; JIDs that
already carry a domain (groups, LIDs) are passed through.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from src.relay.dispatchers.channels.base import SendResult, provider_error
from src.relay.errors import PermanentProviderError, TransientProviderError
from src.relay.infra.http_client import request_json
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


def normalize_jid(conversation_id: str) -> str:
    value = conversation_id.strip()
    if "@" in value:
        return value
    digits = "".join(ch for ch in value if ch.isdigit())
    if not digits:
        raise PermanentProviderError(f"invalid recipient {conversation_id!r}")
    return f"{digits}@s.whatsapp.net"


class EvolutionApiSender:
    def __init__(self, base_url: str, *, api_key: Optional[str], timeout_s: float = 15.0) -> None:
        if not api_key:
            raise ValueError("EvolutionApiSender: evolution_api_key is missing")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s

    async def send(self, instance_id: str, conversation_id: str, text: str) -> SendResult:
        text = (text or "").strip()
        if not text:
            raise PermanentProviderError("empty message text")
        number = normalize_jid(conversation_id)
        url = f"{self.base_url}/message/sendText/{quote(instance_id, safe='')}"

        logger.info("Sending WhatsApp message via Evolution API | instance=%s | to=%s", instance_id, number)
        try:
            resp = await request_json(
                "POST",
                url,
                headers={"apikey": self.api_key},
                payload={"number": number, "text": text},
                timeout_s=self.timeout_s,
            )
        except (OSError, TimeoutError) as exc:
            raise TransientProviderError(f"Evolution API unreachable: {exc}") from exc

        if not resp.ok:
            raise provider_error(f"Evolution API error: HTTP {resp.status} {resp.body[:200]}", resp.status)

        try:
            data = resp.json() or {}
        except ValueError:
            data = {}
        key = data.get("key") if isinstance(data, dict) else None
        message_id = key.get("id") if isinstance(key, dict) else None

        logger.info("Evolution send success | instance=%s | message_id=%s", instance_id, message_id)
        return SendResult(provider_message_id=message_id)
