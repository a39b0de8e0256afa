"""
Twilio WhatsApp sender.

Responsibilities:
- Send WhatsApp messages via the Twilio API
- Map Twilio failures onto transient / permanent ProviderErrors

The Twilio SDK is blocking; calls run in a worker thread with a timeout.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from src.relay.dispatchers.channels.base import SendResult, provider_error
from src.relay.errors import PermanentProviderError, TransientProviderError
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


def to_whatsapp_address(conversation_id: str) -> str:
    """
    "5511999990000@s.whatsapp.net" / "+5511999990000" / "whatsapp:+55..."
    -> "whatsapp:+5511999990000"
    """
    value = conversation_id.strip()
    if value.startswith("whatsapp:"):
        return value
    digits = "".join(ch for ch in value.split("@", 1)[0] if ch.isdigit())
    if not digits or "@g.us" in value:
        raise PermanentProviderError(f"invalid recipient {conversation_id!r}")
    return f"whatsapp:+{digits}"


class TwilioWhatsAppSender:
    def __init__(
        self,
        *,
        account_sid: Optional[str],
        auth_token: Optional[str],
        whatsapp_from: Optional[str],
        timeout_s: float = 15.0,
        client: Optional[Client] = None,
    ) -> None:
        if not account_sid:
            raise ValueError("TwilioWhatsAppSender: twilio_account_sid is missing")
        if not auth_token:
            raise ValueError("TwilioWhatsAppSender: twilio_auth_token is missing")
        if not whatsapp_from:
            raise ValueError("TwilioWhatsAppSender: twilio_whatsapp_from is missing")

        self.whatsapp_from = whatsapp_from
        self.timeout_s = timeout_s
        self._client = client or Client(account_sid, auth_token)

    def _create(self, to: str, body: str) -> str:
        msg = self._client.messages.create(from_=self.whatsapp_from, to=to, body=body)
        return msg.sid

    async def send(self, instance_id: str, conversation_id: str, text: str) -> SendResult:
        text = (text or "").strip()
        if not text:
            raise PermanentProviderError("empty message text")
        to = to_whatsapp_address(conversation_id)

        logger.info("Sending WhatsApp message via Twilio | instance=%s | to=%s", instance_id, to)
        try:
            sid = await asyncio.wait_for(asyncio.to_thread(self._create, to, text), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(f"Twilio send timed out after {self.timeout_s}s") from exc
        except TwilioRestException as exc:
            raise provider_error(f"Twilio error {exc.code}: {exc.msg}", exc.status) from exc
        except (TwilioException, OSError) as exc:
            raise TransientProviderError(f"Twilio unreachable: {exc}") from exc

        logger.info("Twilio send success | sid=%s | to=%s", sid, to)
        return SendResult(provider_message_id=sid)
