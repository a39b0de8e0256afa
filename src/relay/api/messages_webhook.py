"""
Messages webhook (WhatsApp provider -> relay).

Responsibilities:
- Receive inbound message events from the WhatsApp provider
- Hand them to the WebhookReceiver (validate, drop self echoes, dedup, publish)
- Answer the provider quickly with a status it can act on:
    200 accepted / duplicate / self echo
    400 malformed payload (do not retry)
    503 broker or dedup store unavailable, or the same event is still being
        published by a concurrent delivery (retry later)
    500 anything unexpected

NOTE:
- No AI / delivery logic here; all execution happens in the workers.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.relay.errors import TransientInfraError, ValidationError
from src.relay.inputs.webhook_receiver import ReceiveStatus, WebhookReceiver
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)

router = APIRouter()

RETRY_AFTER_SECONDS = "5"


def _receiver(request: Request) -> WebhookReceiver:
    return request.app.state.receiver


@router.post("/webhooks/messages")
async def messages_webhook(request: Request) -> JSONResponse:
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"null")
    except ValueError:
        logger.warning("Invalid JSON webhook body | bytes=%s", len(raw_body))
        return JSONResponse({"status": "rejected", "error": "invalid JSON"}, status_code=400)

    try:
        result = await _receiver(request).handle(payload)
    except ValidationError as exc:
        return JSONResponse({"status": "rejected", "error": str(exc), "field": exc.field}, status_code=400)
    except TransientInfraError as exc:
        logger.error("Webhook not accepted, provider should retry | error=%s", exc)
        return JSONResponse(
            {"status": "unavailable", "error": "temporarily unavailable"},
            status_code=503,
            headers={"Retry-After": RETRY_AFTER_SECONDS},
        )
    except Exception:
        logger.exception("Unexpected webhook failure")
        return JSONResponse({"status": "error", "error": "internal error"}, status_code=500)

    body = {"status": result.status.value, "eventId": result.event.event_id}
    if result.status is ReceiveStatus.IN_FLIGHT:
        return JSONResponse(body, status_code=503, headers={"Retry-After": RETRY_AFTER_SECONDS})
    return JSONResponse(body, status_code=200)


@router.get("/webhooks/deduplication/stats")
async def deduplication_stats(request: Request) -> dict:
    receiver = _receiver(request)
    stats = await receiver.dedup.stats()
    return {
        "scope": receiver.dedup.scope,
        "ttlSeconds": receiver.dedup.ttl_seconds,
        **stats,
        "counters": dict(receiver.counters),
    }
