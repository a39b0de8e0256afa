"""
Operator endpoints: health and dead-letter queues.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Query, Request

from src.relay.errors import PublishError, TransientInfraError
from src.relay.logging.logger import setup_logger
from src.relay.runtime.context import AppContext

logger = setup_logger(__name__)

router = APIRouter()


def _context(request: Request) -> AppContext:
    return request.app.state.context


def _work_queue(ctx: AppContext, queue: str) -> str:
    if queue not in (ctx.settings.queue_inbound, ctx.settings.queue_outbound):
        raise HTTPException(status_code=404, detail=f"unknown queue {queue!r}")
    return queue


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    ctx = _context(request)
    queues: Dict[str, Any] = {}
    status = "ok"
    for name in (ctx.settings.queue_inbound, ctx.settings.queue_outbound):
        try:
            queues[name] = {
                "depth": await ctx.broker.queue_depth(name),
                "deadLetters": await ctx.broker.queue_depth(ctx.broker.dead_letter_queue(name)),
            }
        except TransientInfraError as exc:
            status = "degraded"
            queues[name] = {"error": str(exc)}

    return {
        "status": status,
        "env": ctx.settings.app_env,
        "broker": ctx.broker.backend,
        "dedup": {"scope": ctx.dedup.scope, "ttlSeconds": ctx.dedup.ttl_seconds},
        "queues": queues,
    }


@router.get("/queues/{queue}/dead-letters")
async def list_dead_letters(request: Request, queue: str, limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
    ctx = _context(request)
    queue = _work_queue(ctx, queue)
    messages = await ctx.broker.dead_letters(queue, limit=limit)
    return {
        "queue": queue,
        "deadLetterQueue": ctx.broker.dead_letter_queue(queue),
        "count": len(messages),
        "messages": [
            {
                "id": m.id,
                "routingKey": m.routing_key,
                "attempt": m.attempt,
                "enqueuedAt": m.enqueued_at.isoformat(),
                "headers": m.headers,
                "body": m.body,
            }
            for m in messages
        ],
    }


@router.post("/queues/{queue}/dead-letters/{message_id}/requeue")
async def requeue_dead_letter(request: Request, queue: str, message_id: str) -> Dict[str, Any]:
    ctx = _context(request)
    queue = _work_queue(ctx, queue)
    try:
        requeued = await ctx.broker.requeue_dead_letter(queue, message_id)
    except PublishError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not requeued:
        raise HTTPException(status_code=404, detail=f"dead letter {message_id!r} not found")
    logger.info("Dead letter requeued by operator | queue=%s | message_id=%s", queue, message_id)
    return {"status": "requeued", "queue": queue, "messageId": message_id}
