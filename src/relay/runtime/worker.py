"""
Worker process entrypoint.

Runs the inbound worker and the outbound dispatcher consume loops until
SIGINT / SIGTERM, then stops reading, drains in-flight handlers and closes
Redis.

    python -m src.relay.runtime.worker
"""

from __future__ import annotations

import asyncio
import signal
from typing import List, Optional

from src.relay.config.settings import Settings, settings
from src.relay.dispatchers.outbound_dispatcher import OutboundDispatcher
from src.relay.infra.langsmith import setup_langsmith_tracing
from src.relay.logging.logger import setup_logger
from src.relay.runtime.context import AppContext
from src.relay.runtime.inbound_worker import InboundWorker

logger = setup_logger(__name__)


def start_consumers(
    ctx: AppContext,
    *,
    inbound_worker: Optional[InboundWorker] = None,
    dispatcher: Optional[OutboundDispatcher] = None,
) -> List[asyncio.Task]:
    """Schedule both consume loops on the running loop and return their tasks."""
    inbound_worker = inbound_worker or ctx.build_inbound_worker()
    dispatcher = dispatcher or ctx.build_outbound_dispatcher()
    cfg = ctx.settings
    return [
        asyncio.create_task(
            ctx.broker.consume(cfg.queue_inbound, inbound_worker.handle, prefetch=cfg.inbound_prefetch),
            name="consume:inbound",
        ),
        asyncio.create_task(
            ctx.broker.consume(cfg.queue_outbound, dispatcher.handle, prefetch=cfg.outbound_prefetch),
            name="consume:outbound",
        ),
    ]


async def stop_consumers(ctx: AppContext, tasks: List[asyncio.Task]) -> None:
    await ctx.broker.stop()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, result in zip(tasks, results):
        if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
            logger.error("Consumer exited with error | task=%s", task.get_name(), exc_info=result)


async def run_worker(cfg: Settings = settings) -> None:
    setup_langsmith_tracing(cfg)
    ctx = await AppContext.create(cfg)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop.set))

    tasks = start_consumers(ctx)
    logger.info("Worker started | inbound=%s | outbound=%s", cfg.queue_inbound, cfg.queue_outbound)

    stop_waiter = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait([stop_waiter, *tasks], return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_waiter.cancel()
        logger.info("Worker shutting down | draining in-flight handlers")
        await stop_consumers(ctx, tasks)
        await ctx.close()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(run_worker())
