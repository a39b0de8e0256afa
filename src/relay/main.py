"""
FastAPI service entrypoint.

Responsibilities:
- Create FastAPI app
- Build the process AppContext on startup and close it on shutdown
- Register API routes (messages webhook, operator endpoints)
- Act as a lightweight ingress layer

IMPORTANT:
- This service does NOT call the AI backend or the WhatsApp provider
- All execution happens in the workers (python -m src.relay.runtime.worker),
  unless embedded_workers is on (local single-process mode)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from src.relay.api.messages_webhook import router as messages_router
from src.relay.api.operations import router as operations_router
from src.relay.config.settings import Settings, settings
from src.relay.infra.langsmith import setup_langsmith_tracing
from src.relay.logging.logger import setup_logger
from src.relay.runtime.context import AppContext
from src.relay.runtime.worker import start_consumers, stop_consumers

logger = setup_logger(__name__)


def create_app(context: Optional[AppContext] = None, cfg: Settings = settings) -> FastAPI:
    """
    FastAPI application factory.

    A pre-built context (tests) is used as-is and left open on shutdown;
    otherwise one is created from settings and owned by the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        ctx = context or await AppContext.create(cfg)
        app.state.context = ctx
        app.state.receiver = ctx.build_receiver()

        consumers = []
        if context is None and ctx.settings.embedded_workers:
            setup_langsmith_tracing(ctx.settings)
            consumers = start_consumers(ctx)
            logger.info("Embedded workers started")
        elif context is None and ctx.broker.backend == "memory":
            logger.warning("In-memory queue without embedded_workers | nothing will consume the queues")

        try:
            yield
        finally:
            if consumers:
                await stop_consumers(ctx, consumers)
            if context is None:
                await ctx.close()

    app = FastAPI(title="Inbox Relay Ingress Service", lifespan=lifespan)

    # Register routes
    app.include_router(messages_router)
    app.include_router(operations_router)

    logger.info("FastAPI ingress service initialized | env=%s", cfg.app_env)
    return app


# ASGI entrypoint (required by uvicorn)
app = create_app()
