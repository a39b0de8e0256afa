"""
Redis client wrapper.

Responsibilities:
- Create and manage one Redis connection pool per process
- Centralize Redis configuration
- Provide a reusable async Redis client
- Log connection lifecycle clearly

NOTE:
- This module does NOT know about streams, dedup keys or delivery records.
- It only provides a Redis connection. Callers receive the instance from the
  process AppContext; nothing here is a module-level singleton.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import redis.asyncio as redis

from src.relay.config.settings import Settings
from src.relay.logging.logger import setup_logger

logger = setup_logger(__name__)


class RedisClient:
    """
    Thin wrapper around redis.asyncio client.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: Optional[redis.Redis] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> redis.Redis:
        """
        Initialize Redis connection if not already connected.
        """
        async with self._lock:
            if self._client:
                return self._client

            logger.info(
                "Connecting to Redis | host=%s | port=%s | db=%s",
                self.settings.redis_host,
                self.settings.redis_port,
                self.settings.redis_db,
            )

            client = redis.Redis(
                host=self.settings.redis_host,
                port=self.settings.redis_port,
                db=self.settings.redis_db,
                socket_timeout=self.settings.redis_socket_timeout_s,
                socket_connect_timeout=self.settings.redis_socket_timeout_s,
                decode_responses=True,  # important for streams
            )

            try:
                await client.ping()
                logger.info("Redis connection established successfully")
            except Exception as exc:
                logger.error("Failed to connect to Redis", exc_info=exc)
                await client.aclose()
                raise

            self._client = client
            return self._client

    async def get_client(self) -> redis.Redis:
        """
        Get an active Redis client.
        """
        if not self._client:
            await self.connect()
        return self._client

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Redis connection closed")
