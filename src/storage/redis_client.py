"""
Redis client for shared ephemeral login state.

Pending logins, one-time session credentials and the assertion replay cache
must be visible to every gateway instance, so they live in Redis whenever
REDIS_URL is configured. This module owns the single connection pool.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

SOCKET_TIMEOUT_SECONDS = 5.0


class RedisClient:
    """
    Lazily connected async Redis client.

    ``get_client`` returns None when the server cannot be reached; the
    ephemeral store turns that into a StoreError.
    """

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url
        self._client: Optional[redis.Redis] = None
        self._last_error: Optional[str] = None
        self._connect_lock = asyncio.Lock()

    @property
    def is_configured(self) -> bool:
        return bool(self.redis_url)

    async def get_client(self) -> Optional[redis.Redis]:
        if self._client is not None:
            return self._client
        if not self.redis_url:
            self._last_error = "REDIS_URL is not configured"
            return None

        # Concurrent first requests share one pool
        async with self._connect_lock:
            if self._client is None:
                self._client = await self._connect()
        return self._client

    async def _connect(self) -> Optional[redis.Redis]:
        client = redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=SOCKET_TIMEOUT_SECONDS,
            socket_timeout=SOCKET_TIMEOUT_SECONDS,
            retry_on_timeout=True,
        )
        try:
            await client.ping()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            self._last_error = f"Redis connection failed: {e}"
            logger.warning(self._last_error)
            await client.aclose()
            return None

        self._last_error = None
        logger.info("Connected to Redis for ephemeral SSO state")
        return client

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.aclose()
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")

    async def health_check(self) -> Dict[str, Any]:
        if not self.is_configured:
            return {"status": "not_configured", "connected": False}

        try:
            client = await self.get_client()
            if client is None:
                return {"status": "unavailable", "connected": False, "error": self._last_error}
            await client.ping()
            info = await client.info("server")
        except redis.RedisError as e:
            return {"status": "unhealthy", "connected": False, "error": f"Connection error: {e}"}

        return {
            "status": "healthy",
            "connected": True,
            "redis_version": info.get("redis_version", "unknown"),
        }
