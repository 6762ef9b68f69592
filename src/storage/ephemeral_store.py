"""
TTL-bound key-value storage for short-lived login state.

Used for pending logins (RelayState), one-time session credentials and the
assertion replay cache. Every entry is consumed at most once: ``take_once``
atomically reads and deletes.

Two implementations:
- InMemoryEphemeralStore: single-process development and tests
- RedisEphemeralStore: shared across instances (SET EX / SET NX / GETDEL)

Redis failures raise StoreError; the Redis store never falls back to
process memory.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis

from src.auth.sso.errors import StoreError

from .redis_client import RedisClient

logger = logging.getLogger(__name__)

KEY_PREFIX = "sso:"


class BaseEphemeralStore(ABC):
    """Abstract base class for ephemeral store implementations."""

    @abstractmethod
    async def put(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        """Store ``payload`` under ``key`` for ``ttl`` seconds, replacing any value."""

    @abstractmethod
    async def put_if_absent(self, key: str, payload: Dict[str, Any], ttl: int) -> bool:
        """Store only when ``key`` is unused. Returns False if it already exists."""

    @abstractmethod
    async def take_once(self, key: str) -> Optional[Dict[str, Any]]:
        """Atomically return and delete the payload; None if missing or expired."""

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": self.__class__.__name__}


class InMemoryEphemeralStore(BaseEphemeralStore):
    """In-memory store for local development and testing."""

    def __init__(self, clock=time.monotonic) -> None:
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (expires, _) in self._entries.items() if expires <= now]
        for key in expired:
            del self._entries[key]

    async def put(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        async with self._lock:
            self._purge_expired()
            self._entries[key] = (self._clock() + ttl, dict(payload))

    async def put_if_absent(self, key: str, payload: Dict[str, Any], ttl: int) -> bool:
        async with self._lock:
            self._purge_expired()
            if key in self._entries:
                return False
            self._entries[key] = (self._clock() + ttl, dict(payload))
            return True

    async def take_once(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            self._purge_expired()
            entry = self._entries.pop(key, None)
        return entry[1] if entry else None

    def __len__(self) -> int:
        self._purge_expired()
        return len(self._entries)


class RedisEphemeralStore(BaseEphemeralStore):
    """Redis-backed store shared by all gateway instances."""

    def __init__(self, client: RedisClient, prefix: str = KEY_PREFIX) -> None:
        self._client = client
        self._prefix = prefix

    async def _redis(self) -> redis.Redis:
        client = await self._client.get_client()
        if client is None:
            raise StoreError("Ephemeral store is unavailable")
        return client

    async def put(self, key: str, payload: Dict[str, Any], ttl: int) -> None:
        conn = await self._redis()
        try:
            await conn.set(f"{self._prefix}{key}", json.dumps(payload, default=str), ex=ttl)
        except redis.RedisError as e:
            logger.warning(f"Redis put failed: {e}")
            raise StoreError("Ephemeral store write failed") from e

    async def put_if_absent(self, key: str, payload: Dict[str, Any], ttl: int) -> bool:
        conn = await self._redis()
        try:
            created = await conn.set(
                f"{self._prefix}{key}",
                json.dumps(payload, default=str),
                ex=ttl,
                nx=True,
            )
        except redis.RedisError as e:
            logger.warning(f"Redis put_if_absent failed: {e}")
            raise StoreError("Ephemeral store write failed") from e
        return bool(created)

    async def take_once(self, key: str) -> Optional[Dict[str, Any]]:
        conn = await self._redis()
        try:
            raw = await conn.getdel(f"{self._prefix}{key}")
        except redis.RedisError as e:
            logger.warning(f"Redis take_once failed: {e}")
            raise StoreError("Ephemeral store read failed") from e
        if raw is None:
            return None
        return json.loads(raw)

    async def health_check(self) -> Dict[str, Any]:
        health = await self._client.health_check()
        health["backend"] = self.__class__.__name__
        return health
