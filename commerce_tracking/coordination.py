"""
Coordination primitives

- ``KeyedLock``: per-natural-key asyncio mutex serializing read-modify-write
  upserts inside this process.
- Claim stores: short-lived exclusive keys used as sync-run leases and as
  webhook delivery ids. ``LocalClaims`` keeps them in memory,
  ``RedisClaims`` uses ``SET NX PX`` so several processes share them.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable, Optional

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class KeyedLock:
    """
    One asyncio.Lock per key, dropped once nobody holds or waits for it.

    Example:
        async with locks.hold(("order", order_id)):
            ...
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class ClaimStore(ABC):
    """Exclusive, expiring keys"""

    @abstractmethod
    async def claim(self, key: str, ttl_seconds: float) -> bool:
        """Take ``key`` for ``ttl_seconds``; False if someone else holds it"""

    @abstractmethod
    async def release(self, key: str) -> None:
        """Give ``key`` back before it expires"""

    async def close(self) -> None:
        pass

    @asynccontextmanager
    async def lease(self, key: str, ttl_seconds: float) -> AsyncIterator[bool]:
        """
        Hold ``key`` for the duration of the block.

        Yields True when the lease was acquired. The key is only released
        by the holder.
        """
        acquired = await self.claim(key, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(key)


class LocalClaims(ClaimStore):
    """In-process claims; enough for a single worker"""

    def __init__(self, clock=time.monotonic):
        self._expiry: Dict[str, float] = {}
        self._clock = clock

    async def claim(self, key: str, ttl_seconds: float) -> bool:
        now = self._clock()
        expires = self._expiry.get(key)
        if expires is not None and expires > now:
            return False
        self._expiry[key] = now + ttl_seconds
        self._prune(now)
        return True

    async def release(self, key: str) -> None:
        self._expiry.pop(key, None)

    def _prune(self, now: float) -> None:
        if len(self._expiry) < 1024:
            return
        for key in [k for k, expires in self._expiry.items() if expires <= now]:
            del self._expiry[key]


class RedisClaims(ClaimStore):
    """Claims stored in Redis, shared across processes"""

    def __init__(self, client: Redis, prefix: str = "commerce-tracking"):
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str, socket_timeout: int = 5) -> "RedisClaims":
        client = Redis.from_url(url, socket_timeout=socket_timeout, decode_responses=True)
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def claim(self, key: str, ttl_seconds: float) -> bool:
        acquired = await self._client.set(
            self._key(key),
            "1",
            nx=True,
            px=int(ttl_seconds * 1000),
        )
        return bool(acquired)

    async def release(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")


def create_claim_store(redis_url: Optional[str], prefix: str, socket_timeout: int = 5) -> ClaimStore:
    if redis_url:
        logger.info("Using Redis claims", prefix=prefix)
        return RedisClaims.from_url(redis_url, prefix, socket_timeout)
    return LocalClaims()
