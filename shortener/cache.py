"""Redis client lifecycle and the read-through URL cache.

The cache is never authoritative: a missing key means "unknown", and every
caller treats a Redis failure as a miss.

Key Layout
==========
::
    url:<short_code>  ->  {"original_url": "...", "expires_at": "...|null"}
                          TTL = min(CACHE_TTL_SECONDS, seconds until expiry)
"""

import datetime
import math
from typing import Protocol

import redis.asyncio as redis

from shortener.config import get_settings
from shortener.schemas import CachedURLPayload

__all__ = ["URLCache", "RedisURLCache", "create_redis", "close_redis"]

settings = get_settings()


class URLCache(Protocol):
    async def get(self, short_code: str) -> CachedURLPayload | None: ...

    async def set(self, short_code: str, payload: CachedURLPayload) -> None: ...

    async def delete(self, short_code: str) -> None: ...

    async def ping(self) -> None: ...


def create_redis(url: str = settings.REDIS_URL) -> redis.Redis:
    return redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
    )


async def close_redis(client: redis.Redis | None) -> None:
    if client is not None:
        await client.aclose()


class RedisURLCache:
    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = settings.CACHE_TTL_SECONDS,
        key_prefix: str = settings.CACHE_KEY_PREFIX,
    ) -> None:
        assert ttl_seconds > 0, f"ttl_seconds must be positive, got {ttl_seconds!r}"
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix

    def key(self, short_code: str) -> str:
        return f"{self._key_prefix}:{short_code}"

    async def get(self, short_code: str) -> CachedURLPayload | None:
        raw = await self._client.get(self.key(short_code))
        if not raw:
            return None
        return CachedURLPayload.model_validate_json(raw)

    async def set(self, short_code: str, payload: CachedURLPayload) -> None:
        ttl = self._ttl_seconds
        if payload.expires_at is not None:
            remaining = (payload.expires_at - datetime.datetime.now(datetime.timezone.utc)).total_seconds()
            if remaining <= 0:
                return
            ttl = min(ttl, math.ceil(remaining))
        await self._client.set(self.key(short_code), payload.model_dump_json(), ex=ttl)

    async def delete(self, short_code: str) -> None:
        await self._client.delete(self.key(short_code))

    async def ping(self) -> None:
        await self._client.ping()
