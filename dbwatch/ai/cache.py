"""Analysis result caches.

``MemoryCache`` keeps entries in-process with a TTL and a periodic sweep.
``RedisCache`` shares results between monitor instances.  Both honour the
same contract, and a backend failure always degrades to a cache miss.
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol, TypedDict

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from dbwatch.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86_400


class AnalysisCache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...

    async def clear(self) -> None: ...

    async def close(self) -> None: ...


class CacheStats(TypedDict):
    hits: int
    misses: int
    sets: int
    evictions: int
    size: int
    hit_rate: int


class _MemoryEntry(TypedDict):
    value: Any
    expires_at: float


class MemoryCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _MemoryEntry] = {}
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.evictions = 0

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() >= entry["expires_at"]:
            del self._entries[key]
            self.misses += 1
            self.evictions += 1
            return None
        self.hits += 1
        return entry["value"]

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        self._entries[key] = _MemoryEntry(value=value, expires_at=self._clock() + ttl)
        self.sets += 1

    async def clear(self) -> None:
        self._entries.clear()
        logger.info("Analysis cache cleared")

    async def close(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry["expires_at"]]
        for key in expired:
            del self._entries[key]
        if expired:
            self.evictions += len(expired)
            logger.debug("Analysis cache swept %d expired entries", len(expired))
        return len(expired)

    def stats(self) -> CacheStats:
        lookups = self.hits + self.misses
        return CacheStats(
            hits=self.hits,
            misses=self.misses,
            sets=self.sets,
            evictions=self.evictions,
            size=len(self._entries),
            hit_rate=round(self.hits / lookups * 100) if lookups else 0,
        )


class RedisCache:
    """Redis-backed cache with JSON values and server-side TTL."""

    def __init__(self, redis_url: str, *, ttl_seconds: int = DEFAULT_TTL_SECONDS, prefix: str = "dbwatch:") -> None:
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._redis: aioredis.Redis = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(self.prefix + key)
        except (RedisError, OSError):
            logger.warning("Redis GET failed for %s, treating as miss", key, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding undecodable cache value for %s", key)
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl <= 0:
            # already expired; SETEX rejects non-positive TTLs
            return
        try:
            await self._redis.setex(self.prefix + key, ttl, json.dumps(value, default=str))
        except (RedisError, OSError):
            logger.warning("Redis SET failed for %s", key, exc_info=True)

    async def clear(self) -> None:
        try:
            keys = [k async for k in self._redis.scan_iter(match=self.prefix + "*")]
            if keys:
                await self._redis.delete(*keys)
            logger.info("Redis analysis cache cleared: %d keys", len(keys))
        except (RedisError, OSError):
            logger.warning("Redis CLEAR failed", exc_info=True)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except (RedisError, OSError):
            logger.debug("Redis close failed", exc_info=True)


def create_cache(settings: Settings) -> AnalysisCache:
    """Build the configured cache backend."""
    cache_settings = settings.ai.cache
    if cache_settings.type == "redis":
        logger.info("Analysis cache: redis (%s)", cache_settings.redis_url)
        return RedisCache(cache_settings.redis_url, ttl_seconds=cache_settings.ttl_seconds, prefix=cache_settings.prefix)
    logger.info("Analysis cache: memory (TTL %ds)", cache_settings.ttl_seconds)
    return MemoryCache(ttl_seconds=cache_settings.ttl_seconds)
