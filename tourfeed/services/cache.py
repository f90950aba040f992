# tourfeed/services/cache.py
"""Response caches for TourAPI pages.

Both stores expose the same small async surface (get / setex / delete) so the
provider wrapper does not care where pages live. Cache trouble is never fatal:
errors are logged and behave like a miss.
"""
import time
from typing import Dict, Optional, Protocol, Tuple

import structlog
from redis.asyncio import Redis

from tourfeed.core.config import settings

logger = structlog.get_logger(__name__)


class ResponseCache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...
    async def setex(self, key: str, ttl: int, value: str) -> None: ...
    async def delete(self, key: str) -> None: ...


class RedisResponseCache:
    def __init__(self, url: Optional[str] = settings.REDIS_URL, client: Optional[Redis] = None):
        if client is None:
            if not url:
                raise ValueError("REDIS_URL is not set in the environment")
            client = Redis.from_url(url, decode_responses=True)
        self._redis = client

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self._redis.get(key)
        except Exception as e:
            logger.error("cache_get_error", key=key, error=str(e))
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def setex(self, key: str, ttl: int, value: str) -> None:
        try:
            await self._redis.setex(key, ttl, value)
        except Exception as e:
            logger.error("cache_setex_error", key=key, error=str(e))

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except Exception as e:
            logger.error("cache_delete_error", key=key, error=str(e))

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryResponseCache:
    """
    Process-local cache with per-key expiry and a bounded size.

    Expired entries are purged on every write; when the store is still full,
    the oldest writes are evicted first.
    """

    def __init__(self, clock=time.monotonic, max_entries: int = settings.CACHE_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._clock = clock
        self.max_entries = max_entries
        # Insertion-ordered: the first key is always the oldest write
        self.store: Dict[str, Tuple[float, str]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self.store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self.store[key]
            return None
        return value

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.store.pop(key, None)
        self.purge_expired()
        evicted = 0
        while len(self.store) >= self.max_entries:
            del self.store[next(iter(self.store))]
            evicted += 1
        if evicted:
            logger.debug("cache_evicted", count=evicted, max_entries=self.max_entries)
        self.store[key] = (self._clock() + ttl, value)

    async def delete(self, key: str) -> None:
        self.store.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self.store.items() if now >= expires_at]
        for k in expired:
            del self.store[k]
        return len(expired)


def build_response_cache() -> Optional[ResponseCache]:
    """Pick the cache backend from settings. None means caching is off."""
    if not settings.ENABLE_CACHE:
        return None
    if settings.ENABLE_REDIS and settings.REDIS_URL:
        logger.info("response_cache_selected", backend="redis")
        return RedisResponseCache(settings.REDIS_URL)
    logger.info("response_cache_selected", backend="memory")
    return InMemoryResponseCache()
