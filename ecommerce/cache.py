"""
Read-through JSON cache on Redis for the product detail path.

Redis is an accelerator here, never a dependency: when it is unreachable or
misbehaves, lookups count as misses, writes are dropped and the caller's
loader runs against the database as if no cache existed.
"""
import json
import logging
from collections import Counter
from typing import Any, Awaitable, Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

from ecommerce.config import settings

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CacheManager:
    def __init__(self, namespace: str = "") -> None:
        self._namespace = namespace
        self._redis: redis.Redis | None = None
        self._counts: Counter[str] = Counter()

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}" if self._namespace else key

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def connect(self, url: str | None = None) -> None:
        url = url or settings.REDIS_URL
        client = redis.from_url(url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2)
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("Redis at %s unreachable, product cache disabled: %s", url, exc)
            await client.aclose()
            return
        self._redis = client
        logger.info("Product cache connected: %s", url)

    async def disconnect(self) -> None:
        client, self._redis = self._redis, None
        if client is not None:
            await client.aclose()

    async def get(self, key: str) -> Any | None:
        """Return the decoded document stored under *key*, or None."""
        raw = None
        if self._redis is not None:
            try:
                raw = await self._redis.get(self._key(key))
            except RedisError as exc:
                logger.debug("Cache read of %r failed: %s", key, exc)
        self._counts["hits" if raw is not None else "misses"] += 1
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(self._key(key), json.dumps(value, default=str), ex=ttl)
        except RedisError as exc:
            logger.debug("Cache write of %r failed: %s", key, exc)

    async def invalidate(self, *keys: str) -> None:
        if self._redis is None or not keys:
            return
        try:
            await self._redis.delete(*map(self._key, keys))
        except RedisError as exc:
            logger.debug("Cache invalidation of %r failed: %s", keys, exc)

    async def get_or_load(self, key: str, loader: Loader, ttl: int | None = None) -> Any | None:
        """
        Cache-aside read: serve *key* from Redis, otherwise await *loader*
        and store a non-None result for *ttl* seconds.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl=ttl)
        return value

    @property
    def stats(self) -> dict:
        hits, misses = self._counts["hits"], self._counts["misses"]
        lookups = hits + misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate": round(100 * hits / lookups, 1) if lookups else 0.0,
        }


# Shared by every request handler of the product service.
cache = CacheManager()
