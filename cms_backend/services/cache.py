"""Cache service with Redis backend and in-memory fallback.

TTL per cache profile (from config):
  - Entities: 30 min
  - Lists: 10 min
  - Search results: 5 min
  - Suggestions: 10 min
  - Indexing status: 2 min

Graceful degradation: if Redis is unavailable, uses a cachetools TLRUCache
in-memory. Writes and removals always hit both stores so a fallback read
never resurrects an invalidated entry. Read and write errors are logged and
swallowed; removal errors are re-raised so invalidation can report them.
"""

import fnmatch
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable

from cachetools import TLRUCache

from cms_backend.config import settings

logger = logging.getLogger(__name__)


def _expires_at(_key: str, value: tuple[int, str], now: float) -> float:
    return now + value[0]


class CacheService:
    """Async cache with Redis primary and in-memory fallback."""

    def __init__(self, max_items: int | None = None):
        self._redis = None
        self._fallback: TLRUCache = TLRUCache(
            maxsize=max_items or settings.cache_max_items, ttu=_expires_at,
        )
        self._available = False
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "removals": 0, "errors": 0}

    @property
    def is_redis_available(self) -> bool:
        return self._available

    async def connect(self) -> bool:
        """Connect to Redis. Returns True on success."""
        try:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
            )
            await self._redis.ping()
            self._available = True
            return True
        except Exception as e:
            logger.warning("Redis connection failed — using in-memory fallback: %s", str(e)[:100])
            self._redis = None
            self._available = False
            return False

    async def disconnect(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._available = False

    def make_key(self, prefix: str, payload: dict) -> str:
        """Generate a deterministic cache key from a prefix and input."""
        normalized = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
        return f"{prefix}:{hashlib.sha256(normalized.encode()).hexdigest()[:32]}"

    def get_ttl(self, profile: str) -> int:
        """Get TTL in seconds based on cache profile."""
        ttl_map = {
            "entity": settings.cache_ttl_entity,
            "list": settings.cache_ttl_list,
            "search": settings.cache_ttl_search,
            "suggestions": settings.cache_ttl_suggestions,
            "indexing_status": settings.cache_ttl_indexing_status,
        }
        return ttl_map.get(profile, settings.cache_ttl_default)

    async def get(self, key: str) -> Any | None:
        """Read from cache. Returns None on miss."""
        # Try Redis
        if self._available and self._redis:
            try:
                data = await self._redis.get(key)
                if data is not None:
                    self._stats["hits"] += 1
                    logger.debug("Cache HIT (Redis) | key=%s", key[:60])
                    return json.loads(data)
            except Exception as e:
                self._stats["errors"] += 1
                logger.debug("Redis GET error: %s", str(e)[:100])

        # Try in-memory fallback
        entry = self._fallback.get(key)
        if entry is not None:
            self._stats["hits"] += 1
            logger.debug("Cache HIT (memory) | key=%s", key[:60])
            return json.loads(entry[1])

        self._stats["misses"] += 1
        return None

    async def set(self, key: str, data: Any, ttl: int | None = None):
        """Write to cache with TTL."""
        ttl = ttl or settings.cache_ttl_default
        try:
            payload = json.dumps(data, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            self._stats["errors"] += 1
            logger.warning("Cache SET skipped (unserializable) | key=%s | %s", key[:60], str(e)[:100])
            return

        # Write to Redis
        if self._available and self._redis:
            try:
                await self._redis.setex(key, ttl, payload)
                logger.debug("Cache SET (Redis) | key=%s | ttl=%ds", key[:60], ttl)
            except Exception as e:
                self._stats["errors"] += 1
                logger.debug("Redis SET error: %s", str(e)[:100])

        # Always write to in-memory fallback too
        self._fallback[key] = (ttl, payload)
        self._stats["sets"] += 1

    async def get_or_add(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl: int | None = None,
    ) -> Any:
        """Return the cached value, or produce, store and return it.

        `None` from the producer is returned but never cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await producer()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def remove(self, key: str):
        """Delete a single key."""
        if self._available and self._redis:
            try:
                await self._redis.delete(key)
            except Exception as e:
                self._stats["errors"] += 1
                logger.warning("Redis DELETE error | key=%s | %s", key[:60], str(e)[:100])
                raise
            finally:
                self._fallback.pop(key, None)
        else:
            self._fallback.pop(key, None)
        self._stats["removals"] += 1

    async def remove_by_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern. Returns the number of keys removed."""
        removed = 0
        local = [k for k in list(self._fallback.keys()) if fnmatch.fnmatchcase(k, pattern)]
        for key in local:
            self._fallback.pop(key, None)
        removed += len(local)

        if self._available and self._redis:
            try:
                keys = []
                async for key in self._redis.scan_iter(match=pattern):
                    keys.append(key)
                if keys:
                    await self._redis.delete(*keys)
                removed = max(removed, len(keys))
            except Exception as e:
                self._stats["errors"] += 1
                logger.warning("Redis invalidate error | pattern=%s | %s", pattern, str(e)[:100])
                raise

        if removed:
            logger.info("Cache invalidated %d keys matching '%s'", removed, pattern)
        self._stats["removals"] += removed
        return removed

    async def keys(self, pattern: str = "*") -> list[str]:
        """List cache keys matching a glob pattern."""
        if self._available and self._redis:
            try:
                return [key async for key in self._redis.scan_iter(match=pattern)]
            except Exception as e:
                logger.debug("Redis SCAN error: %s", str(e)[:100])
        return sorted(k for k in list(self._fallback.keys()) if fnmatch.fnmatchcase(k, pattern))

    def get_statistics(self) -> dict:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "hit_ratio": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
            "backend": "redis" if self._available else "memory",
            "memory_items": len(self._fallback),
        }


# Singleton instance
cache_service = CacheService()
