"""
Redis caching layer for Entitlements Service.

Holds read-through entitlement snapshots and the live usage counters. Every
public method resolves backend failures internally: reads degrade to a miss,
writes and invalidations report False, counters report None.
"""

import json
import re
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from shared.cache_client import CacheClient
from shared.errors import CacheUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..models import Entitlement


CACHE_ERRORS = (RedisError, OSError, CacheUnavailable)


def entitlement_key(user_id: str, product_id: str) -> str:
    return f"entitlement:{user_id}:{product_id}"


def usage_key(user_id: str, product_id: str) -> str:
    return f"usage:{user_id}:{product_id}"


GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def escape_glob(value: str) -> str:
    """Escape Redis MATCH metacharacters so ``value`` matches literally."""
    return GLOB_SPECIAL.sub(r"\\\1", value)


class EntitlementCache:
    """Entitlement snapshots and usage counters in Redis."""

    ENTITLEMENT_PREFIX = "entitlement:"
    USAGE_PREFIX = "usage:"

    def __init__(self, cache_client: CacheClient, metrics: Optional[MetricsCollector] = None,
                 default_ttl: int = 60):
        self.cache_client = cache_client
        self.metrics = metrics
        self.default_ttl = default_ttl
        self.logger = get_logger("entitlements.cache.redis")

    @property
    def redis(self):
        if self.cache_client.redis is None:
            raise CacheUnavailable("Redis client not open")
        return self.cache_client.redis

    async def get(self, user_id: str, product_id: str) -> Optional[Entitlement]:
        """Get a cached entitlement snapshot; None on miss or failure."""
        key = entitlement_key(user_id, product_id)
        try:
            cached = await self.redis.get(key)
        except CACHE_ERRORS as e:
            self.logger.warning("Cache read failed, treating as miss", key=key, error=str(e))
            self._record("error")
            return None

        if not cached:
            self._record("miss")
            return None

        try:
            entitlement = Entitlement.from_dict(json.loads(cached))
        except (ValueError, TypeError, KeyError) as e:
            self.logger.warning("Discarding unreadable cache entry", key=key, error=str(e))
            self._record("error")
            await self.invalidate(key)
            return None

        self._record("hit")
        return entitlement

    async def put_entitlement(self, entitlement: Entitlement, ttl: Optional[int] = None) -> bool:
        """Cache an entitlement snapshot."""
        return await self.set(
            entitlement_key(entitlement.user_id, entitlement.product_id),
            entitlement.to_dict(),
            ttl or self.default_ttl
        )

    async def set(self, key: str, value: Dict[str, Any], ttl: int) -> bool:
        """Store a JSON value with a TTL."""
        try:
            await self.redis.setex(key, ttl, json.dumps(value, default=str))
            return True
        except CACHE_ERRORS as e:
            self.logger.warning("Cache write failed", key=key, error=str(e))
            return False

    async def invalidate(self, key: str) -> bool:
        """Drop one key."""
        try:
            await self.redis.delete(key)
            return True
        except CACHE_ERRORS as e:
            self.logger.warning("Cache invalidation failed", key=key, error=str(e))
            return False

    async def invalidate_entitlement(self, user_id: str, product_id: str) -> bool:
        """Drop the cached snapshot of one entitlement."""
        return await self.invalidate(entitlement_key(user_id, product_id))

    async def invalidate_pattern(self, user_id: str) -> int:
        """Drop every snapshot and counter cached for a user."""
        deleted = 0
        try:
            for prefix in (self.ENTITLEMENT_PREFIX, self.USAGE_PREFIX):
                keys = [key async for key in self.redis.scan_iter(match=f"{prefix}{escape_glob(user_id)}:*")]
                if keys:
                    deleted += await self.redis.delete(*keys)
        except CACHE_ERRORS as e:
            self.logger.warning("Cache pattern invalidation failed", user_id=user_id, error=str(e))
        return deleted

    async def increment_usage(self, user_id: str, product_id: str, amount: int, ttl: int) -> Optional[int]:
        """Atomically add to a usage counter.

        INCRBY and EXPIRE NX go out in one MULTI/EXEC, so the counter never
        exists without a TTL and later increments never extend it. None means
        nothing was applied.
        """
        key = usage_key(user_id, product_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                count, _ = await pipe.incrby(key, amount).expire(key, ttl, nx=True).execute()
            return count
        except CACHE_ERRORS as e:
            self.logger.warning("Usage increment failed", key=key, error=str(e))
            return None

    async def get_usage(self, user_id: str, product_id: str) -> Optional[int]:
        """Current counter value; 0 when absent, None on failure."""
        key = usage_key(user_id, product_id)
        try:
            value = await self.redis.get(key)
        except CACHE_ERRORS as e:
            self.logger.warning("Usage read failed", key=key, error=str(e))
            return None
        return int(value) if value else 0

    async def take_usage(self, user_id: str, product_id: str) -> Optional[int]:
        """Read and clear a counter in one step."""
        key = usage_key(user_id, product_id)
        try:
            value = await self.redis.getdel(key)
        except CACHE_ERRORS as e:
            self.logger.warning("Usage drain failed", key=key, error=str(e))
            return None
        return int(value) if value else 0

    async def health_check(self) -> bool:
        """Check cache health."""
        return await self.cache_client.health_check()

    def _record(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("entitlement_cache_total", result=result)
