"""
Redis connection resource shared by services.
"""

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception


class CacheClient:
    """One Redis client per process, opened and closed explicitly.

    Consumers read ``client.redis``. A cache that cannot be reached at startup
    leaves the service running in degraded mode; every cache consumer treats
    backend failures as misses.
    """

    def __init__(self, redis_url: str, socket_timeout: float = 2.0,
                 client: Optional[redis.Redis] = None,
                 retry_config: Optional[RetryConfig] = None):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=2, base_delay=0.2, max_delay=1.0)
        self.redis: Optional[redis.Redis] = client
        self._owns_client = client is None
        self.logger = get_logger("shared.cache_client")

    async def open(self):
        """Create the client and verify connectivity."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                retry_on_timeout=False,
                health_check_interval=30
            )

        @retry_on_exception((RedisError, OSError), self.retry_config)
        async def _ping():
            return await self.redis.ping()

        try:
            await _ping()
            self.logger.info("Redis cache opened")
        except RetryError as e:
            self.logger.warning("Redis unavailable at startup, running degraded", error=str(e.last_exception))

    async def close(self):
        """Close the client."""
        if self.redis is not None and self._owns_client:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache closed")

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError) as e:
            self.logger.error("Redis health check failed", error=str(e))
            return False
