"""
Fixed-window rate limiter shared across service instances through Redis.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError

from shared.cache_client import CacheClient
from shared.errors import CacheUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector


DEFAULT_WINDOW_MS = 60000

DEFAULT_TIERS: Dict[str, Dict[str, int]] = {
    "free": {"requests": 100, "window_ms": DEFAULT_WINDOW_MS},
    "basic": {"requests": 1000, "window_ms": DEFAULT_WINDOW_MS},
    "premium": {"requests": 10000, "window_ms": DEFAULT_WINDOW_MS},
    "enterprise": {"requests": 100000, "window_ms": DEFAULT_WINDOW_MS},
}


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitResult:
    """Decision for one request."""
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    current: int = 0
    degraded: bool = False

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000, tz=timezone.utc)

    def retry_after_seconds(self, now_ms: int) -> int:
        return max(1, -(-(self.reset_at_ms - now_ms) // 1000))

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat().replace("+00:00", "Z"),
        }


class FixedWindowRateLimiter:
    """Counts requests per identity and endpoint in fixed windows.

    Windows are aligned to multiples of the window length. A backend failure
    allows the request and is logged; the limiter never raises.
    """

    def __init__(
        self,
        cache_client: CacheClient,
        tiers: Optional[Dict[str, Dict[str, int]]] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], int] = _now_ms
    ):
        self.cache_client = cache_client
        self.tiers = {**DEFAULT_TIERS, **(tiers or {})}
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("entitlements.rate_limiter")

    def _make_key(self, identity: str, endpoint: str, window_start: int) -> str:
        """Generate rate limit key."""
        return f"ratelimit:{identity}:{endpoint}:{window_start}"

    def tier_limits(self, tier: str) -> Dict[str, int]:
        """Limits for a named tier; unknown tiers fall back to free."""
        return self.tiers.get(tier, self.tiers["free"])

    async def check_tier(self, identity: str, endpoint: str, tier: str = "free") -> RateLimitResult:
        limits = self.tier_limits(tier)
        return await self.check(identity, endpoint, limits["requests"], limits["window_ms"])

    async def check(self, identity: str, endpoint: str, limit: int,
                    window_ms: int = DEFAULT_WINDOW_MS) -> RateLimitResult:
        """Count one request and decide whether it is allowed."""
        now = self.clock()
        window_start = now - (now % window_ms)
        reset_at = window_start + window_ms
        key = self._make_key(identity, endpoint, window_start)

        try:
            redis = self.cache_client.redis
            if redis is None:
                raise CacheUnavailable("Redis client not open")

            # INCR and PEXPIRE NX apply together; window keys always carry a TTL.
            async with redis.pipeline(transaction=True) as pipe:
                current, _ = await pipe.incr(key).pexpire(key, window_ms, nx=True).execute()
        except (RedisError, OSError, CacheUnavailable) as e:
            self.logger.error(
                "Rate limit check failed, allowing request",
                identity=identity,
                endpoint=endpoint,
                error=str(e)
            )
            self._record(endpoint, "fail_open")
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at_ms=reset_at,
                degraded=True
            )

        allowed = current <= limit
        self._record(endpoint, "allowed" if allowed else "rejected")
        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identity=identity,
                endpoint=endpoint,
                current=current,
                limit=limit
            )

        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - current),
            reset_at_ms=reset_at,
            current=current
        )

    def _record(self, endpoint: str, decision: str):
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", endpoint=endpoint, decision=decision)
