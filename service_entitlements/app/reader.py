"""
Read path: entitlement checks and usage recording.
"""

import math
from datetime import datetime
from typing import Callable, Optional, Tuple

from shared.errors import NotFoundError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .cache.redis_cache import EntitlementCache
from .models import (
    Entitlement, EntitlementResponse, EntitlementStatus, UsageInfo, UsageResponse,
    UsageSnapshot, utcnow
)


class EntitlementReader:
    """Serves entitlement reads from the cache, falling back to the store."""

    def __init__(
        self,
        store,
        cache: EntitlementCache,
        metrics: Optional[MetricsCollector] = None,
        entitlement_ttl: int = 60,
        usage_counter_ttl: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.cache = cache
        self.metrics = metrics
        self.entitlement_ttl = entitlement_ttl
        self.usage_counter_ttl = usage_counter_ttl
        self.clock = clock
        self.logger = get_logger("entitlements.reader")

    async def get_entitlement(self, user_id: str, product_id: str) -> Tuple[Optional[Entitlement], bool]:
        """Return the entitlement and whether it came from the cache."""
        cached = await self.cache.get(user_id, product_id)
        if cached is not None:
            return cached, True

        async with self.store.session() as session:
            entitlement = await session.entitlements.get(user_id, product_id)

        if entitlement is not None:
            await self.cache.put_entitlement(entitlement, self.entitlement_ttl)
        return entitlement, False

    async def check(self, user_id: str, product_id: str) -> Tuple[EntitlementResponse, bool]:
        """Entitlement view for a user and product, with live usage."""
        entitlement, cache_hit = await self.get_entitlement(user_id, product_id)
        if entitlement is None:
            raise NotFoundError("Entitlement not found", {"product_id": product_id})

        counter = await self.cache.get_usage(user_id, product_id)
        usage = self._snapshot(entitlement, entitlement.usage_count + (counter or 0))

        response = EntitlementResponse(
            product_id=entitlement.product_id,
            plan_id=entitlement.plan_id,
            status=entitlement.effective_status(self.clock()),
            features=entitlement.feature_flags,
            usage=UsageInfo(
                limit=usage.limit,
                used=usage.used,
                remaining=usage.remaining,
                soft_limit=usage.soft_limit,
                reset_at=usage.reset_at
            ),
            valid_until=entitlement.valid_until,
            over_limit=usage.over_limit,
            over_soft_limit=usage.over_soft_limit
        )
        return response, cache_hit

    async def record_usage(self, user_id: str, product_id: str, amount: int) -> UsageResponse:
        """Count usage against an active entitlement."""
        entitlement, _ = await self.get_entitlement(user_id, product_id)
        if entitlement is None or entitlement.effective_status(self.clock()) != EntitlementStatus.ACTIVE:
            raise NotFoundError("No active entitlement", {"product_id": product_id})

        counter = await self.cache.increment_usage(
            user_id, product_id, amount, self._counter_ttl(entitlement)
        )

        if counter is not None:
            used = entitlement.usage_count + counter
            backend = "cache"
        else:
            self.logger.warning(
                "Usage counter unavailable, recording in store",
                user_id=user_id,
                product_id=product_id
            )
            async with self.store.session() as session:
                await session.begin()
                updated = await session.entitlements.add_usage(user_id, product_id, amount)
                await session.commit()
            if updated is None:
                raise NotFoundError("No active entitlement", {"product_id": product_id})
            await self.cache.invalidate_entitlement(user_id, product_id)
            used = updated.usage_count
            backend = "store"

        if self.metrics:
            self.metrics.increment_counter("usage_increments_total", backend=backend)

        usage = self._snapshot(entitlement, used)
        return UsageResponse(
            used=usage.used,
            remaining=usage.remaining,
            over_limit=usage.over_limit,
            soft_limit_remaining=usage.soft_limit_remaining,
            over_soft_limit=usage.over_soft_limit
        )

    def _snapshot(self, entitlement: Entitlement, used: int) -> UsageSnapshot:
        return UsageSnapshot(
            limit=entitlement.usage_limit,
            used=used,
            soft_limit=entitlement.soft_limit or entitlement.usage_limit,
            reset_at=entitlement.usage_reset_at
        )

    def _counter_ttl(self, entitlement: Entitlement) -> int:
        """Counters live until the entitlement's usage period closes."""
        if entitlement.usage_reset_at is None:
            return self.usage_counter_ttl
        seconds = (entitlement.usage_reset_at - self.clock()).total_seconds()
        if seconds <= 0:
            return self.usage_counter_ttl
        return max(1, math.ceil(seconds))
