"""
Grant API: direct provisioning and revocation of entitlements.

Used by internal callers (admin tooling, promotions, migrations) to bypass
the payment flow. Both operations are keyed on (user_id, product_id) and are
safe to repeat.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import asyncpg

from shared.errors import StoreResult, StoreUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .cache.redis_cache import EntitlementCache
from .models import (
    Entitlement, EntitlementStatus, GrantRequest, RevokeRequest, compute_soft_limit, utcnow
)


class GrantService:
    """Upserts and cancels entitlements on behalf of internal callers."""

    def __init__(
        self,
        store,
        cache: EntitlementCache,
        metrics: Optional[MetricsCollector] = None,
        usage_reset_period_days: int = 30,
        default_soft_limit_percent: float = 0.1,
        clock: Callable[[], datetime] = utcnow
    ):
        self.store = store
        self.cache = cache
        self.metrics = metrics
        self.usage_reset_period = timedelta(days=usage_reset_period_days)
        self.default_soft_limit_percent = default_soft_limit_percent
        self.clock = clock
        self.logger = get_logger("entitlements.grants")

    async def grant(self, request: GrantRequest) -> StoreResult[Entitlement]:
        """Create or replace an active entitlement from a plan."""
        try:
            async with self.store.session() as session:
                await session.begin()

                plan_result = await session.entitlements.find_active_plan(request.plan_id, request.product_id)
                if not plan_result.ok:
                    await session.rollback()
                    self.logger.warning(
                        "Grant rejected, plan not active for product",
                        plan_id=request.plan_id,
                        product_id=request.product_id
                    )
                    return StoreResult.not_found(plan_result.message)

                plan = plan_result.value
                usage_limit = request.usage_limit if request.usage_limit is not None else plan.usage_limit
                soft_limit = request.soft_limit
                if soft_limit is None:
                    soft_limit = compute_soft_limit(
                        usage_limit, plan.soft_limit_percent, self.default_soft_limit_percent
                    )
                feature_flags = request.feature_flags if request.feature_flags is not None else plan.feature_flags

                entitlement = await session.entitlements.provision(
                    user_id=request.user_id,
                    product_id=request.product_id,
                    plan_id=plan.plan_id,
                    status=EntitlementStatus.ACTIVE,
                    feature_flags=dict(feature_flags),
                    usage_limit=usage_limit,
                    soft_limit=soft_limit,
                    usage_reset_at=self.clock() + self.usage_reset_period,
                    valid_until=request.valid_until
                )
                await session.commit()
        except StoreUnavailable as e:
            return StoreResult.transient(e.message)
        except asyncpg.exceptions.IntegrityConstraintViolationError as e:
            self.logger.warning("Grant rejected by constraint", error=str(e))
            return StoreResult.conflict(str(e))

        await self.cache.invalidate_entitlement(request.user_id, request.product_id)
        self._record("entitlement_granted")
        self.logger.info(
            "Entitlement granted",
            entitlement_id=entitlement.entitlement_id,
            user_id=request.user_id,
            product_id=request.product_id,
            plan_id=plan.plan_id
        )
        return StoreResult.success(entitlement)

    async def revoke(self, request: RevokeRequest) -> StoreResult[Entitlement]:
        """Cancel a live entitlement."""
        try:
            async with self.store.session() as session:
                await session.begin()
                result = await session.entitlements.revoke(request.user_id, request.product_id)
                if not result.ok:
                    await session.rollback()
                    return result
                await session.commit()
        except StoreUnavailable as e:
            return StoreResult.transient(e.message)

        await self.cache.invalidate_entitlement(request.user_id, request.product_id)
        self._record("entitlement_revoked")
        self.logger.info(
            "Entitlement revoked",
            entitlement_id=result.value.entitlement_id,
            user_id=request.user_id,
            product_id=request.product_id,
            reason=request.reason
        )
        return result

    def _record(self, event_type: str):
        if self.metrics:
            self.metrics.record_business_event(event_type)
