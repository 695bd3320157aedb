"""
Entitlement side effects of provider events.

Every handler runs inside the routing transaction opened by the ingress and
returns the entitlement keys it touched so their cache entries can be
invalidated after commit. Raising aborts the transaction, ledger claim
included.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from shared.errors import EntitlementNotFoundError, UnknownPlanError
from shared.logging import get_logger
from ..models import (
    EntitlementKey, EntitlementStatus, Plan, affected_keys, compute_soft_limit, utcnow
)
from ..persistence.postgres import StoreSession
from .events import CheckoutCompleted, InvoicePaid, SubscriptionCanceled, SubscriptionUpdated


SUBSCRIPTION_STATUS_MAP: Dict[str, EntitlementStatus] = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.ACTIVE,
    "incomplete": EntitlementStatus.PENDING,
    "past_due": EntitlementStatus.PENDING,
    "unpaid": EntitlementStatus.PENDING,
    "paused": EntitlementStatus.PENDING,
    "canceled": EntitlementStatus.CANCELLED,
    "incomplete_expired": EntitlementStatus.CANCELLED,
}


class EventHandlers:
    """Handlers for the provider events this service acts on."""

    def __init__(
        self,
        usage_reset_period_days: int = 30,
        default_soft_limit_percent: float = 0.1,
        clock: Callable[[], datetime] = utcnow
    ):
        self.usage_reset_period = timedelta(days=usage_reset_period_days)
        self.default_soft_limit_percent = default_soft_limit_percent
        self.clock = clock
        self.logger = get_logger("entitlements.webhook.handlers")

    async def checkout_completed(self, session: StoreSession, event: CheckoutCompleted) -> List[EntitlementKey]:
        """Provision the entitlement bought through checkout."""
        plan = await self._resolve_checkout_plan(session, event)
        status = EntitlementStatus.ACTIVE if event.is_paid else EntitlementStatus.PENDING

        entitlement = await session.entitlements.provision(
            user_id=event.user_id,
            product_id=event.product_id,
            plan_id=plan.plan_id,
            status=status,
            feature_flags=dict(plan.feature_flags),
            usage_limit=plan.usage_limit,
            soft_limit=compute_soft_limit(
                plan.usage_limit, plan.soft_limit_percent, self.default_soft_limit_percent
            ),
            usage_reset_at=self.clock() + self.usage_reset_period,
            stripe_customer_id=event.customer_id,
            stripe_subscription_id=event.subscription_id
        )

        self.logger.info(
            "Checkout provisioned entitlement",
            user_id=event.user_id,
            product_id=event.product_id,
            plan_id=plan.plan_id,
            status=status.value,
            subscription_id=event.subscription_id
        )
        return [entitlement.key]

    async def invoice_paid(self, session: StoreSession, event: InvoicePaid) -> List[EntitlementKey]:
        """Activate and extend entitlements of a paid subscription invoice."""
        if not event.subscription_id:
            self.logger.info("Invoice has no subscription, nothing to do", invoice_id=event.invoice_id)
            return []

        entitlements = await session.entitlements.find_by_subscription(event.subscription_id)
        if not entitlements:
            raise EntitlementNotFoundError(
                "No entitlement linked to subscription yet",
                {"subscription_id": event.subscription_id}
            )

        now = self.clock()
        for entitlement in entitlements:
            entitlement.transition_to(EntitlementStatus.ACTIVE, now)
            if event.period_end:
                entitlement.valid_until = event.period_end
            await session.entitlements.save(entitlement)

        self.logger.info(
            "Invoice paid",
            invoice_id=event.invoice_id,
            subscription_id=event.subscription_id,
            entitlements=len(entitlements)
        )
        return affected_keys(entitlements)

    async def subscription_updated(self, session: StoreSession, event: SubscriptionUpdated) -> List[EntitlementKey]:
        """Mirror subscription status, plan and period onto entitlements."""
        entitlements = await session.entitlements.find_by_subscription(event.subscription_id)
        if not entitlements:
            raise EntitlementNotFoundError(
                "No entitlement linked to subscription yet",
                {"subscription_id": event.subscription_id}
            )

        plan: Optional[Plan] = None
        if event.price_id:
            result = await session.entitlements.find_plan_by_price(event.price_id)
            if not result.ok:
                raise UnknownPlanError(result.message, {"price_id": event.price_id})
            plan = result.value

        target = SUBSCRIPTION_STATUS_MAP.get(event.status)
        if target is None:
            self.logger.warning(
                "Unmapped subscription status, keeping entitlement status",
                subscription_id=event.subscription_id,
                status=event.status
            )

        now = self.clock()
        for entitlement in entitlements:
            if target is not None:
                entitlement.transition_to(target, now)
            if plan is not None and plan.plan_id != entitlement.plan_id:
                self.logger.info(
                    "Plan changed",
                    entitlement_id=entitlement.entitlement_id,
                    from_plan=entitlement.plan_id,
                    to_plan=plan.plan_id
                )
                entitlement.apply_plan(plan, self.default_soft_limit_percent)
            if event.current_period_end:
                entitlement.valid_until = event.current_period_end
            await session.entitlements.save(entitlement)

        return affected_keys(entitlements)

    async def subscription_canceled(self, session: StoreSession, event: SubscriptionCanceled) -> List[EntitlementKey]:
        """Cancel entitlements of a deleted subscription."""
        entitlements = await session.entitlements.find_by_subscription(event.subscription_id)
        if not entitlements:
            self.logger.warning(
                "Deleted subscription has no entitlements",
                subscription_id=event.subscription_id
            )
            return []

        now = self.clock()
        for entitlement in entitlements:
            entitlement.transition_to(EntitlementStatus.CANCELLED, now)
            await session.entitlements.save(entitlement)

        self.logger.info(
            "Subscription canceled",
            subscription_id=event.subscription_id,
            entitlements=len(entitlements)
        )
        return affected_keys(entitlements)

    async def _resolve_checkout_plan(self, session: StoreSession, event: CheckoutCompleted) -> Plan:
        if event.plan_id:
            result = await session.entitlements.find_active_plan(event.plan_id, event.product_id)
        else:
            result = await session.entitlements.find_plan_by_price(event.price_id)

        if not result.ok:
            raise UnknownPlanError(result.message, {"plan_id": event.plan_id, "price_id": event.price_id})

        plan = result.value
        if not plan.is_active or plan.product_id != event.product_id:
            raise UnknownPlanError(
                "Plan is not active for product",
                {"plan_id": plan.plan_id, "product_id": event.product_id}
            )
        return plan
