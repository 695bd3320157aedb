"""
Webhook ingress: verify, claim, route, commit.

A delivery moves through Received, SignatureVerified, Claimed, Routed and
Committed. The ledger claim and the handler's writes share one transaction,
so an event's side effect is applied at most once and a failed attempt
leaves nothing behind for the provider's retry to trip over.
"""

import time
from typing import List, Optional

from shared.errors import InternalError
from shared.logging import get_logger, set_event_context
from shared.metrics import MetricsCollector
from ..cache.redis_cache import EntitlementCache
from ..models import EntitlementKey, WebhookAck
from .events import ProviderEvent, parse_event
from .router import EventRouter
from .verifier import SignatureVerifier


class WebhookIngress:
    """Processes one provider webhook delivery."""

    def __init__(
        self,
        store,
        verifier: SignatureVerifier,
        router: EventRouter,
        cache: EntitlementCache,
        metrics: Optional[MetricsCollector] = None
    ):
        self.store = store
        self.verifier = verifier
        self.router = router
        self.cache = cache
        self.metrics = metrics
        self.logger = get_logger("entitlements.webhook.ingress")

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """Process a raw delivery.

        Raises AuthenticityError or ValidationError before any state is
        touched, and InternalError when routing fails and was rolled back.
        """
        body = self.verifier.verify(payload, signature)
        event = parse_event(body)
        set_event_context(event.event_id)
        start_time = time.time()

        try:
            async with self.store.session() as session:
                await session.begin()

                claimed = await session.ledger.claim(event.event_id, event.event_type)
                if not claimed:
                    await session.rollback()
                    self._record(event, "duplicate", start_time)
                    return WebhookAck(duplicate=True, event_id=event.event_id)

                affected = await self.router.route(session, event)
                await session.commit()
        except Exception as e:
            self.logger.error(
                "Webhook processing failed, transaction rolled back",
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(e),
                exc_info=True
            )
            self._record(event, "failed", start_time)
            raise InternalError("Internal error", {"event_id": event.event_id}) from e
        finally:
            set_event_context(None)

        await self._invalidate(affected)
        self._record(event, "processed", start_time)
        self.logger.info(
            "Webhook processed",
            event_id=event.event_id,
            event_type=event.event_type,
            affected=len(affected)
        )
        return WebhookAck(event_id=event.event_id)

    async def _invalidate(self, keys: List[EntitlementKey]):
        for key in keys:
            if not await self.cache.invalidate_entitlement(key.user_id, key.product_id):
                self.logger.warning(
                    "Post-commit cache invalidation failed, entry will expire",
                    user_id=key.user_id,
                    product_id=key.product_id
                )

    def _record(self, event: ProviderEvent, outcome: str, start_time: float):
        if self.metrics:
            self.metrics.increment_counter("webhook_events_total", event_type=event.event_type, outcome=outcome)
            self.metrics.observe_histogram(
                "webhook_processing_seconds", time.time() - start_time, event_type=event.event_type
            )
