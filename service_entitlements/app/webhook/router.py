"""
Event router: dispatches a parsed event to its handler.
"""

from typing import Awaitable, Callable, Dict, List, Type

from shared.logging import get_logger
from ..models import EntitlementKey
from ..persistence.postgres import StoreSession
from .events import (
    CheckoutCompleted, InvoicePaid, ProviderEvent, SubscriptionCanceled,
    SubscriptionUpdated, UnrecognizedEvent,
)
from .handlers import EventHandlers


Handler = Callable[[StoreSession, ProviderEvent], Awaitable[List[EntitlementKey]]]


class EventRouter:
    """Routes event variants to handlers inside the caller's transaction."""

    def __init__(self, handlers: EventHandlers):
        self.logger = get_logger("entitlements.webhook.router")
        self.routes: Dict[Type, Handler] = {
            CheckoutCompleted: handlers.checkout_completed,
            InvoicePaid: handlers.invoice_paid,
            SubscriptionUpdated: handlers.subscription_updated,
            SubscriptionCanceled: handlers.subscription_canceled,
        }

    async def route(self, session: StoreSession, event: ProviderEvent) -> List[EntitlementKey]:
        """Apply an event's side effects; returns the entitlement keys touched."""
        if isinstance(event, UnrecognizedEvent):
            self.logger.info("Ignoring unhandled event type", event_id=event.event_id, event_type=event.event_type)
            return []

        handler = self.routes[type(event)]
        return await handler(session, event)
