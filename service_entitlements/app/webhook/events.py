"""
Provider webhook event parsing.

Raw Stripe payloads are validated with pydantic and turned into one of a
closed set of event variants. Event types this service does not act on
become ``UnrecognizedEvent`` so they can still be claimed and acknowledged.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError


CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


# Provider payload models

class StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class EventData(StripeObject):
    object: Dict[str, Any]


class EventEnvelope(StripeObject):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    created: Optional[int] = None
    livemode: bool = False
    data: EventData


class CheckoutSessionObject(StripeObject):
    id: str
    client_reference_id: Optional[str] = None
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class Period(StripeObject):
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(StripeObject):
    period: Optional[Period] = None


class InvoiceLines(StripeObject):
    data: List[InvoiceLine] = Field(default_factory=list)


class SubscriptionDetails(StripeObject):
    subscription: Optional[str] = None


class InvoiceParent(StripeObject):
    subscription_details: Optional[SubscriptionDetails] = None


class InvoiceObject(StripeObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    parent: Optional[InvoiceParent] = None
    period_end: Optional[int] = None
    lines: Optional[InvoiceLines] = None


class Price(StripeObject):
    id: str


class SubscriptionItem(StripeObject):
    price: Optional[Price] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(StripeObject):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeObject):
    id: str
    customer: Optional[str] = None
    status: str
    current_period_end: Optional[int] = None
    items: Optional[SubscriptionItems] = None


# Event variants

@dataclass(frozen=True)
class CheckoutCompleted:
    event_type: ClassVar[str] = CHECKOUT_COMPLETED
    event_id: str
    session_id: str
    user_id: str
    product_id: str
    plan_id: Optional[str]
    price_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_status: Optional[str]

    @property
    def is_paid(self) -> bool:
        return self.payment_status in ("paid", "no_payment_required")


@dataclass(frozen=True)
class InvoicePaid:
    event_type: ClassVar[str] = INVOICE_PAID
    event_id: str
    invoice_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    period_end: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_type: ClassVar[str] = SUBSCRIPTION_UPDATED
    event_id: str
    subscription_id: str
    customer_id: Optional[str]
    status: str
    price_id: Optional[str]
    current_period_end: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionCanceled:
    event_type: ClassVar[str] = SUBSCRIPTION_DELETED
    event_id: str
    subscription_id: str
    customer_id: Optional[str]


@dataclass(frozen=True)
class UnrecognizedEvent:
    event_id: str
    event_type: str


ProviderEvent = Union[
    CheckoutCompleted, InvoicePaid, SubscriptionUpdated, SubscriptionCanceled, UnrecognizedEvent
]


def _checkout(envelope: EventEnvelope) -> CheckoutCompleted:
    session = CheckoutSessionObject.model_validate(envelope.data.object)
    user_id = session.metadata.get("user_id") or session.client_reference_id
    product_id = session.metadata.get("product_id")
    plan_id = session.metadata.get("plan_id")
    price_id = session.metadata.get("price_id")

    missing = []
    if not user_id:
        missing.append("user_id")
    if not product_id:
        missing.append("product_id")
    if not plan_id and not price_id:
        missing.append("plan_id")
    if missing:
        raise ValidationError("Checkout session is missing metadata", {"missing": missing})

    return CheckoutCompleted(
        event_id=envelope.id,
        session_id=session.id,
        user_id=user_id,
        product_id=product_id,
        plan_id=plan_id,
        price_id=price_id,
        customer_id=session.customer,
        subscription_id=session.subscription,
        payment_status=session.payment_status
    )


def _invoice_paid(envelope: EventEnvelope) -> InvoicePaid:
    invoice = InvoiceObject.model_validate(envelope.data.object)

    subscription_id = invoice.subscription
    if not subscription_id and invoice.parent and invoice.parent.subscription_details:
        subscription_id = invoice.parent.subscription_details.subscription

    period_end = invoice.period_end
    if invoice.lines and invoice.lines.data and invoice.lines.data[0].period:
        period_end = invoice.lines.data[0].period.end or period_end

    return InvoicePaid(
        event_id=envelope.id,
        invoice_id=invoice.id,
        customer_id=invoice.customer,
        subscription_id=subscription_id,
        period_end=_timestamp(period_end)
    )


def _subscription_updated(envelope: EventEnvelope) -> SubscriptionUpdated:
    subscription = SubscriptionObject.model_validate(envelope.data.object)

    price_id = None
    period_end = subscription.current_period_end
    if subscription.items and subscription.items.data:
        item = subscription.items.data[0]
        price_id = item.price.id if item.price else None
        period_end = period_end or item.current_period_end

    return SubscriptionUpdated(
        event_id=envelope.id,
        subscription_id=subscription.id,
        customer_id=subscription.customer,
        status=subscription.status,
        price_id=price_id,
        current_period_end=_timestamp(period_end)
    )


def _subscription_deleted(envelope: EventEnvelope) -> SubscriptionCanceled:
    subscription = SubscriptionObject.model_validate(envelope.data.object)
    return SubscriptionCanceled(
        event_id=envelope.id,
        subscription_id=subscription.id,
        customer_id=subscription.customer
    )


PARSERS = {
    CHECKOUT_COMPLETED: _checkout,
    INVOICE_PAID: _invoice_paid,
    SUBSCRIPTION_UPDATED: _subscription_updated,
    SUBSCRIPTION_DELETED: _subscription_deleted,
}


def parse_event(payload: Union[str, bytes]) -> ProviderEvent:
    """Parse a verified webhook body into an event variant."""
    try:
        raw = json.loads(payload)
    except (ValueError, TypeError) as e:
        raise ValidationError("Webhook body is not valid JSON") from e

    try:
        envelope = EventEnvelope.model_validate(raw)
        parser = PARSERS.get(envelope.type)
        if parser is None:
            return UnrecognizedEvent(event_id=envelope.id, event_type=envelope.type)
        return parser(envelope)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"]), "message": error["msg"]}
            for error in e.errors()
        ]
        raise ValidationError("Webhook event is malformed", {"errors": errors}) from e
