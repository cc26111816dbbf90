"""
Typed Stripe webhook events.

parse_event() turns a verified webhook payload into one variant of
WebhookEvent. Event types the service does not act on become
UnhandledEvent so they can be acknowledged and ignored.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from billing_sync.billing_plans import get_plan
from billing_sync.errors import ValidationError
from billing_sync.stripe_utils import invoice_subscription_id, stripe_field, subscription_period_end


CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class CheckoutMetadata:
    """Metadata the checkout initiator attaches to sessions and subscriptions"""
    user_id: str
    customer_id: str
    plan_type: Optional[str] = None
    email: Optional[str] = None

    @classmethod
    def parse(cls, metadata: Optional[Dict[str, Any]]) -> "CheckoutMetadata":
        """
        Validate required keys. Raises ValidationError when userId or
        customerId is missing, or planType is not a known plan.
        """
        metadata = metadata or {}
        user_id = metadata.get("userId")
        customer_id = metadata.get("customerId")

        if not user_id or not customer_id:
            raise ValidationError("Missing userId or customerId in metadata")

        plan_type = metadata.get("planType")
        if plan_type is not None and get_plan(plan_type) is None:
            raise ValidationError(f"Invalid planType in metadata: {plan_type}")

        return cls(
            user_id=user_id,
            customer_id=customer_id,
            plan_type=plan_type.lower() if plan_type else None,
            email=metadata.get("email"),
        )


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The subscription fields the reconciler writes from"""
    id: str
    customer_id: str
    status: str
    current_period_end: Optional[int] = None
    trial_end: Optional[int] = None
    cancel_at_period_end: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, subscription: Any) -> "SubscriptionSnapshot":
        subscription_id = stripe_field(subscription, "id")
        customer = stripe_field(subscription, "customer")
        if customer is not None and not isinstance(customer, str):
            customer = stripe_field(customer, "id")
        status = stripe_field(subscription, "status")

        if not subscription_id or not customer or not status:
            raise ValidationError("Subscription is missing id, customer or status")

        metadata = stripe_field(subscription, "metadata", {})
        return cls(
            id=subscription_id,
            customer_id=customer,
            status=status,
            current_period_end=subscription_period_end(subscription),
            trial_end=stripe_field(subscription, "trial_end"),
            cancel_at_period_end=bool(stripe_field(subscription, "cancel_at_period_end", False)),
            metadata=dict(metadata),
        )


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session_id: str
    metadata: CheckoutMetadata


@dataclass(frozen=True)
class SubscriptionCreated:
    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    event_id: str
    invoice_id: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    invoice_id: str
    subscription_id: Optional[str]


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[
    CheckoutCompleted,
    SubscriptionCreated,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]

_SUBSCRIPTION_EVENTS = {
    SUBSCRIPTION_CREATED: SubscriptionCreated,
    SUBSCRIPTION_UPDATED: SubscriptionUpdated,
    SUBSCRIPTION_DELETED: SubscriptionDeleted,
}

_INVOICE_EVENTS = {
    INVOICE_PAYMENT_SUCCEEDED: InvoicePaymentSucceeded,
    INVOICE_PAYMENT_FAILED: InvoicePaymentFailed,
}


def parse_event(event: Dict[str, Any]) -> WebhookEvent:
    """
    Build the typed variant for a verified webhook event.

    Raises ValidationError when a known event type carries an object
    without the fields its handler needs.
    """
    event_type = event.get("type") or "unknown"
    event_id = event.get("id") or "unknown"
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == CHECKOUT_COMPLETED:
        return CheckoutCompleted(
            event_id=event_id,
            session_id=obj.get("id", "unknown"),
            metadata=CheckoutMetadata.parse(obj.get("metadata")),
        )

    if event_type in _SUBSCRIPTION_EVENTS:
        return _SUBSCRIPTION_EVENTS[event_type](
            event_id=event_id,
            subscription=SubscriptionSnapshot.from_stripe(obj),
        )

    if event_type in _INVOICE_EVENTS:
        return _INVOICE_EVENTS[event_type](
            event_id=event_id,
            invoice_id=obj.get("id", "unknown"),
            subscription_id=invoice_subscription_id(obj),
        )

    return UnhandledEvent(event_id=event_id, event_type=event_type)
