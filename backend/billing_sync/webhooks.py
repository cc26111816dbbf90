"""
Stripe webhook reconciliation.

Every handler recomputes the user's billing columns from the Stripe object
in the event (or fetched fresh from Stripe), never from the stored row, so
replays and out-of-order deliveries leave the row matching some valid
Stripe snapshot.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import stripe

from billing_sync.config import Settings
from billing_sync.db import UserStore
from billing_sync.errors import AuthenticationError, BillingError, PaymentProviderError
from billing_sync.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookEvent,
    parse_event,
)
from billing_sync.models import UserBillingRecord
from billing_sync.stripe_utils import epoch_to_iso, is_active_status

logger = logging.getLogger(__name__)


class WebhookReconciler:
    def __init__(self, settings: Settings, stripe_client: stripe.StripeClient, store: UserStore):
        self.settings = settings
        self.stripe = stripe_client
        self.store = store
        self._handlers: Dict[type, Callable[[Any], None]] = {
            CheckoutCompleted: self.handle_checkout_completed,
            SubscriptionCreated: self.handle_subscription_created,
            SubscriptionUpdated: self.handle_subscription_updated,
            SubscriptionDeleted: self.handle_subscription_deleted,
            InvoicePaymentSucceeded: self.handle_payment_succeeded,
            InvoicePaymentFailed: self.handle_payment_failed,
            UnhandledEvent: self.handle_unhandled,
        }

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and return the event as a dict.

        Raises AuthenticationError on a missing header, a bad signature or a
        payload that is not JSON.
        """
        if not signature:
            logger.error("[STRIPE_WEBHOOK] Missing stripe-signature header")
            raise AuthenticationError("Missing signature")

        try:
            stripe.Webhook.construct_event(payload, signature, self.settings.stripe_webhook_secret)
        except ValueError as e:
            logger.error(f"[STRIPE_WEBHOOK] Invalid payload: {str(e)}")
            raise AuthenticationError("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.error(f"[STRIPE_WEBHOOK] Invalid signature: {str(e)}")
            raise AuthenticationError("Webhook signature verification failed.") from e

        return json.loads(payload)

    def handle(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify, parse and apply one webhook delivery.

        Only verification failures propagate. Anything that goes wrong after
        verification is logged and acknowledged, because Stripe redelivering
        the same event cannot fix it.
        """
        raw_event = self.verify(payload, signature)
        event_type = raw_event.get("type")
        logger.info(f"[STRIPE_WEBHOOK] Event received: type={event_type} id={raw_event.get('id')}")

        try:
            event = parse_event(raw_event)
            self.dispatch(event)
        except BillingError as e:
            logger.error(f"[STRIPE_WEBHOOK] Failed to apply {event_type}: {e.message}")
        except Exception:
            logger.exception(f"[STRIPE_WEBHOOK] Unexpected error applying {event_type}")

        return {"received": True}

    def dispatch(self, event: WebhookEvent) -> None:
        self._handlers[type(event)](event)

    def handle_checkout_completed(self, event: CheckoutCompleted) -> None:
        """Link the Stripe customer to the user and activate the paid tier"""
        metadata = event.metadata

        owner = self.store.find_by_customer_id(metadata.customer_id)
        if owner is not None and owner.id != metadata.user_id:
            logger.error(
                f"[STRIPE_WEBHOOK] customer_id={metadata.customer_id} already linked to "
                f"user_id={owner.id}, refusing to link user_id={metadata.user_id}"
            )
            return

        user = self.store.get_user_or_none(metadata.user_id)
        if user is None:
            logger.warning(f"[STRIPE_WEBHOOK] No user found for user_id={metadata.user_id}")
            return

        # A linked customer id is never replaced
        if user.stripe_customer_id and user.stripe_customer_id != metadata.customer_id:
            logger.error(
                f"[STRIPE_WEBHOOK] user_id={user.id} already linked to "
                f"customer_id={user.stripe_customer_id}, refusing to relink to "
                f"customer_id={metadata.customer_id}"
            )
            return

        update_data: Dict[str, Any] = {
            "stripe_customer_id": metadata.customer_id,
            "has_active_subscription": True,
            # Yearly checkouts always start with a trial
            "subscription_status": "trialing" if metadata.plan_type == "yearly" else "active",
        }
        if metadata.plan_type:
            update_data["payment_tier"] = metadata.plan_type

        self.store.update_user(metadata.user_id, update_data)
        logger.info(
            f"[STRIPE_WEBHOOK] checkout.session.completed: session_id={event.session_id} "
            f"user_id={metadata.user_id} customer_id={metadata.customer_id} plan={metadata.plan_type}"
        )

    def handle_subscription_created(self, event: SubscriptionCreated) -> None:
        subscription = event.subscription
        user = self._resolve_user(subscription)
        if user is None:
            return

        if subscription.status != "trialing":
            self._mirror_subscription(user, subscription)
            return

        update_data = {
            "has_active_subscription": True,
            "payment_tier": "yearly",
            "subscription_status": "trialing",
            "next_billing_date": epoch_to_iso(subscription.trial_end or subscription.current_period_end),
        }
        self._write(user, subscription, update_data)
        logger.info(
            f"[STRIPE_WEBHOOK] Trial started: user_id={user.id} subscription_id={subscription.id} "
            f"trial_end={update_data['next_billing_date']}"
        )

    def handle_subscription_updated(self, event: SubscriptionUpdated) -> None:
        subscription = event.subscription
        user = self._resolve_user(subscription)
        if user is None:
            return

        now = datetime.now(timezone.utc).timestamp()
        converted = (
            subscription.status == "active"
            and subscription.trial_end is not None
            and subscription.trial_end <= now
        )
        if not converted:
            self._mirror_subscription(user, subscription)
            return

        update_data = {
            "has_active_subscription": True,
            "subscription_status": "active",
            "next_billing_date": epoch_to_iso(subscription.current_period_end),
        }
        plan_type = subscription.metadata.get("planType")
        if plan_type in ("monthly", "yearly"):
            update_data["payment_tier"] = plan_type

        self._write(user, subscription, update_data)
        logger.info(
            f"[STRIPE_WEBHOOK] Trial converted to paid: user_id={user.id} "
            f"subscription_id={subscription.id}"
        )

    def handle_subscription_deleted(self, event: SubscriptionDeleted) -> None:
        subscription = event.subscription
        user = self._resolve_user(subscription)
        if user is None:
            return

        update_data = {
            "has_active_subscription": False,
            "subscription_status": "canceled",
            "next_billing_date": None,
        }
        self._write(user, subscription, update_data)
        logger.info(
            f"[STRIPE_WEBHOOK] customer.subscription.deleted: user_id={user.id} "
            f"subscription_id={subscription.id}"
        )

    def handle_payment_succeeded(self, event: InvoicePaymentSucceeded) -> None:
        subscription = self._retrieve_invoice_subscription(event.invoice_id, event.subscription_id)
        if subscription is None:
            return

        user = self._resolve_user(subscription)
        if user is None:
            return

        self._mirror_subscription(user, subscription)

    def handle_payment_failed(self, event: InvoicePaymentFailed) -> None:
        subscription = self._retrieve_invoice_subscription(event.invoice_id, event.subscription_id)
        if subscription is None:
            return

        user = self._resolve_user(subscription)
        if user is None:
            return

        # Stripe may still report "active" while retrying the charge; the
        # stored status is then synthesized as past_due, not mirrored
        status = "past_due" if is_active_status(subscription.status) else subscription.status
        update_data = {
            "has_active_subscription": False,
            "subscription_status": status,
        }
        self._write(user, subscription, update_data)
        logger.info(
            f"[STRIPE_WEBHOOK] Payment failed: user_id={user.id} "
            f"subscription_id={subscription.id} status={status}"
        )

    def handle_unhandled(self, event: UnhandledEvent) -> None:
        logger.info(f"[STRIPE_WEBHOOK] Unhandled event type: {event.event_type}")

    def _mirror_subscription(self, user: UserBillingRecord, subscription: SubscriptionSnapshot) -> None:
        update_data = {
            "has_active_subscription": is_active_status(subscription.status),
            "subscription_status": subscription.status,
            "next_billing_date": epoch_to_iso(subscription.current_period_end),
        }
        self._write(user, subscription, update_data)
        logger.info(
            f"[STRIPE_WEBHOOK] Subscription synced: user_id={user.id} "
            f"subscription_id={subscription.id} status={subscription.status} "
            f"next_billing_date={update_data['next_billing_date']}"
        )

    def _write(self, user: UserBillingRecord, subscription: SubscriptionSnapshot, update_data: Dict[str, Any]) -> None:
        if user.stripe_customer_id != subscription.customer_id:
            update_data = dict(update_data, stripe_customer_id=subscription.customer_id)
        self.store.update_user(user.id, update_data)

    def _resolve_user(self, subscription: SubscriptionSnapshot) -> Optional[UserBillingRecord]:
        """
        Find the user a subscription belongs to.

        By Stripe customer id first. A subscription event can beat
        checkout.session.completed, so fall back to the userId the checkout
        initiator wrote into subscription metadata, as long as that user is
        not linked to another customer.
        """
        user = self.store.find_by_customer_id(subscription.customer_id)
        if user is not None:
            return user

        metadata_user_id = subscription.metadata.get("userId")
        metadata_customer_id = subscription.metadata.get("customerId")
        if metadata_user_id and metadata_customer_id == subscription.customer_id:
            candidate = self.store.get_user_or_none(metadata_user_id)
            if candidate is not None and candidate.stripe_customer_id is None:
                logger.info(
                    f"[STRIPE_WEBHOOK] Linking customer_id={subscription.customer_id} "
                    f"to user_id={candidate.id} from subscription metadata"
                )
                return candidate

        logger.warning(f"[STRIPE_WEBHOOK] No user found for customer_id={subscription.customer_id}")
        return None

    def _retrieve_invoice_subscription(self, invoice_id: str, subscription_id: Optional[str]) -> Optional[SubscriptionSnapshot]:
        if not subscription_id:
            logger.warning(f"[STRIPE_WEBHOOK] No subscription ID in invoice: invoice_id={invoice_id}")
            return None

        try:
            subscription = self.stripe.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            logger.error(
                f"[STRIPE_WEBHOOK] Failed to retrieve subscription_id={subscription_id}: {str(e)}"
            )
            raise PaymentProviderError(str(e)) from e

        return SubscriptionSnapshot.from_stripe(subscription)
