"""
Subscription queries and lifecycle changes.

SubscriptionQueryService answers "what plan is this user on" from the users
table, enriched with a live Stripe lookup when one is possible.
SubscriptionLifecycleService cancels and reactivates subscriptions and opens
billing portal sessions.
"""
import logging
from typing import Any, Dict, Optional

import stripe

from billing_sync.billing_plans import get_plan, plan_name_for_amount
from billing_sync.config import Settings
from billing_sync.db import UserStore
from billing_sync.errors import NotFound, PaymentProviderError, ValidationError
from billing_sync.models import UserBillingRecord
from billing_sync.stripe_utils import (
    TERMINAL_STATUSES,
    epoch_to_iso,
    first_item,
    format_amount,
    is_active_status,
    stripe_field,
    subscription_period_end,
)

logger = logging.getLogger(__name__)


def empty_subscription_view() -> Dict[str, Any]:
    return {
        "hasSubscription": False,
        "status": "none",
        "plan": None,
        "amount": None,
        "nextBilling": None,
        "customerId": None,
        "subscriptionId": None,
    }


def subscription_summary(subscription: Any) -> Dict[str, Any]:
    """Response shape shared by cancel and reactivate"""
    return {
        "id": stripe_field(subscription, "id"),
        "status": stripe_field(subscription, "status"),
        "cancel_at_period_end": bool(stripe_field(subscription, "cancel_at_period_end", False)),
        "current_period_end": subscription_period_end(subscription),
    }


class SubscriptionQueryService:
    def __init__(self, settings: Settings, stripe_client: Optional[stripe.StripeClient], store: UserStore):
        self.settings = settings
        self.stripe = stripe_client
        self.store = store

    def get_user_subscription(self, user_id: str) -> Dict[str, Any]:
        """
        Combined user and subscription view.

        Returns:
            {
                "user": {"id", "email", "memberSince"},
                "subscription": {
                    "hasSubscription", "status", "plan", "amount", "nextBilling",
                    "customerId", "subscriptionId", ["cancelAtPeriodEnd"],
                    ["isTrial", "trialEndDate"]
                }
            }

        Errors:
            ValidationError: empty user id
            NotFound: no row in the users table
        """
        if not user_id:
            raise ValidationError("User ID is required")

        user = self.store.get_user(user_id)
        subscription_data = self.local_view(user)

        if user.stripe_customer_id and self.stripe is not None:
            try:
                live = self.live_view(user.stripe_customer_id)
            except stripe.StripeError as e:
                # Live data is best-effort; keep what the database says
                logger.warning(
                    f"[SUBSCRIPTION] Stripe lookup failed for customer_id={user.stripe_customer_id}, "
                    f"returning stored view: {str(e)}"
                )
                live = None

            if live is not None:
                subscription_data = live

        return {
            "user": {
                "id": user.id,
                "email": user.email,
                "memberSince": user.created_at
            },
            "subscription": subscription_data
        }

    def local_view(self, user: UserBillingRecord) -> Dict[str, Any]:
        """Subscription view from the users table alone"""
        if not user.stripe_customer_id or not user.has_active_subscription:
            return empty_subscription_view()

        plan = get_plan(user.payment_tier)
        return {
            "hasSubscription": True,
            "status": user.subscription_status or "active",
            "plan": plan.display_name if plan else (user.payment_tier or "Unknown"),
            "amount": format_amount(plan.unit_amount, plan.currency) if plan else "Unknown",
            "nextBilling": user.next_billing_date,
            "customerId": user.stripe_customer_id,
            "subscriptionId": None,
        }

    def live_view(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Most recent Stripe subscription for a customer, or None if there is none"""
        subscriptions = self.stripe.subscriptions.list(params={
            "customer": customer_id,
            "status": "all",
            "limit": 1
        })
        subscription = first_item(subscriptions)
        if subscription is None:
            return None

        item = first_item(stripe_field(subscription, "items"))
        price_id = stripe_field(stripe_field(item, "price"), "id")
        price = self.stripe.prices.retrieve(price_id) if price_id else None

        unit_amount = stripe_field(price, "unit_amount")
        status = stripe_field(subscription, "status")
        view = {
            "hasSubscription": status not in TERMINAL_STATUSES,
            "status": status,
            "plan": stripe_field(price, "nickname") or plan_name_for_amount(unit_amount),
            "amount": format_amount(unit_amount, stripe_field(price, "currency")),
            "nextBilling": epoch_to_iso(subscription_period_end(subscription)),
            "customerId": customer_id,
            "subscriptionId": stripe_field(subscription, "id"),
            "cancelAtPeriodEnd": bool(stripe_field(subscription, "cancel_at_period_end", False)),
        }

        if status == "trialing":
            view["isTrial"] = True
            view["trialEndDate"] = epoch_to_iso(stripe_field(subscription, "trial_end"))

        return view


class SubscriptionLifecycleService:
    def __init__(self, settings: Settings, stripe_client: stripe.StripeClient, store: Optional[UserStore] = None):
        self.settings = settings
        self.stripe = stripe_client
        self.store = store

    def cancel(self, subscription_id: Optional[str], customer_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancel at period end.

        The users table is not touched: access continues until the period
        ends, and customer.subscription.deleted flips the row then.
        """
        if not subscription_id:
            raise ValidationError("Subscription ID is required")

        logger.info(
            f"[SUBSCRIPTION] Cancelling at period end: subscription_id={subscription_id} "
            f"customer_id={customer_id}"
        )
        subscription = self._update(subscription_id, cancel_at_period_end=True)
        return {"success": True, "subscription": subscription_summary(subscription)}

    def reactivate(self, subscription_id: Optional[str], customer_id: Optional[str]) -> Dict[str, Any]:
        """Undo a pending cancellation and mark the user active again"""
        if not subscription_id or not customer_id:
            raise ValidationError("Missing required parameters: subscriptionId and customerId")

        # Resolve the user first so an unknown customer never mutates Stripe
        user = self.store.find_by_customer_id(customer_id)
        if user is None:
            logger.warning(f"[SUBSCRIPTION] No user found for customer_id={customer_id}")
            raise NotFound("User not found")

        subscription = self._update(subscription_id, cancel_at_period_end=False)
        status = stripe_field(subscription, "status")

        self.store.update_user(user.id, {
            "has_active_subscription": is_active_status(status),
            "subscription_status": status,
        })
        logger.info(
            f"[SUBSCRIPTION] Reactivated: subscription_id={subscription_id} "
            f"user_id={user.id} status={status}"
        )
        return {"success": True, "subscription": subscription_summary(subscription)}

    def create_portal_session(self, customer_id: Optional[str], return_url: Optional[str] = None) -> Dict[str, Any]:
        if not customer_id:
            raise ValidationError("Customer ID is required")

        try:
            portal_session = self.stripe.billing_portal.sessions.create(params={
                "customer": customer_id,
                "return_url": return_url or f"{self.settings.frontend_url}/manage-account.html",
            })
        except stripe.StripeError as e:
            logger.error(f"[PORTAL] Stripe API error for customer_id={customer_id}: {str(e)}")
            raise PaymentProviderError(e.user_message or str(e)) from e

        logger.info(f"[PORTAL] Portal session created for customer_id={customer_id}")
        return {"success": True, "url": portal_session.url}

    def _update(self, subscription_id: str, cancel_at_period_end: bool) -> Any:
        try:
            return self.stripe.subscriptions.update(
                subscription_id,
                params={"cancel_at_period_end": cancel_at_period_end},
            )
        except stripe.StripeError as e:
            logger.error(
                f"[SUBSCRIPTION] Stripe API error updating subscription_id={subscription_id}: {str(e)}"
            )
            raise PaymentProviderError(e.user_message or str(e)) from e
