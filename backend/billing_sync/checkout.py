"""
Stripe Checkout session creation.

Nothing is written to the users table here: a session does not guarantee
payment, so state is only persisted when the checkout.session.completed
webhook confirms it.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import stripe

from billing_sync.billing_plans import get_plan
from billing_sync.config import Settings
from billing_sync.errors import PaymentProviderError, ValidationError
from billing_sync.models import CreateCheckoutSessionRequest
from billing_sync.stripe_utils import first_item, is_temporary_identity

logger = logging.getLogger(__name__)


class CheckoutService:
    def __init__(self, settings: Settings, stripe_client: stripe.StripeClient):
        self.settings = settings
        self.stripe = stripe_client

    def create_session(self, request: CreateCheckoutSessionRequest) -> str:
        """
        Create a subscription Checkout Session and return its id.

        Errors:
            ValidationError: missing fields, unknown plan, disallowed price,
                or a temporary user id / email (checked before any Stripe call)
            PaymentProviderError: Stripe API failure
        """
        price_id = (request.priceId or "").strip()
        plan_type = (request.planType or "").strip().lower()
        user_id = (request.userId or "").strip()
        email = (request.email or "").strip()

        # Validation 1: required fields
        if not price_id or not plan_type or not user_id or not email:
            raise ValidationError(
                "Missing required fields: priceId, planType, userId, and email are required"
            )

        # Validation 2: never charge a placeholder account
        if is_temporary_identity(
            user_id,
            email,
            self.settings.temporary_user_prefixes,
            self.settings.temporary_email_markers,
        ):
            logger.error(f"[CHECKOUT] Refusing checkout for temporary identity: user_id={user_id}")
            raise ValidationError(
                "Payment cannot be processed with temporary credentials. "
                "Please complete signup before subscribing."
            )

        # Validation 3: plan allowlist
        plan = get_plan(plan_type)
        if plan is None:
            raise ValidationError('Invalid plan type. Must be "monthly" or "yearly"')

        # Validation 4: price allowlist (only when prices are configured)
        expected_price = self.settings.price_for_plan(plan_type)
        if expected_price and price_id != expected_price:
            logger.warning(
                f"[CHECKOUT] Price mismatch: plan={plan_type} price_id={price_id} user_id={user_id}"
            )
            raise ValidationError(f"Invalid priceId for {plan_type} plan")

        customer_id = self._get_or_create_customer(email, user_id, plan_type)

        metadata = {
            "planType": plan_type,
            "userId": user_id,
            "email": email,
            "customerId": customer_id,
        }
        subscription_data: Dict[str, Any] = {"metadata": dict(metadata)}

        if plan.trial_period_days:
            trial_end = datetime.now(timezone.utc) + timedelta(days=plan.trial_period_days)
            subscription_data["trial_period_days"] = plan.trial_period_days
            subscription_data["metadata"]["isTrial"] = "true"
            metadata["trialEndDate"] = trial_end.isoformat()

        frontend_url = self.settings.frontend_url
        params = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{
                "price": price_id,
                "quantity": 1
            }],
            "mode": "subscription",
            "success_url": request.successUrl or f"{frontend_url}/payment-success.html?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": request.cancelUrl or f"{frontend_url}/pricing.html",
            "metadata": metadata,
            "subscription_data": subscription_data,
        }

        logger.info(
            f"[CHECKOUT] Creating checkout session: plan={plan_type} "
            f"customer={customer_id} user_id={user_id} trial_days={plan.trial_period_days}"
        )
        try:
            session = self.stripe.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            logger.error(f"[CHECKOUT] Stripe API error creating session: {str(e)}")
            raise PaymentProviderError(e.user_message or str(e)) from e

        logger.info(f"[CHECKOUT] Checkout session created: {session.id}")
        return session.id

    def _get_or_create_customer(self, email: str, user_id: str, plan_type: str) -> str:
        """Reuse the Stripe customer for this email, or create one"""
        try:
            customers = self.stripe.customers.list(params={"email": email, "limit": 1})
            existing = first_item(customers)
            if existing is not None:
                logger.info(f"[CHECKOUT] Reusing existing customer: {existing.id}")
                return existing.id

            logger.info(f"[CHECKOUT] Creating new customer for user_id={user_id}")
            customer = self.stripe.customers.create(params={
                "email": email,
                "metadata": {
                    "userId": user_id,
                    "planType": plan_type
                }
            })
        except stripe.StripeError as e:
            logger.error(f"[CHECKOUT] Stripe customer lookup/creation failed: {str(e)}")
            raise PaymentProviderError("Failed to create customer account") from e

        logger.info(f"[CHECKOUT] Customer created: {customer.id}")
        return customer.id
