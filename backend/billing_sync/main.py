import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from supabase import Client

from billing_sync.checkout import CheckoutService
from billing_sync.config import Settings, configure_logging
from billing_sync.db import UserStore, create_supabase_client
from billing_sync.errors import BillingError, DatabaseError, PaymentProviderError, ValidationError
from billing_sync.models import (
    CancelSubscriptionRequest,
    CreateCheckoutSessionRequest,
    CreatePortalSessionRequest,
    ReactivateSubscriptionRequest,
)
from billing_sync.subscriptions import SubscriptionLifecycleService, SubscriptionQueryService
from billing_sync.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_store(request: Request) -> UserStore:
    store = request.app.state.user_store
    if store is None:
        logger.error("[CONFIG] Database connection not configured")
        raise DatabaseError("Database connection not configured")
    return store


def require_stripe(request: Request) -> stripe.StripeClient:
    client = request.app.state.stripe_client
    if client is None:
        logger.error("[CONFIG] STRIPE_SECRET_KEY not configured")
        raise PaymentProviderError("Payment system not configured")
    return client


def require_webhook_secret(settings: Settings = Depends(get_settings)) -> Settings:
    if not settings.stripe_webhook_secret:
        logger.error("[CONFIG] STRIPE_WEBHOOK_SECRET not configured")
        raise PaymentProviderError("Webhook not configured")
    return settings


@router.get("/")
def read_root():
    return {"message": "Billing Sync API", "status": "running"}


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.options("/{path:path}")
def preflight(path: str):
    # Bare OPTIONS requests; CORS preflights are answered by the middleware
    return Response(status_code=200)


@router.post("/create-checkout-session")
def create_checkout_session(
    request: CreateCheckoutSessionRequest,
    settings: Settings = Depends(get_settings),
    stripe_client: stripe.StripeClient = Depends(require_stripe),
):
    """
    Create a Stripe Checkout Session for a monthly or yearly subscription.

    Body:
        {"priceId", "planType", "userId", "email", "successUrl"?, "cancelUrl"?}

    Returns:
        {"id": "cs_..."}
    """
    session_id = CheckoutService(settings, stripe_client).create_session(request)
    return {"id": session_id}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(require_webhook_secret),
    store: UserStore = Depends(require_store),
    stripe_client: stripe.StripeClient = Depends(require_stripe),
):
    """
    Stripe webhook handler.

    Events handled:
    - checkout.session.completed
    - customer.subscription.created / updated / deleted
    - invoice.payment_succeeded / invoice.payment_failed

    Only signature failures return a non-2xx status.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    reconciler = WebhookReconciler(settings, stripe_client, store)
    return await run_in_threadpool(reconciler.handle, payload, signature)


@router.post("/cancel-subscription")
def cancel_subscription(
    request: CancelSubscriptionRequest,
    settings: Settings = Depends(get_settings),
    stripe_client: stripe.StripeClient = Depends(require_stripe),
):
    service = SubscriptionLifecycleService(settings, stripe_client)
    return service.cancel(request.subscriptionId, request.customerId)


@router.post("/reactivate-subscription")
def reactivate_subscription(
    request: ReactivateSubscriptionRequest,
    settings: Settings = Depends(get_settings),
    store: UserStore = Depends(require_store),
    stripe_client: stripe.StripeClient = Depends(require_stripe),
):
    service = SubscriptionLifecycleService(settings, stripe_client, store)
    return service.reactivate(request.subscriptionId, request.customerId)


@router.get("/user-subscription/{user_id}")
def get_user_subscription(
    user_id: str,
    request: Request,
    settings: Settings = Depends(get_settings),
    store: UserStore = Depends(require_store),
):
    """
    Get the user's plan and status.

    Local users-table data, overridden by live Stripe data when the user
    has a Stripe customer and Stripe answers.
    """
    service = SubscriptionQueryService(settings, request.app.state.stripe_client, store)
    return service.get_user_subscription(user_id)


@router.get("/user-subscription")
def get_user_subscription_by_query(
    request: Request,
    userId: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    store: UserStore = Depends(require_store),
):
    if not userId:
        raise ValidationError("User ID is required")
    service = SubscriptionQueryService(settings, request.app.state.stripe_client, store)
    return service.get_user_subscription(userId)


@router.post("/create-portal-session")
def create_portal_session(
    request: CreatePortalSessionRequest,
    settings: Settings = Depends(get_settings),
    stripe_client: stripe.StripeClient = Depends(require_stripe),
):
    service = SubscriptionLifecycleService(settings, stripe_client)
    return service.create_portal_session(request.customerId, request.returnUrl)


async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"[REQUEST] Invalid request body for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


def create_app(
    settings: Optional[Settings] = None,
    stripe_client: Optional[stripe.StripeClient] = None,
    supabase_client: Optional[Client] = None,
) -> FastAPI:
    """
    Build the API.

    Clients not passed in are created from settings; either may end up None,
    in which case the endpoints that need it answer 500 "not configured".
    """
    settings = settings or Settings.from_env()
    configure_logging(settings)

    if stripe_client is None and settings.payments_configured:
        stripe_client = stripe.StripeClient(settings.stripe_secret_key)
    if supabase_client is None:
        supabase_client = create_supabase_client(settings)

    app = FastAPI(title="Billing Sync API")
    app.state.settings = settings
    app.state.stripe_client = stripe_client
    app.state.user_store = UserStore(supabase_client) if supabase_client is not None else None

    allowed_origins = list(settings.cors_allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        # Browsers reject credentials with a wildcard origin
        allow_credentials="*" not in allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
