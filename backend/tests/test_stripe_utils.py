"""
Tests for Stripe helper functions, plan catalogue and settings
"""
from types import SimpleNamespace

import pytest

from billing_sync.billing_plans import get_plan, plan_name_for_amount
from billing_sync.config import Settings
from billing_sync.errors import ValidationError
from billing_sync.events import (
    CheckoutCompleted,
    CheckoutMetadata,
    InvoicePaymentFailed,
    SubscriptionUpdated,
    UnhandledEvent,
    parse_event,
)
from billing_sync.stripe_utils import (
    epoch_to_iso,
    format_amount,
    invoice_subscription_id,
    is_active_status,
    is_temporary_identity,
    stripe_field,
    subscription_period_end,
)


class TestStripeField:

    def test_dict_and_object_access(self):
        assert stripe_field({"id": "sub_1"}, "id") == "sub_1"
        assert stripe_field(SimpleNamespace(id="sub_1"), "id") == "sub_1"

    def test_missing_and_null_use_default(self):
        assert stripe_field({}, "status", "none") == "none"
        assert stripe_field({"status": None}, "status", "none") == "none"
        assert stripe_field(None, "status") is None


def test_active_statuses():
    assert is_active_status("active")
    assert is_active_status("trialing")
    for status in ("past_due", "canceled", "unpaid", "incomplete", None):
        assert not is_active_status(status)


def test_period_end_prefers_subscription_then_items():
    assert subscription_period_end({"current_period_end": 10}) == 10
    assert subscription_period_end({"items": {"data": [{"current_period_end": 20}]}}) == 20
    assert subscription_period_end({"items": {"data": []}}) is None


def test_invoice_subscription_id_shapes():
    assert invoice_subscription_id({"subscription": "sub_1"}) == "sub_1"
    assert invoice_subscription_id({"subscription": {"id": "sub_2"}}) == "sub_2"
    assert invoice_subscription_id(
        {"parent": {"subscription_details": {"subscription": "sub_3"}}}
    ) == "sub_3"
    assert invoice_subscription_id({"id": "in_1"}) is None


def test_epoch_to_iso():
    assert epoch_to_iso(1735689600) == "2025-01-01T00:00:00+00:00"
    assert epoch_to_iso(None) is None


@pytest.mark.parametrize("amount,currency,expected", [
    (999, "gbp", "£9.99"),
    (9999, "GBP", "£99.99"),
    (500, "usd", "$5.00"),
    (2500, "chf", "CHF 25.00"),
    (None, "gbp", None),
])
def test_format_amount(amount, currency, expected):
    assert format_amount(amount, currency) == expected


def test_temporary_identity():
    prefixes, markers = ("temp_",), ("temp@unilingo.com",)

    assert is_temporary_identity("temp_abc", "real@example.com", prefixes, markers)
    assert is_temporary_identity("u1", "temp@unilingo.com", prefixes, markers)
    assert not is_temporary_identity("u1", "u1@example.com", prefixes, markers)
    # Prefix only, not substring
    assert not is_temporary_identity("user_temp_1", "u1@example.com", prefixes, markers)


def test_plan_catalogue():
    assert get_plan("yearly").trial_period_days == 7
    assert get_plan("Monthly").trial_period_days == 0
    assert get_plan("weekly") is None
    assert get_plan(None) is None
    assert plan_name_for_amount(999) == "Monthly"
    assert plan_name_for_amount(9999) == "Yearly"


class TestParseEvent:

    def test_checkout_completed(self):
        event = parse_event({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {
                "id": "cs_1",
                "metadata": {"userId": "u1", "customerId": "cus_1", "planType": "Yearly"},
            }},
        })

        assert isinstance(event, CheckoutCompleted)
        assert event.metadata == CheckoutMetadata(user_id="u1", customer_id="cus_1", plan_type="yearly")

    def test_checkout_metadata_requires_ids(self):
        with pytest.raises(ValidationError):
            CheckoutMetadata.parse({"userId": "u1"})
        with pytest.raises(ValidationError):
            CheckoutMetadata.parse(None)

    def test_checkout_metadata_rejects_unknown_plan(self):
        with pytest.raises(ValidationError):
            CheckoutMetadata.parse({"userId": "u1", "customerId": "cus_1", "planType": "lifetime"})

    def test_subscription_event(self):
        event = parse_event({
            "id": "evt_2",
            "type": "customer.subscription.updated",
            "data": {"object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "active",
                "current_period_end": 100,
                "cancel_at_period_end": True,
                "metadata": {"planType": "monthly"},
            }},
        })

        assert isinstance(event, SubscriptionUpdated)
        assert event.subscription.customer_id == "cus_1"
        assert event.subscription.current_period_end == 100
        assert event.subscription.cancel_at_period_end is True
        assert event.subscription.metadata == {"planType": "monthly"}

    def test_subscription_event_without_customer(self):
        with pytest.raises(ValidationError):
            parse_event({
                "type": "customer.subscription.deleted",
                "data": {"object": {"id": "sub_1", "status": "canceled"}},
            })

    def test_invoice_event(self):
        event = parse_event({
            "id": "evt_3",
            "type": "invoice.payment_failed",
            "data": {"object": {"id": "in_1", "subscription": "sub_1"}},
        })

        assert event == InvoicePaymentFailed(event_id="evt_3", invoice_id="in_1", subscription_id="sub_1")

    def test_unknown_event(self):
        event = parse_event({"id": "evt_4", "type": "charge.refunded", "data": {"object": {}}})

        assert event == UnhandledEvent(event_id="evt_4", event_type="charge.refunded")


class TestSettings:

    def test_from_env(self):
        settings = Settings.from_env({
            "STRIPE_SECRET_KEY": "sk_test_1",
            "STRIPE_WEBHOOK_SECRET": "whsec_1",
            "SUPABASE_URL": "https://db.example.test",
            "SUPABASE_SERVICE_ROLE_KEY": "service-key",
            "FRONTEND_URL": "https://www.example.test/",
            "CORS_ALLOWED_ORIGINS": "https://a.test, https://b.test",
            "TEMP_USER_PREFIXES": "temp_,guest_",
            "LOG_LEVEL": "debug",
        })

        assert settings.payments_configured
        assert settings.database_configured
        assert settings.frontend_url == "https://www.example.test"
        assert settings.cors_allowed_origins == ("https://a.test", "https://b.test")
        assert settings.temporary_user_prefixes == ("temp_", "guest_")
        assert settings.temporary_email_markers == ("temp@unilingo.com",)
        assert settings.log_level == "DEBUG"

    def test_empty_env(self):
        settings = Settings.from_env({})

        assert not settings.payments_configured
        assert not settings.database_configured
        assert settings.frontend_url == "http://localhost:3000"
        assert settings.cors_allowed_origins == ("*",)
        assert settings.price_for_plan("monthly") is None
