"""
Stripe utilities for the billing service.

Pure functions for Stripe integration (no API calls, no side effects).
Stripe objects may arrive as plain dicts (webhook payloads) or as SDK
objects (API responses); every reader here accepts both.
"""

from datetime import datetime, timezone
from typing import Any, Iterable, Optional


# Statuses that grant access to the paid product
ACTIVE_STATUSES = frozenset({"active", "trialing"})

# Statuses after which the subscription can never become active again
TERMINAL_STATUSES = frozenset({"canceled", "incomplete_expired"})

CURRENCY_SYMBOLS = {
    "gbp": "£",
    "usd": "$",
    "eur": "€",
}


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """
    Read a field from a Stripe object or a plain dict.

    Dict-style access first (webhook payloads, StripeObject keys), then
    attribute access. Missing or null fields return `default`.
    """
    if obj is None:
        return default

    try:
        value = obj[name]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, name, None)

    return default if value is None else value


def first_item(obj: Any) -> Any:
    """First element of a Stripe list object ({"data": [...]}), or None"""
    data = stripe_field(obj, "data")
    if not data:
        return None
    return data[0]


def is_active_status(status: Optional[str]) -> bool:
    """
    Examples:
        >>> is_active_status("trialing")
        True

        >>> is_active_status("past_due")
        False
    """
    return status in ACTIVE_STATUSES


def subscription_period_end(subscription: Any) -> Optional[int]:
    """
    Current period end (epoch seconds) of a subscription.

    Older API versions expose current_period_end on the subscription,
    newer ones only on each subscription item.
    """
    period_end = stripe_field(subscription, "current_period_end")
    if period_end is not None:
        return period_end

    item = first_item(stripe_field(subscription, "items"))
    return stripe_field(item, "current_period_end")


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    """Subscription id an invoice belongs to, across API versions"""
    subscription = stripe_field(invoice, "subscription")
    if subscription is None:
        parent = stripe_field(invoice, "parent")
        details = stripe_field(parent, "subscription_details")
        subscription = stripe_field(details, "subscription")

    # Expanded objects carry the id inside
    if subscription is not None and not isinstance(subscription, str):
        subscription = stripe_field(subscription, "id")
    return subscription


def epoch_to_iso(epoch_seconds: Optional[int]) -> Optional[str]:
    """
    Convert Stripe epoch seconds to an ISO-8601 UTC timestamp.

    Examples:
        >>> epoch_to_iso(1735689600)
        '2025-01-01T00:00:00+00:00'

        >>> epoch_to_iso(None)
        None
    """
    if epoch_seconds is None:
        return None
    return datetime.fromtimestamp(int(epoch_seconds), tz=timezone.utc).isoformat()


def format_amount(unit_amount: Optional[int], currency: Optional[str] = "gbp") -> Optional[str]:
    """
    Format a minor-unit amount for display.

    Examples:
        >>> format_amount(999, "gbp")
        '£9.99'

        >>> format_amount(2500, "chf")
        'CHF 25.00'
    """
    if unit_amount is None:
        return None

    code = (currency or "gbp").lower()
    value = f"{unit_amount / 100:.2f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{value}"
    return f"{code.upper()} {value}"


def is_temporary_identity(
    user_id: str,
    email: str,
    user_prefixes: Iterable[str],
    email_markers: Iterable[str],
) -> bool:
    """
    True when a user id or email belongs to a placeholder account.

    Placeholder accounts exist before signup completes; charging a card
    against one would leave the payment attached to nothing durable.

    Examples:
        >>> is_temporary_identity("temp_123", "a@b.com", ["temp_"], ["temp@unilingo.com"])
        True

        >>> is_temporary_identity("u1", "u1@example.com", ["temp_"], ["temp@unilingo.com"])
        False
    """
    if any(user_id.startswith(prefix) for prefix in user_prefixes):
        return True

    lowered = email.lower()
    return any(marker.lower() in lowered for marker in email_markers)
