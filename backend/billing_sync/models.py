"""
Request bodies and the parsed user billing record.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel


# Request bodies use the camelCase keys the website sends. Required fields
# are checked by the services so a missing field is a 400 with a message,
# not a 422 from the framework.

class CreateCheckoutSessionRequest(BaseModel):
    priceId: Optional[str] = None
    planType: Optional[str] = None
    userId: Optional[str] = None
    email: Optional[str] = None
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    subscriptionId: Optional[str] = None
    customerId: Optional[str] = None


class ReactivateSubscriptionRequest(BaseModel):
    subscriptionId: Optional[str] = None
    customerId: Optional[str] = None


class CreatePortalSessionRequest(BaseModel):
    customerId: Optional[str] = None
    returnUrl: Optional[str] = None


USER_COLUMNS = (
    "id, email, created_at, stripe_customer_id, has_active_subscription, "
    "payment_tier, subscription_status, next_billing_date, updated_at"
)


@dataclass
class UserBillingRecord:
    """One row of the users table, billing columns only"""
    id: str
    email: Optional[str] = None
    created_at: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    has_active_subscription: bool = False
    payment_tier: Optional[str] = None
    subscription_status: Optional[str] = None
    next_billing_date: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserBillingRecord":
        return cls(
            id=row["id"],
            email=row.get("email"),
            created_at=row.get("created_at"),
            stripe_customer_id=row.get("stripe_customer_id") or None,
            has_active_subscription=bool(row.get("has_active_subscription")),
            payment_tier=row.get("payment_tier"),
            subscription_status=row.get("subscription_status"),
            next_billing_date=row.get("next_billing_date"),
            updated_at=row.get("updated_at"),
        )
