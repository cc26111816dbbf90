"""
Centralized subscription plan catalogue - Single Source of Truth
Usage: from billing_sync.billing_plans import get_plan

Amounts are in minor currency units (pence), as Stripe reports them.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass
class PlanDetails:
    """Subscription plan configuration"""
    plan_type: str  # "monthly" | "yearly"
    display_name: str
    unit_amount: int
    currency: str
    trial_period_days: int  # 0 = no trial


# Official plan definitions
PLANS = {
    "monthly": PlanDetails(
        plan_type="monthly",
        display_name="Monthly",
        unit_amount=999,  # £9.99
        currency="gbp",
        trial_period_days=0
    ),
    "yearly": PlanDetails(
        plan_type="yearly",
        display_name="Yearly",
        unit_amount=9999,  # £99.99
        currency="gbp",
        trial_period_days=7
    )
}

PLAN_TYPES = tuple(PLANS.keys())


def get_plan(plan_type: Optional[str]) -> Optional[PlanDetails]:
    """
    Get plan details by type.

    Args:
        plan_type: 'monthly' or 'yearly' (case-insensitive)

    Returns:
        PlanDetails, or None for unknown/missing plan types
    """
    if not plan_type:
        return None
    return PLANS.get(plan_type.lower())


def plan_name_for_amount(unit_amount: Optional[int]) -> str:
    """Best-effort plan name for a Stripe price without a nickname"""
    if unit_amount == PLANS["monthly"].unit_amount:
        return PLANS["monthly"].display_name
    return PLANS["yearly"].display_name
