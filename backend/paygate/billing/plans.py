"""Plan definitions — billing intervals, reference prices, Stripe price mapping."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from paygate.config import settings

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "premium"
CHANGEABLE_PLANS = ("monthly", "annual")

_CENTS = Decimal("0.01")


@dataclass(frozen=True)
class PlanDefinition:
    """Static description of a subscription plan."""

    name: str
    display_name: str
    interval_months: int
    reference_price: Decimal  # flat list price, used only for estimates
    refund_amount: Decimal  # flat amount returned on an eligible refund


PLANS: dict[str, PlanDefinition] = {
    "free": PlanDefinition(
        name="free",
        display_name="Free",
        interval_months=1,
        reference_price=Decimal("0"),
        refund_amount=Decimal("0"),
    ),
    "monthly": PlanDefinition(
        name="monthly",
        display_name="Monthly",
        interval_months=1,
        reference_price=Decimal("9.99"),
        refund_amount=Decimal("5"),
    ),
    "annual": PlanDefinition(
        name="annual",
        display_name="Annual",
        interval_months=12,
        reference_price=Decimal("99.99"),
        refund_amount=Decimal("45"),
    ),
    "premium": PlanDefinition(
        name="premium",
        display_name="Premium",
        interval_months=1,
        reference_price=Decimal("9.99"),
        refund_amount=Decimal("5"),
    ),
}

VALID_PLAN_NAMES: set[str] = set(PLANS.keys())


def get_plan(plan_name: str) -> PlanDefinition:
    """Get plan definition by name. Defaults to premium if unknown."""
    return PLANS.get(plan_name, PLANS[DEFAULT_PLAN])


def get_plan_from_stripe_price(price_id: str | None) -> str:
    """Map a Stripe price ID to a plan name.

    Unknown price IDs are a configuration gap, not an error: they resolve to
    the default plan and are logged so the missing mapping can be added.
    """
    if price_id and price_id == settings.stripe_price_annual_id:
        return "annual"
    if price_id and price_id == settings.stripe_price_monthly_id:
        return "monthly"
    logger.warning(
        "Unrecognised Stripe price ID %r; defaulting to plan %r. "
        "Check STRIPE_PRICE_MONTHLY_ID / STRIPE_PRICE_ANNUAL_ID.",
        price_id,
        DEFAULT_PLAN,
    )
    return DEFAULT_PLAN


def get_price_id_for_plan(plan_name: str) -> str | None:
    """Reverse lookup: plan name -> configured Stripe price ID."""
    if plan_name == "annual":
        return settings.stripe_price_annual_id or None
    if plan_name == "monthly":
        return settings.stripe_price_monthly_id or None
    return None


def estimate_proration(old_plan: str, new_plan: str) -> Decimal:
    """Estimate the credit (negative) or charge for switching plans.

    This is an approximation from flat reference prices; Stripe's own
    proration invoice is the source of truth for what is actually billed.
    """
    monthly = PLANS["monthly"].reference_price
    annual = PLANS["annual"].reference_price

    if old_plan == "monthly" and new_plan == "annual":
        amount = -(monthly * 12 - annual)
    elif old_plan == "annual" and new_plan == "monthly":
        amount = annual / 12 - monthly
    else:
        amount = Decimal("0")
    return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)
