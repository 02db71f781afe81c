"""Subscription service — lifecycle state machine reconciled with Stripe.

Every write goes through :func:`update_subscription`, which enforces the
record invariants (valid end date, expiry of lapsed grace periods, role
projection). User actions that need Stripe's agreement call Stripe first and
abort on any remote failure, except "resource missing", which falls back to
a locally computed end date.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.billing import notifier, stripe_client
from paygate.billing.dates import compute_period_end, days_remaining, parse_end_date, utcnow
from paygate.billing.plans import (
    CHANGEABLE_PLANS,
    estimate_proration,
    get_plan,
    get_price_id_for_plan,
)
from paygate.config import settings
from paygate.exceptions import (
    GatewayError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from paygate.models.subscription import (
    CANCELATION_TYPES,
    PLAN_NAMES,
    SUBSCRIPTION_STATUSES,
    Subscription,
)
from paygate.models.user import ROLE_PREMIUM, ROLE_USER
from paygate.services.store import find_invoice, find_subscription, upsert_subscription
from paygate.services.user_service import get_user_email, set_role

logger = logging.getLogger(__name__)

REFUND_CURRENCY = "EUR"

# Running totals; only ever changed through ``increments``
_ACCUMULATORS = {"total_paid", "total_refunded"}

_WRITABLE_FIELDS = {
    column.key for column in Subscription.__table__.columns
} - {"id", "user_id", "created_at", "updated_at"} - _ACCUMULATORS


@dataclass
class PlanChangeResult:
    """Outcome of :func:`change_plan`."""

    subscription: Subscription
    old_plan: str
    new_plan: str
    effective_date: datetime
    proration_amount: Decimal  # estimate; negative is a credit


@dataclass
class RefundEligibility:
    """Whether the subscription is still inside the refund window."""

    eligible: bool
    days_since_start: int
    days_remaining_for_refund: int
    max_refund_days: int
    subscription_status: str
    start_date: datetime | None
    reason: str


@dataclass
class RefundResult:
    """Outcome of :func:`request_refund`."""

    subscription: Subscription
    amount: Decimal
    currency: str
    status: str  # processed | failed
    plan: str
    reason: str


# ---------------------------------------------------------------------------
# Invariant helpers
# ---------------------------------------------------------------------------


def _format_date(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d") if value else "the end of the current period"


def _sanitize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Validate enum fields and drop malformed end dates."""
    data = dict(fields)

    if "end_date" in data:
        parsed = parse_end_date(data["end_date"])
        if parsed is None:
            logger.warning("Dropping invalid end_date %r from subscription update", data["end_date"])
            del data["end_date"]
        else:
            data["end_date"] = parsed

    unknown = set(data) - _WRITABLE_FIELDS
    if unknown:
        raise SubscriptionValidationError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
    if "plan" in data and data["plan"] not in PLAN_NAMES:
        raise SubscriptionValidationError(f"Invalid plan {data['plan']!r}")
    if "status" in data and data["status"] not in SUBSCRIPTION_STATUSES:
        raise SubscriptionValidationError(f"Invalid status {data['status']!r}")
    if data.get("cancelation_type") is not None and data["cancelation_type"] not in CANCELATION_TYPES:
        raise SubscriptionValidationError(f"Invalid cancelation type {data['cancelation_type']!r}")
    return data


def _role_for(status: str, is_active: bool) -> str | None:
    """Entitlement role implied by the subscription state, or None to leave it."""
    if status == "active" and is_active:
        return ROLE_PREMIUM
    if status == "canceled" and not is_active:
        return ROLE_USER
    return None


async def _apply_role_projection(db: AsyncSession, subscription: Subscription) -> None:
    role = _role_for(subscription.status, subscription.is_active)
    if role is None:
        logger.debug(
            "No role change for user %s (status=%s, is_active=%s)",
            subscription.user_id,
            subscription.status,
            subscription.is_active,
        )
        return
    await set_role(db, subscription.user_id, role)


async def notify_user(
    db: AsyncSession, user_id: uuid.UUID, event_type: str, payload: dict[str, Any]
) -> None:
    """Best-effort notification; never raises."""
    try:
        email = await get_user_email(db, user_id)
        if not email:
            logger.debug("No email for user %s; skipping %s notification", user_id, event_type)
            return
        await notifier.notify(event_type, email, payload)
    except Exception:
        logger.warning("Notification %s for user %s failed", event_type, user_id, exc_info=True)


def _gateway_error(action: str, subscription_id: str, e: stripe.StripeError) -> GatewayError:
    logger.error(
        "Stripe %s failed for subscription %s: %s (code=%s)",
        action,
        subscription_id,
        e.user_message or str(e),
        e.code,
    )
    return GatewayError(f"Stripe {action} failed: {e.user_message or e}", code=e.code)


# ---------------------------------------------------------------------------
# Write path and lookups
# ---------------------------------------------------------------------------


async def update_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    fields: dict[str, Any],
    increments: dict[str, Decimal] | None = None,
) -> Subscription:
    """Merge ``fields`` into the user's subscription (created if missing).

    ``fields`` uses column names plus the ``update_user_role`` flag. Invalid
    end dates are dropped, ``updated_at`` is always stamped, and a canceled
    subscription whose end date has passed is deactivated. The role
    projection runs when ``update_user_role`` is set or when that expiry
    revokes the entitlement.

    ``increments`` adds to the running totals (``total_paid``,
    ``total_refunded``) in the database rather than writing a value read
    earlier.
    """
    data = dict(fields)
    update_user_role = bool(data.pop("update_user_role", False))
    data = _sanitize_fields(data)
    if increments:
        unknown = set(increments) - _ACCUMULATORS
        if unknown:
            raise SubscriptionValidationError(f"Cannot increment fields: {', '.join(sorted(unknown))}")
        increments = {key: Decimal(str(amount)) for key, amount in increments.items()}

    existing = await find_subscription(db, user_id=user_id)
    now = utcnow()

    status = data.get("status", existing.status if existing else "active")
    is_active = data.get("is_active", existing.is_active if existing else True)
    end_date = data["end_date"] if "end_date" in data else (existing.end_date if existing else None)

    expired = status == "canceled" and is_active and end_date is not None and end_date <= now
    if expired:
        logger.info("Grace period for user %s ended %s; deactivating", user_id, end_date)
        data["is_active"] = False

    data["updated_at"] = now
    subscription = await upsert_subscription(db, user_id, data, increments)

    if update_user_role or expired:
        await _apply_role_projection(db, subscription)

    logger.info(
        "Subscription for user %s updated: plan=%s status=%s is_active=%s end_date=%s",
        user_id,
        subscription.plan,
        subscription.status,
        subscription.is_active,
        subscription.end_date,
    )
    return subscription


async def get_current_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Return the user's subscription with ``days_remaining`` attached, or None."""
    subscription = await find_subscription(db, user_id=user_id)
    if subscription is None:
        logger.info("No subscription found for user %s", user_id)
        return None

    now = utcnow()
    if (
        subscription.status == "canceled"
        and subscription.is_active
        and subscription.end_date is not None
        and subscription.end_date <= now
    ):
        subscription = await update_subscription(db, user_id, {})

    subscription.days_remaining = days_remaining(subscription.end_date, now)
    return subscription


async def get_user_id_from_customer_id(db: AsyncSession, customer_id: str | None) -> uuid.UUID | None:
    """Reverse lookup from a Stripe customer ID. None means "ignore the event"."""
    if not customer_id:
        return None
    subscription = await find_subscription(db, stripe_customer_id=customer_id)
    if subscription is None:
        logger.warning("No subscription references Stripe customer %s", customer_id)
        return None
    return subscription.user_id


# ---------------------------------------------------------------------------
# User actions
# ---------------------------------------------------------------------------


async def cancel_subscription_at_period_end(db: AsyncSession, user_id: uuid.UUID) -> Subscription:
    """Schedule cancellation at the end of the paid period.

    The user keeps their entitlement (and role) until ``end_date``.
    """
    subscription = await find_subscription(db, user_id=user_id)

    if subscription is None or not (subscription.status == "active" and subscription.is_active):
        if (
            subscription is not None
            and subscription.status == "canceled"
            and subscription.is_active
            and subscription.cancelation_type != "immediate"
        ):
            raise SubscriptionConflictError(
                f"Your subscription is already scheduled for cancellation on "
                f"{_format_date(subscription.end_date)}. You can reactivate it if you change your mind.",
                end_date=subscription.end_date,
            )
        if subscription is not None and subscription.status == "canceled" and not subscription.is_active:
            raise SubscriptionConflictError(
                "Your subscription has already expired. Subscribe to a new plan to regain access.",
                end_date=subscription.end_date,
            )
        raise SubscriptionNotFoundError("No subscription to cancel.")

    now = utcnow()
    end_date: datetime | None = None
    stripe_subscription_id = subscription.stripe_subscription_id

    if stripe_subscription_id:
        try:
            remote = await stripe_client.retrieve_subscription(stripe_subscription_id)
            if getattr(remote, "cancel_at_period_end", False) is True:
                logger.info("Stripe subscription %s already set to cancel at period end", stripe_subscription_id)
                _, end_date = stripe_client.get_period(remote)
            else:
                updated = await stripe_client.update_subscription(
                    stripe_subscription_id,
                    cancel_at_period_end=True,
                    metadata={"canceled_by_user": "true", "canceled_at": now.isoformat()},
                )
                _, end_date = stripe_client.get_period(updated)
        except stripe.StripeError as e:
            if not stripe_client.is_resource_missing(e):
                raise _gateway_error("cancellation", stripe_subscription_id, e) from e
            logger.warning(
                "Stripe subscription %s no longer exists; cancelling locally", stripe_subscription_id
            )
    else:
        logger.warning("User %s has no Stripe subscription; cancelling locally only", user_id)

    if end_date is None:
        end_date = compute_period_end(subscription.plan, now)
        logger.info("Computed local end date %s for plan %s", end_date, subscription.plan)

    subscription = await update_subscription(
        db,
        user_id,
        {
            "status": "canceled",
            "is_active": True,
            "end_date": end_date,
            "cancelation_type": "end_of_period",
            "update_user_role": False,
        },
    )
    subscription.days_remaining = days_remaining(end_date, now)

    logger.info(
        "Subscription for user %s scheduled to cancel on %s (%s days left)",
        user_id,
        end_date,
        subscription.days_remaining,
    )
    await notify_user(
        db,
        user_id,
        notifier.SUBSCRIPTION_CANCEL_SCHEDULED,
        {"plan": subscription.plan, "endDate": end_date, "daysRemaining": subscription.days_remaining},
    )
    return subscription


async def reactivate_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription:
    """Undo a scheduled end-of-period cancellation."""
    subscription = await find_subscription(db, user_id=user_id)
    if subscription is None:
        raise SubscriptionNotFoundError("No canceled subscription to reactivate.")

    if subscription.cancelation_type == "immediate":
        raise SubscriptionConflictError(
            "Immediately canceled subscriptions cannot be reactivated. Subscribe to a new plan instead."
        )
    if subscription.status == "canceled" and (
        not subscription.is_active
        or (subscription.end_date is not None and subscription.end_date <= utcnow())
    ):
        raise SubscriptionConflictError(
            "Your subscription has already expired. Subscribe to a new plan to regain access.",
            end_date=subscription.end_date,
        )
    if not (
        subscription.status == "canceled"
        and subscription.is_active
        and subscription.cancelation_type == "end_of_period"
    ):
        raise SubscriptionNotFoundError("No canceled subscription to reactivate.")

    stripe_subscription_id = subscription.stripe_subscription_id
    if stripe_subscription_id:
        try:
            await stripe_client.update_subscription(
                stripe_subscription_id,
                cancel_at_period_end=False,
                metadata={"reactivated_by_user": "true", "reactivated_at": utcnow().isoformat()},
            )
        except stripe.StripeError as e:
            raise _gateway_error("reactivation", stripe_subscription_id, e) from e

    subscription = await update_subscription(
        db,
        user_id,
        {
            "status": "active",
            "is_active": True,
            "cancelation_type": None,
            "update_user_role": True,
        },
    )
    subscription.days_remaining = days_remaining(subscription.end_date)

    logger.info("Subscription for user %s reactivated on plan %s", user_id, subscription.plan)
    await notify_user(
        db,
        user_id,
        notifier.SUBSCRIPTION_REACTIVATED,
        {"plan": subscription.plan, "endDate": subscription.end_date},
    )
    return subscription


async def change_plan(db: AsyncSession, user_id: uuid.UUID, new_plan: str) -> PlanChangeResult:
    """Switch an active subscription between the monthly and annual plans."""
    if new_plan not in CHANGEABLE_PLANS:
        raise SubscriptionValidationError(
            f"Invalid plan {new_plan!r}. Use one of: {', '.join(CHANGEABLE_PLANS)}."
        )

    subscription = await find_subscription(db, user_id=user_id, status="active", is_active=True)
    if subscription is None:
        raise SubscriptionNotFoundError("No active subscription to change.")
    if subscription.plan == new_plan:
        raise SubscriptionConflictError(f"You are already on the {new_plan} plan.")

    old_plan = subscription.plan
    now = utcnow()
    proration_amount = Decimal("0.00")
    values: dict[str, Any] = {"plan": new_plan}

    stripe_subscription_id = subscription.stripe_subscription_id
    if stripe_subscription_id:
        new_price_id = get_price_id_for_plan(new_plan)
        if not new_price_id:
            raise SubscriptionValidationError(f"No Stripe price configured for plan {new_plan!r}.")

        try:
            remote = await stripe_client.retrieve_subscription(stripe_subscription_id)
            item = stripe_client.get_first_item(remote)
            if item is None:
                raise GatewayError(f"Stripe subscription {stripe_subscription_id} has no items to update")
            await stripe_client.update_subscription(
                stripe_subscription_id,
                price_item={"id": item.id, "price": new_price_id},
                proration_behavior="create_prorations",
                metadata={
                    "changed_by_user": "true",
                    "changed_at": now.isoformat(),
                    "old_plan": old_plan,
                    "new_plan": new_plan,
                },
            )
        except stripe.StripeError as e:
            raise _gateway_error("plan change", stripe_subscription_id, e) from e

        values["stripe_price_id"] = new_price_id
        proration_amount = estimate_proration(old_plan, new_plan)
    else:
        logger.warning("User %s has no Stripe subscription; changing plan locally only", user_id)

    effective_date = compute_period_end(new_plan, now)
    values["end_date"] = effective_date
    values["update_user_role"] = False

    subscription = await update_subscription(db, user_id, values)
    subscription.days_remaining = days_remaining(effective_date, now)

    logger.info(
        "Plan for user %s changed %s -> %s (effective %s, proration estimate %s)",
        user_id,
        old_plan,
        new_plan,
        effective_date,
        proration_amount,
    )
    await notify_user(
        db,
        user_id,
        notifier.PLAN_CHANGED,
        {
            "oldPlan": old_plan,
            "newPlan": new_plan,
            "effectiveDate": effective_date,
            "prorationAmount": proration_amount,
        },
    )
    return PlanChangeResult(
        subscription=subscription,
        old_plan=old_plan,
        new_plan=new_plan,
        effective_date=effective_date,
        proration_amount=proration_amount,
    )


# ---------------------------------------------------------------------------
# Payment recording (webhook-driven, no remote calls)
# ---------------------------------------------------------------------------


async def record_subscription_payment(
    db: AsyncSession,
    user_id: uuid.UUID,
    transaction_id: str,
    amount: Decimal | float | None = None,
    currency: str | None = None,
    payment_intent_id: str | None = None,
) -> Subscription | None:
    """Record a successful payment. Re-recording the same transaction is a no-op.

    ``transaction_id`` is the Stripe invoice ID. An invoice already mirrored
    as paid has been counted, whenever it was delivered, so a late
    redelivery neither adds to ``total_paid`` again nor moves the
    ``last_*`` fields back to it.
    """
    subscription = await find_subscription(db, user_id=user_id)
    if subscription is None:
        logger.warning("Payment %s for user %s has no subscription to record against", transaction_id, user_id)
        return None

    if subscription.last_transaction_id == transaction_id and subscription.payment_status == "success":
        logger.info("Payment %s already recorded for user %s", transaction_id, user_id)
        return subscription
    invoice = await find_invoice(db, transaction_id)
    if invoice is not None and invoice.status == "paid":
        logger.info("Invoice %s was already recorded as paid for user %s; skipping", transaction_id, user_id)
        return subscription

    values: dict[str, Any] = {
        "last_payment_date": utcnow(),
        "last_transaction_id": transaction_id,
        "payment_status": "success",
    }
    if payment_intent_id:
        values["last_payment_intent_id"] = payment_intent_id
    increments = {"total_paid": Decimal(str(amount))} if amount is not None else None

    logger.info("Recording payment %s (%s %s) for user %s", transaction_id, amount, currency, user_id)
    return await update_subscription(db, user_id, values, increments)


async def record_payment_failure(
    db: AsyncSession, user_id: uuid.UUID, failure_reason: str
) -> Subscription | None:
    """Record a failed payment attempt."""
    subscription = await find_subscription(db, user_id=user_id)
    if subscription is None:
        logger.warning("Payment failure for user %s has no subscription to record against", user_id)
        return None

    logger.warning("Recording payment failure for user %s: %s", user_id, failure_reason)
    return await update_subscription(
        db,
        user_id,
        {
            "payment_status": "failed",
            "payment_failure_reason": failure_reason,
            "last_failure_date": utcnow(),
        },
    )


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def _evaluate_refund(subscription: Subscription, now: datetime) -> RefundEligibility:
    max_days = settings.refund_window_days
    start = subscription.start_date or subscription.created_at
    days_since_start = (now - start).days if start else 0

    eligible = subscription.status == "active" and 0 <= days_since_start <= max_days
    if eligible:
        left = max_days - days_since_start
        reason = f"Eligible for a refund for {left} more day(s)."
    elif subscription.status != "active":
        reason = "Subscription is not active."
    elif days_since_start > max_days:
        reason = f"Refund period expired ({max_days} days maximum)."
    else:
        reason = "Subscription start date is in the future."

    return RefundEligibility(
        eligible=eligible,
        days_since_start=days_since_start,
        days_remaining_for_refund=max(0, max_days - days_since_start),
        max_refund_days=max_days,
        subscription_status=subscription.status,
        start_date=start,
        reason=reason,
    )


async def check_refund_eligibility(db: AsyncSession, user_id: uuid.UUID) -> RefundEligibility:
    """Check whether the user's subscription can still be refunded."""
    subscription = await find_subscription(db, user_id=user_id)
    if subscription is None:
        raise SubscriptionNotFoundError("No subscription found.")

    eligibility = _evaluate_refund(subscription, utcnow())
    logger.info(
        "Refund eligibility for user %s: eligible=%s days_since_start=%s",
        user_id,
        eligibility.eligible,
        eligibility.days_since_start,
    )
    return eligibility


async def request_refund(db: AsyncSession, user_id: uuid.UUID, reason: str = "") -> RefundResult:
    """Refund an eligible subscription and cancel it immediately."""
    subscription = await find_subscription(db, user_id=user_id)
    if subscription is None:
        raise SubscriptionNotFoundError("No subscription found.")
    if subscription.status != "active":
        raise SubscriptionConflictError("Only active subscriptions can be refunded.")

    now = utcnow()
    eligibility = _evaluate_refund(subscription, now)
    if not eligibility.eligible:
        raise SubscriptionConflictError(f"Refund not allowed: {eligibility.reason}")

    plan = get_plan(subscription.plan)
    amount = plan.refund_amount
    refund_reason = reason or "Customer request"

    stripe_subscription_id = subscription.stripe_subscription_id
    if stripe_subscription_id:
        try:
            await stripe_client.cancel_subscription(stripe_subscription_id, immediate=True)
        except stripe.StripeError as e:
            if not stripe_client.is_resource_missing(e):
                raise _gateway_error("immediate cancellation", stripe_subscription_id, e) from e
            logger.warning("Stripe subscription %s already gone; refunding locally", stripe_subscription_id)

    # The remote cancellation has happened; a failed refund is recorded, not raised.
    payment_intent_id = subscription.last_payment_intent_id
    refund_status = "processed"
    if amount > 0 and not payment_intent_id:
        logger.warning("No recorded payment to refund for user %s; refund of %s not issued", user_id, amount)
        refund_status = "failed"
    elif amount > 0:
        try:
            await stripe_client.create_refund(payment_intent_id, amount_cents=int(amount * 100))
        except stripe.StripeError as e:
            logger.error(
                "Stripe refund of %s for payment %s failed: %s",
                amount,
                payment_intent_id,
                e.user_message or str(e),
            )
            refund_status = "failed"

    values: dict[str, Any] = {
        "status": "canceled",
        "is_active": False,
        "cancelation_type": "immediate",
        "end_date": now,
        "refund_status": refund_status,
        "refund_amount": amount,
        "refund_date": now,
        "refund_reason": refund_reason,
        "update_user_role": True,
    }
    # Only money that actually moved counts towards the total
    increments = {"total_refunded": amount} if refund_status == "processed" and amount > 0 else None

    subscription = await update_subscription(db, user_id, values, increments)
    subscription.days_remaining = 0

    logger.info(
        "Refund %s for user %s: %s %s on plan %s",
        refund_status,
        user_id,
        amount,
        REFUND_CURRENCY,
        subscription.plan,
    )
    await notify_user(
        db,
        user_id,
        notifier.SUBSCRIPTION_REFUNDED,
        {"plan": subscription.plan, "amount": amount, "currency": REFUND_CURRENCY, "status": refund_status},
    )
    return RefundResult(
        subscription=subscription,
        amount=amount,
        currency=REFUND_CURRENCY,
        status=refund_status,
        plan=subscription.plan,
        reason=refund_reason,
    )
