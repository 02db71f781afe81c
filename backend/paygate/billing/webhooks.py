"""Stripe webhook event handlers — process subscription lifecycle events."""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable

import stripe
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.billing import notifier, stripe_client
from paygate.billing.dates import compute_period_end, ts_to_naive, utcnow
from paygate.billing.plans import get_plan_from_stripe_price
from paygate.config import settings
from paygate.exceptions import WebhookPayloadError
from paygate.models.invoice import Invoice
from paygate.models.payment import Payment
from paygate.services import subscription_service
from paygate.services.store import find_subscription, upsert_row

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, Any], Awaitable[None]]

# Remote statuses that do not map onto a local status of the same name
_REMOTE_STATUS_MAP = {
    "past_due": "suspended",
    "unpaid": "suspended",
    "paused": "suspended",
    "incomplete_expired": "canceled",
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a Stripe object, a dict, or a plain attribute holder."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _cents(value: int | None) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(Decimal("0.01"))


def _currency(obj: Any) -> str:
    return (_get(obj, "currency") or "eur").upper()


def _parse_user_id(raw: Any) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError as e:
        raise WebhookPayloadError(f"Invalid userId {raw!r} in checkout metadata") from e


async def handle_checkout_session_completed(db: AsyncSession, session: Any) -> None:
    """Handle checkout.session.completed — create or refresh an active subscription."""
    metadata = _get(session, "metadata") or {}
    raw_user_id = _get(metadata, "userId")
    if not raw_user_id:
        raise WebhookPayloadError(f"Checkout session {_get(session, 'id')} has no userId in metadata")
    user_id = _parse_user_id(raw_user_id)

    customer_id = _get(session, "customer")
    subscription_id = _get(session, "subscription")
    plan = _get(metadata, "plan") or "monthly"
    price_id = None

    if subscription_id:
        try:
            stripe_sub = await stripe_client.retrieve_subscription(subscription_id)
            price_id = stripe_client.get_price_id(stripe_sub)
            if price_id:
                plan = get_plan_from_stripe_price(price_id)
        except stripe.StripeError as e:
            logger.error(
                "Could not retrieve Stripe subscription %s for checkout %s: %s",
                subscription_id,
                _get(session, "id"),
                e.user_message or str(e),
            )

    now = utcnow()
    end_date = compute_period_end(plan, now)
    values: dict[str, Any] = {
        "plan": plan,
        "status": "active",
        "is_active": True,
        "cancelation_type": None,
        "start_date": now,
        "end_date": end_date,
        "payment_method": "stripe",
        "stripe_customer_id": customer_id,
        "stripe_subscription_id": subscription_id,
        "stripe_session_id": _get(session, "id"),
        "payment_status": "success",
        "refund_status": "none",
        "update_user_role": True,
    }
    if price_id:
        values["stripe_price_id"] = price_id

    await subscription_service.update_subscription(db, user_id, values)
    logger.info(
        "Checkout completed: user %s subscribed to %s until %s (subscription %s)",
        user_id,
        plan,
        end_date,
        subscription_id,
    )
    await subscription_service.notify_user(
        db, user_id, notifier.SUBSCRIPTION_STARTED, {"plan": plan, "endDate": end_date}
    )


async def handle_subscription_updated(db: AsyncSession, stripe_sub: Any) -> None:
    """Handle customer.subscription.updated — re-derive state from remote flags."""
    customer_id = _get(stripe_sub, "customer")
    user_id = await subscription_service.get_user_id_from_customer_id(db, customer_id)
    if user_id is None:
        logger.warning(
            "Ignoring update for Stripe subscription %s: unknown customer %s",
            _get(stripe_sub, "id"),
            customer_id,
        )
        return

    remote_status = _get(stripe_sub, "status")
    price_id = stripe_client.get_price_id(stripe_sub)
    _, period_end = stripe_client.get_period(stripe_sub)

    values: dict[str, Any] = {"stripe_subscription_id": _get(stripe_sub, "id")}
    if price_id:
        values["plan"] = get_plan_from_stripe_price(price_id)
        values["stripe_price_id"] = price_id
    if period_end:
        values["end_date"] = period_end

    if _get(stripe_sub, "cancel_at_period_end") and remote_status not in ("canceled", "incomplete_expired"):
        values.update(
            status="canceled",
            is_active=True,
            cancelation_type="end_of_period",
            update_user_role=False,
        )
    elif remote_status == "active":
        values.update(status="active", is_active=True, cancelation_type=None, update_user_role=True)
    else:
        status = _REMOTE_STATUS_MAP.get(remote_status, remote_status)
        if status == "trialing":
            values.update(status="trialing", is_active=True)
        elif status == "canceled":
            values.update(status="canceled", is_active=False)
        elif status in ("suspended", "incomplete"):
            values.update(status=status, is_active=False)
        else:
            logger.warning("Unrecognised Stripe subscription status %r; keeping local status", remote_status)
        values["update_user_role"] = True

    subscription = await subscription_service.update_subscription(db, user_id, values)
    logger.info(
        "Subscription updated from Stripe for user %s: remote=%s -> %s/%s/%s",
        user_id,
        remote_status,
        subscription.status,
        subscription.is_active,
        subscription.cancelation_type,
    )


async def handle_subscription_deleted(db: AsyncSession, stripe_sub: Any) -> None:
    """Handle customer.subscription.deleted — the remote subscription is gone."""
    subscription = None
    if _get(stripe_sub, "id"):
        subscription = await find_subscription(db, stripe_subscription_id=_get(stripe_sub, "id"))
    if subscription is None and _get(stripe_sub, "customer"):
        subscription = await find_subscription(db, stripe_customer_id=_get(stripe_sub, "customer"))
    if subscription is None:
        logger.warning(
            "Ignoring delete for Stripe subscription %s: no local subscription",
            _get(stripe_sub, "id"),
        )
        return

    now = utcnow()
    end_date = subscription.end_date if subscription.end_date and subscription.end_date < now else now
    cancelation_type = (
        "end_of_period" if subscription.cancelation_type == "end_of_period" else "immediate"
    )
    await subscription_service.update_subscription(
        db,
        subscription.user_id,
        {
            "status": "canceled",
            "is_active": False,
            "canceled_at": subscription.canceled_at or now,
            "end_date": end_date,
            "cancelation_type": cancelation_type,
            "update_user_role": True,
        },
    )
    logger.info("Subscription deleted in Stripe: user %s downgraded", subscription.user_id)
    await subscription_service.notify_user(
        db, subscription.user_id, notifier.SUBSCRIPTION_ENDED, {"plan": subscription.plan, "endDate": end_date}
    )


def _id_of(value: Any) -> str | None:
    """ID of a Stripe reference that may be a bare ID or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


async def _upsert_payment(
    db: AsyncSession,
    user_id: uuid.UUID,
    invoice_row: Invoice,
    status: str,
    amount: Decimal,
    failure_reason: str | None = None,
) -> Payment | None:
    """Mirror the invoice's payment intent as a Payment row, when it has one."""
    if not invoice_row.payment_intent_id:
        return None
    return await upsert_row(
        db,
        Payment,
        "stripe_payment_id",
        {
            "stripe_payment_id": invoice_row.payment_intent_id,
            "user_id": user_id,
            "invoice_id": invoice_row.id,
            "amount": amount,
            "currency": invoice_row.currency,
            "status": status,
            "description": f"Invoice {invoice_row.stripe_invoice_id}",
            "failure_reason": failure_reason,
        },
    )


async def _upsert_invoice(db: AsyncSession, user_id: uuid.UUID, invoice: Any, status: str) -> Invoice:
    return await upsert_row(
        db,
        Invoice,
        "stripe_invoice_id",
        {
            "stripe_invoice_id": _get(invoice, "id"),
            "user_id": user_id,
            "stripe_subscription_id": _get(invoice, "subscription"),
            "amount": _cents(_get(invoice, "amount_due")),
            "amount_paid": _cents(_get(invoice, "amount_paid")),
            "currency": _currency(invoice),
            "status": status,
            "pdf_url": _get(invoice, "invoice_pdf"),
            "payment_intent_id": _id_of(_get(invoice, "payment_intent")),
            "period_start": ts_to_naive(_get(invoice, "period_start")),
            "period_end": ts_to_naive(_get(invoice, "period_end")),
        },
    )


async def handle_invoice_paid(db: AsyncSession, invoice: Any) -> None:
    """Handle invoice.paid — record the payment against the subscription."""
    user_id = await subscription_service.get_user_id_from_customer_id(db, _get(invoice, "customer"))
    if user_id is None:
        logger.warning("Ignoring paid invoice %s: unknown customer %s", _get(invoice, "id"), _get(invoice, "customer"))
        return

    await subscription_service.record_subscription_payment(
        db,
        user_id,
        transaction_id=_get(invoice, "id"),
        amount=_cents(_get(invoice, "amount_paid")),
        currency=_currency(invoice),
        payment_intent_id=_id_of(_get(invoice, "payment_intent")),
    )
    invoice_row = await _upsert_invoice(db, user_id, invoice, "paid")
    await _upsert_payment(db, user_id, invoice_row, "succeeded", invoice_row.amount_paid)
    logger.info("Invoice %s paid by user %s", _get(invoice, "id"), user_id)


async def handle_invoice_payment_failed(db: AsyncSession, invoice: Any) -> None:
    """Handle invoice.payment_failed — record the failure and warn the user."""
    user_id = await subscription_service.get_user_id_from_customer_id(db, _get(invoice, "customer"))
    if user_id is None:
        logger.warning(
            "Ignoring failed invoice %s: unknown customer %s", _get(invoice, "id"), _get(invoice, "customer")
        )
        return

    failure_reason = _get(_get(invoice, "last_payment_error"), "message") or "Unknown payment failure"
    await subscription_service.record_payment_failure(db, user_id, failure_reason)
    invoice_row = await _upsert_invoice(db, user_id, invoice, _get(invoice, "status") or "open")
    await _upsert_payment(db, user_id, invoice_row, "failed", invoice_row.amount, failure_reason)

    next_attempt = ts_to_naive(_get(invoice, "next_payment_attempt")) or (
        utcnow() + timedelta(days=settings.payment_retry_days)
    )
    logger.warning("Invoice %s payment failed for user %s: %s", _get(invoice, "id"), user_id, failure_reason)
    await subscription_service.notify_user(
        db,
        user_id,
        notifier.PAYMENT_FAILED,
        {"reason": failure_reason, "nextAttempt": next_attempt, "invoiceId": _get(invoice, "id")},
    )


async def _set_payment_status(db: AsyncSession, payment_intent: Any, status: str, failure_reason: str | None) -> None:
    payment_id = _get(payment_intent, "id")
    result = await db.execute(select(Payment).where(Payment.stripe_payment_id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        logger.warning("Ignoring %s for unknown payment intent %s", status, payment_id)
        return

    payment.status = status
    payment.failure_reason = failure_reason
    if _get(payment_intent, "payment_method"):
        payment.payment_method = _get(payment_intent, "payment_method")

    if status == "succeeded" and payment.invoice_id is not None:
        await db.execute(update(Invoice).where(Invoice.id == payment.invoice_id).values(status="paid"))
    await db.flush()
    logger.info("Payment %s marked %s", payment_id, status)


async def handle_payment_intent_succeeded(db: AsyncSession, payment_intent: Any) -> None:
    """Handle payment_intent.succeeded."""
    await _set_payment_status(db, payment_intent, "succeeded", None)


async def handle_payment_intent_failed(db: AsyncSession, payment_intent: Any) -> None:
    """Handle payment_intent.payment_failed."""
    message = _get(_get(payment_intent, "last_payment_error"), "message") or "Unknown payment failure"
    await _set_payment_status(db, payment_intent, "failed", message)


EVENT_HANDLERS: dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
}


async def dispatch_event(db: AsyncSession, event: Any) -> dict[str, Any]:
    """Route a verified event to its handler.

    Handler failures are logged and acknowledged so Stripe does not keep
    redelivering an event the application cannot process.
    """
    event_type = _get(event, "type")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring unhandled Stripe event type %s (%s)", event_type, _get(event, "id"))
        return {"received": True, "ignored": True}

    data_object = _get(_get(event, "data"), "object")
    try:
        await handler(db, data_object)
    except Exception as e:
        await db.rollback()
        logger.exception("Error handling Stripe event %s (%s)", event_type, _get(event, "id"))
        return {"received": True, "error": str(e)}

    logger.info("Processed Stripe event %s (%s)", event_type, _get(event, "id"))
    return {"received": True}
