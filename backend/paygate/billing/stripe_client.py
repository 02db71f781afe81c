"""Async Stripe API wrapper — the only module that talks to Stripe."""

import logging
from datetime import datetime
from typing import Any

import stripe
from stripe import StripeClient

from paygate.billing.dates import ts_to_naive
from paygate.config import settings

logger = logging.getLogger(__name__)

RESOURCE_MISSING = "resource_missing"


def get_stripe_client() -> StripeClient:
    """Create a StripeClient with async HTTP support and a bounded timeout.

    Retries are disabled: Stripe's webhook redelivery is the only retry path,
    and user actions surface remote failures immediately.
    """
    return StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(timeout=settings.stripe_timeout_seconds),
        max_network_retries=0,
    )


def is_resource_missing(exc: Exception) -> bool:
    """True when Stripe reports the object no longer exists remotely."""
    return isinstance(exc, stripe.InvalidRequestError) and exc.code == RESOURCE_MISSING


async def retrieve_subscription(subscription_id: str) -> stripe.Subscription:
    """Retrieve a Stripe subscription by ID."""
    client = get_stripe_client()
    logger.debug("Retrieving Stripe subscription %s", subscription_id)
    return await client.v1.subscriptions.retrieve_async(subscription_id)


async def update_subscription(
    subscription_id: str,
    *,
    cancel_at_period_end: bool | None = None,
    price_item: dict[str, str] | None = None,
    proration_behavior: str | None = None,
    metadata: dict[str, str] | None = None,
) -> stripe.Subscription:
    """Update a Stripe subscription.

    ``price_item`` is ``{"id": <subscription item id>, "price": <price id>}``
    and replaces that item's price.
    """
    params: dict[str, Any] = {}
    if cancel_at_period_end is not None:
        params["cancel_at_period_end"] = cancel_at_period_end
    if price_item is not None:
        params["items"] = [price_item]
    if proration_behavior is not None:
        params["proration_behavior"] = proration_behavior
    if metadata:
        params["metadata"] = metadata

    client = get_stripe_client()
    logger.info(
        "Updating Stripe subscription %s (%s)", subscription_id, ", ".join(sorted(params))
    )
    return await client.v1.subscriptions.update_async(subscription_id, params=params)


async def cancel_subscription(subscription_id: str, immediate: bool) -> stripe.Subscription:
    """Cancel now, or schedule cancellation at the end of the current period."""
    if not immediate:
        return await update_subscription(subscription_id, cancel_at_period_end=True)

    client = get_stripe_client()
    logger.info("Cancelling Stripe subscription %s immediately", subscription_id)
    return await client.v1.subscriptions.cancel_async(subscription_id)


async def create_refund(
    payment_intent_id: str, amount_cents: int | None = None
) -> stripe.Refund:
    """Refund a payment intent, fully or for ``amount_cents``."""
    params: dict[str, Any] = {"payment_intent": payment_intent_id}
    if amount_cents is not None:
        params["amount"] = amount_cents

    client = get_stripe_client()
    logger.info(
        "Creating Stripe refund for %s (amount=%s)",
        payment_intent_id,
        amount_cents if amount_cents is not None else "full",
    )
    return await client.v1.refunds.create_async(params=params)


def construct_webhook_event(payload: bytes, sig_header: str) -> stripe.Event:
    """Verify and construct a Stripe webhook event (synchronous).

    ``payload`` must be the raw request body; a re-serialised body fails
    signature verification.
    """
    client = get_stripe_client()
    return client.construct_event(payload, sig_header, settings.stripe_webhook_secret)


def get_first_item(stripe_sub: Any) -> Any | None:
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() on Stripe objects.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, AttributeError, TypeError):
        return None
    data = getattr(sub_items, "data", None) if sub_items else None
    if data:
        return data[0]
    return None


def get_price_id(stripe_sub: Any) -> str | None:
    """Extract the first price ID from a Stripe subscription's items."""
    item = get_first_item(stripe_sub)
    price = getattr(item, "price", None) if item else None
    return getattr(price, "id", None) if price else None


def get_period(stripe_sub: Any) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    Since Stripe API 2025-08-27 (basil) the period lives on the subscription
    item; older API versions keep it on the subscription itself.
    """
    item = get_first_item(stripe_sub)
    start = getattr(item, "current_period_start", None) if item else None
    end = getattr(item, "current_period_end", None) if item else None
    if start is None:
        start = getattr(stripe_sub, "current_period_start", None)
    if end is None:
        end = getattr(stripe_sub, "current_period_end", None)
    return ts_to_naive(start), ts_to_naive(end)
