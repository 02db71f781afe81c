"""Stripe webhook endpoint — receives and processes Stripe events."""

import logging
from typing import Any

import stripe
from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.billing.stripe_client import construct_webhook_event
from paygate.billing.webhooks import dispatch_event
from paygate.config import settings
from paygate.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

# Unsigned replay of fixture events; only mounted when settings.debug is on
debug_router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/stripe")
@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    """Receive and process Stripe webhook events."""
    # Raw bytes: a re-serialised body fails signature verification
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.warning("Webhook request without stripe-signature header")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header",
        )

    try:
        event = construct_webhook_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    logger.info("Received webhook event: %s (id=%s)", event.type, event.id)
    return await dispatch_event(db, event)


@debug_router.post("/webhooks/stripe/test")
async def stripe_webhook_test(
    payload: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Dispatch an unsigned event payload (local development only)."""
    if "type" not in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Event payload must include a type",
        )
    event = stripe.Event.construct_from(payload, settings.stripe_secret_key)
    logger.warning("Dispatching UNSIGNED test webhook event %s", payload["type"])
    return await dispatch_event(db, event)
