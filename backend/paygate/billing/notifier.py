"""Best-effort client for the notification (email) microservice."""

import logging
from typing import Any

import httpx
from fastapi.encoders import jsonable_encoder

from paygate.config import settings

logger = logging.getLogger(__name__)

# Event types understood by the notification service
SUBSCRIPTION_STARTED = "subscription_started"
SUBSCRIPTION_CANCEL_SCHEDULED = "subscription_cancel_scheduled"
SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
SUBSCRIPTION_ENDED = "subscription_ended"
SUBSCRIPTION_REFUNDED = "subscription_refunded"
PLAN_CHANGED = "plan_changed"
PAYMENT_FAILED = "payment_failed"


async def notify(event_type: str, email: str, payload: dict[str, Any]) -> bool:
    """Send a templated email through the notification service.

    Fire-and-forget: every failure is logged and swallowed. Returns whether
    the service accepted the message.
    """
    if not settings.notification_service_url:
        logger.warning("Notification service URL not configured; dropping %s for %s", event_type, email)
        return False

    url = f"{settings.notification_service_url.rstrip('/')}/api/notifications/email"
    headers = {"x-api-key": settings.notification_api_key}
    body = {"type": event_type, "email": email, "data": jsonable_encoder(payload)}

    try:
        async with httpx.AsyncClient(timeout=settings.notification_timeout_seconds) as client:
            response = await client.post(url, json=body, headers=headers)
            response.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error(
            "Notification service returned HTTP %s for %s email to %s",
            e.response.status_code,
            event_type,
            email,
        )
        return False
    except httpx.HTTPError as e:
        logger.error("Notification service unreachable (%s) for %s email to %s", e, event_type, email)
        return False

    logger.info("Sent %s email to %s", event_type, email)
    return True
