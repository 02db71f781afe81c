"""Subscription API endpoints — user-initiated lifecycle actions."""

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.api.deps import ensure_self_or_admin, get_current_user, get_db
from paygate.exceptions import (
    GatewayError,
    PaygateError,
    PersistenceError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from paygate.models.user import User
from paygate.schemas.billing import (
    CancelResponse,
    ChangePlanRequest,
    ChangePlanResponse,
    ReactivateResponse,
    RefundEligibilityResponse,
    RefundRequest,
    RefundResponse,
    SubscriptionResponse,
)
from paygate.services import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])

_STATUS_FOR_ERROR: list[tuple[type[PaygateError], int]] = [
    (SubscriptionValidationError, status.HTTP_400_BAD_REQUEST),
    (SubscriptionNotFoundError, status.HTTP_404_NOT_FOUND),
    (SubscriptionConflictError, status.HTTP_409_CONFLICT),
    (GatewayError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _http_error(e: PaygateError) -> HTTPException:
    """Translate a service error into the matching HTTP error."""
    for error_type, status_code in _STATUS_FOR_ERROR:
        if isinstance(e, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    if status_code >= 500:
        logger.error("Subscription request failed: %s", e)
        detail = "Payment provider error" if isinstance(e, GatewayError) else "Internal error"
        return HTTPException(status_code=status_code, detail=detail)

    if isinstance(e, SubscriptionConflictError) and e.end_date is not None:
        return HTTPException(
            status_code=status_code,
            detail={"message": str(e), "end_date": e.end_date.isoformat()},
        )
    return HTTPException(status_code=status_code, detail=str(e))


async def _subscription_or_404(db: AsyncSession, user_id: uuid.UUID) -> SubscriptionResponse:
    try:
        subscription = await subscription_service.get_current_subscription(db, user_id)
    except PaygateError as e:
        raise _http_error(e) from e
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")
    return SubscriptionResponse.model_validate(subscription)


@router.get("/current", response_model=SubscriptionResponse)
async def get_current(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Get the authenticated user's subscription."""
    return await _subscription_or_404(db, current_user.id)


@router.get("/user/{user_id}", response_model=SubscriptionResponse)
async def get_for_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SubscriptionResponse:
    """Get a user's subscription (admins, or the user themself)."""
    ensure_self_or_admin(current_user, user_id)
    return await _subscription_or_404(db, user_id)


@router.delete("/cancel", response_model=CancelResponse)
async def cancel(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CancelResponse:
    """Cancel at the end of the paid period; access continues until then."""
    try:
        subscription = await subscription_service.cancel_subscription_at_period_end(db, current_user.id)
    except PaygateError as e:
        raise _http_error(e) from e

    end = subscription.end_date.strftime("%Y-%m-%d") if subscription.end_date else "the end of the period"
    return CancelResponse(
        message=f"Subscription canceled. You keep access until {end}.",
        subscription=SubscriptionResponse.model_validate(subscription),
        end_date=subscription.end_date,
        days_remaining=subscription.days_remaining,
    )


@router.post("/reactivate", response_model=ReactivateResponse)
async def reactivate(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ReactivateResponse:
    """Undo a scheduled cancellation."""
    try:
        subscription = await subscription_service.reactivate_subscription(db, current_user.id)
    except PaygateError as e:
        raise _http_error(e) from e

    return ReactivateResponse(
        message="Subscription reactivated.",
        subscription=SubscriptionResponse.model_validate(subscription),
    )


@router.put("/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    body: ChangePlanRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> ChangePlanResponse:
    """Switch between the monthly and annual plans."""
    try:
        result = await subscription_service.change_plan(db, current_user.id, body.new_plan)
    except PaygateError as e:
        raise _http_error(e) from e

    return ChangePlanResponse(
        message=f"Plan changed from {result.old_plan} to {result.new_plan}.",
        subscription=SubscriptionResponse.model_validate(result.subscription),
        old_plan=result.old_plan,
        new_plan=result.new_plan,
        effective_date=result.effective_date,
        proration_amount=result.proration_amount,
    )


@router.get("/refund/eligibility", response_model=RefundEligibilityResponse)
async def refund_eligibility(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RefundEligibilityResponse:
    """Check whether the subscription is still inside the refund window."""
    try:
        eligibility = await subscription_service.check_refund_eligibility(db, current_user.id)
    except PaygateError as e:
        raise _http_error(e) from e
    return RefundEligibilityResponse.model_validate(eligibility)


@router.post("/refund", response_model=RefundResponse)
async def refund(
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> RefundResponse:
    """Refund and immediately cancel the subscription."""
    try:
        result = await subscription_service.request_refund(db, current_user.id, body.reason)
    except PaygateError as e:
        raise _http_error(e) from e

    if result.status == "processed":
        message = f"Refund of {result.amount} {result.currency} processed. Your subscription has been canceled."
    else:
        message = "Your subscription has been canceled, but the refund could not be processed. Support will follow up."
    return RefundResponse(
        message=message,
        subscription=SubscriptionResponse.model_validate(result.subscription),
        amount=result.amount,
        currency=result.currency,
        status=result.status,
        plan=result.plan,
        reason=result.reason,
    )
