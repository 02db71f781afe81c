"""Pydantic v2 request/response schemas for subscription endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# --- Request schemas ---


class ChangePlanRequest(BaseModel):
    """Switch between the monthly and annual plans."""

    new_plan: str = Field(..., alias="newPlan")  # "monthly" or "annual"

    model_config = ConfigDict(populate_by_name=True)


class RefundRequest(BaseModel):
    """Ask for a refund inside the refund window."""

    reason: str = Field(default="", max_length=500)


# --- Response schemas ---


class SubscriptionResponse(BaseModel):
    """The user's subscription as stored, plus derived ``days_remaining``."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    plan: str
    status: str
    is_active: bool
    cancelation_type: str | None
    start_date: datetime | None
    end_date: datetime | None
    canceled_at: datetime | None
    days_remaining: int | None = None
    payment_method: str | None
    stripe_customer_id: str | None
    stripe_subscription_id: str | None
    stripe_price_id: str | None
    last_payment_date: datetime | None
    payment_status: str | None
    payment_failure_reason: str | None
    refund_status: str | None
    refund_amount: Decimal | None
    refund_date: datetime | None
    total_paid: Decimal
    total_refunded: Decimal
    created_at: datetime
    updated_at: datetime


class CancelResponse(BaseModel):
    """Result of scheduling an end-of-period cancellation."""

    message: str
    subscription: SubscriptionResponse
    end_date: datetime | None
    days_remaining: int | None


class ReactivateResponse(BaseModel):
    """Result of undoing a scheduled cancellation."""

    message: str
    subscription: SubscriptionResponse


class ChangePlanResponse(BaseModel):
    """Result of a plan change, with the estimated proration (negative = credit)."""

    message: str
    subscription: SubscriptionResponse
    old_plan: str
    new_plan: str
    effective_date: datetime
    proration_amount: Decimal


class RefundEligibilityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    eligible: bool
    days_since_start: int
    days_remaining_for_refund: int
    max_refund_days: int
    subscription_status: str
    start_date: datetime | None
    reason: str


class RefundResponse(BaseModel):
    """Outcome of a refund request. The subscription is canceled either way."""

    message: str
    subscription: SubscriptionResponse
    amount: Decimal
    currency: str
    status: str
    plan: str
    reason: str


class PaymentResponse(BaseModel):
    """A payment mirrored from a Stripe payment intent."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    stripe_payment_id: str
    invoice_id: uuid.UUID | None
    amount: Decimal
    currency: str
    status: str
    payment_method: str | None
    description: str | None
    failure_reason: str | None
    created_at: datetime


class PaymentListResponse(BaseModel):
    """Paginated list of payments."""

    items: list[PaymentResponse]
    total: int


class InvoiceResponse(BaseModel):
    """An invoice mirrored from Stripe."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    stripe_invoice_id: str
    stripe_subscription_id: str | None
    amount: Decimal
    amount_paid: Decimal
    currency: str
    status: str
    pdf_url: str | None
    period_start: datetime | None
    period_end: datetime | None
    created_at: datetime


class InvoiceListResponse(BaseModel):
    """Paginated list of invoices."""

    items: list[InvoiceResponse]
    total: int
