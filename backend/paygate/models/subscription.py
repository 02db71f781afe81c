"""Subscription model — billing state per user, mirrored from Stripe."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from paygate.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

PLAN_NAMES = ("free", "monthly", "annual", "premium")
SUBSCRIPTION_STATUSES = ("active", "canceled", "suspended", "trialing", "incomplete")
CANCELATION_TYPES = ("immediate", "end_of_period")
PAYMENT_STATUSES = ("success", "failed", "pending")
REFUND_STATUSES = ("none", "processed", "failed")
PAYMENT_METHODS = ("stripe", "paypal", "manual")


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a user's plan, lifecycle state, and payment/refund history."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status_active", "user_id", "status", "is_active"),
        Index("ix_subscriptions_stripe_ids", "stripe_customer_id", "stripe_subscription_id"),
    )

    # One subscription per user (UNIQUE is the upsert conflict target)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Plan & lifecycle
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    # Distinct from status: a canceled subscription stays active until end_date
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    cancelation_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="stripe")

    # Stripe identifiers (absent for manually-managed subscriptions)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Payments
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="success")
    payment_failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    last_failure_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Refunds
    refund_status: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    refund_date: Mapped[datetime | None] = mapped_column(nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Running totals
    total_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_refunded: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    # Relationships
    user: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    # Derived on read, never persisted (unannotated so declarative skips it)
    days_remaining = None

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, plan={self.plan}, "
            f"status={self.status}, is_active={self.is_active})>"
        )
