"""Payment model — local mirror of Stripe payment intents."""

import uuid
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

PAYMENT_INTENT_STATUSES = (
    "pending",
    "requires_confirmation",
    "requires_payment_method",
    "requires_action",
    "processing",
    "succeeded",
    "failed",
    "refunded",
    "canceled",
)


class Payment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per Stripe payment intent."""

    __tablename__ = "payments"
    __table_args__ = (Index("ix_payments_user_status", "user_id", "status"),)

    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    stripe_payment_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")
    payment_method: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, stripe_payment_id={self.stripe_payment_id}, status={self.status})>"
