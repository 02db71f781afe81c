"""Invoice model — local mirror of Stripe invoices."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from paygate.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

INVOICE_STATUSES = ("draft", "open", "paid", "uncollectible", "void")


class Invoice(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per Stripe invoice, upserted from webhook events."""

    __tablename__ = "invoices"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stripe_invoice_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)
    pdf_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, stripe_invoice_id={self.stripe_invoice_id}, status={self.status})>"
