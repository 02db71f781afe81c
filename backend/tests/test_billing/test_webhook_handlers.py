"""Tests for Stripe webhook handler functions with mocked Stripe events."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.billing.dates import utcnow
from paygate.billing.webhooks import (
    EVENT_HANDLERS,
    dispatch_event,
    handle_checkout_session_completed,
    handle_invoice_paid,
    handle_invoice_payment_failed,
    handle_payment_intent_failed,
    handle_payment_intent_succeeded,
    handle_subscription_deleted,
    handle_subscription_updated,
)
from paygate.exceptions import WebhookPayloadError
from paygate.models.invoice import Invoice
from paygate.models.payment import Payment
from paygate.models.subscription import Subscription
from paygate.models.user import User

PRICE_MONTHLY = "price_monthly_test"
PRICE_ANNUAL = "price_annual_test"


class _StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects).

    Stripe API 2025-08-27 (basil) changed subscription.items to require
    bracket notation to avoid collision with Python dict .items().
    """

    def __getitem__(self, key: str):
        return getattr(self, key)


def _make_event(event_type: str, data_object: dict) -> _StripeObj:
    """Create a fake Stripe Event-like object."""
    return _StripeObj(
        type=event_type,
        id=f"evt_test_{uuid.uuid4().hex[:8]}",
        data=_StripeObj(object=_StripeObj(**data_object)),
    )


def _make_stripe_sub(
    price_id: str = PRICE_MONTHLY,
    status: str = "active",
    period_end: int = 1702600000,
    cancel_at_period_end: bool = False,
    sub_id: str = "sub_test_123",
    customer: str = "cus_test_123",
) -> _StripeObj:
    """Create a fake Stripe Subscription object (period on the item, as in basil)."""
    return _StripeObj(
        id=sub_id,
        customer=customer,
        status=status,
        cancel_at_period_end=cancel_at_period_end,
        items=_StripeObj(
            data=[
                _StripeObj(
                    id="si_test_123",
                    price=_StripeObj(id=price_id),
                    current_period_start=1700000000,
                    current_period_end=period_end,
                )
            ]
        ),
    )


async def _get_sub(db_session: AsyncSession, user: User) -> Subscription:
    result = await db_session.execute(select(Subscription).where(Subscription.user_id == user.id))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------


class TestCheckoutCompleted:
    async def test_creates_active_subscription_and_grants_role(self, db_session, make_user, mock_notify):
        user = await make_user()
        session = _StripeObj(
            id="cs_test_1",
            customer="cus_new",
            subscription="sub_new",
            metadata={"userId": str(user.id), "plan": "monthly"},
        )

        with patch(
            "paygate.billing.stripe_client.retrieve_subscription",
            new_callable=AsyncMock,
            return_value=_make_stripe_sub(price_id=PRICE_ANNUAL, sub_id="sub_new"),
        ):
            await handle_checkout_session_completed(db_session, session)

        sub = await _get_sub(db_session, user)
        assert sub.plan == "annual"  # resolver overrides metadata
        assert (sub.status, sub.is_active, sub.cancelation_type) == ("active", True, None)
        assert sub.stripe_customer_id == "cus_new"
        assert sub.stripe_subscription_id == "sub_new"
        assert sub.stripe_price_id == PRICE_ANNUAL
        assert sub.stripe_session_id == "cs_test_1"
        assert sub.payment_status == "success"
        assert sub.refund_status == "none"
        assert sub.end_date - sub.start_date >= timedelta(days=365)

        await db_session.refresh(user)
        assert user.role == "premium"
        assert mock_notify.await_args.args[0] == "subscription_started"

    async def test_annual_checkout_period_is_one_calendar_year(self, db_session, make_user):
        user = await make_user()
        session = _StripeObj(
            id="cs_test_5", customer="cus_y", subscription="sub_y", metadata={"userId": str(user.id)}
        )

        with patch("paygate.billing.webhooks.utcnow", return_value=datetime(2024, 1, 15, 10, 30)), patch(
            "paygate.billing.stripe_client.retrieve_subscription",
            new_callable=AsyncMock,
            return_value=_make_stripe_sub(price_id=PRICE_ANNUAL, sub_id="sub_y"),
        ):
            await handle_checkout_session_completed(db_session, session)

        sub = await _get_sub(db_session, user)
        assert sub.plan == "annual"
        assert sub.start_date == datetime(2024, 1, 15, 10, 30)
        assert sub.end_date == datetime(2025, 1, 15, 10, 30)
        assert (sub.status, sub.is_active, sub.cancelation_type) == ("active", True, None)

    async def test_metadata_plan_used_when_retrieval_fails(self, db_session, make_user):
        user = await make_user()
        session = _StripeObj(
            id="cs_test_2", customer="cus_x", subscription="sub_x", metadata={"userId": str(user.id)}
        )

        with patch(
            "paygate.billing.stripe_client.retrieve_subscription",
            new_callable=AsyncMock,
            side_effect=stripe.APIConnectionError("network down"),
        ):
            await handle_checkout_session_completed(db_session, session)

        sub = await _get_sub(db_session, user)
        assert sub.plan == "monthly"
        assert sub.status == "active"

    async def test_missing_user_id_is_a_payload_error(self, db_session):
        session = _StripeObj(id="cs_test_3", customer="cus_x", subscription=None, metadata={})
        with pytest.raises(WebhookPayloadError):
            await handle_checkout_session_completed(db_session, session)

    async def test_redelivery_keeps_one_row(self, db_session, make_user):
        user = await make_user()
        session = _StripeObj(
            id="cs_test_4", customer="cus_r", subscription=None, metadata={"userId": str(user.id), "plan": "monthly"}
        )

        await handle_checkout_session_completed(db_session, session)
        await handle_checkout_session_completed(db_session, session)

        result = await db_session.execute(select(Subscription).where(Subscription.user_id == user.id))
        assert len(result.scalars().all()) == 1


# ---------------------------------------------------------------------------
# customer.subscription.updated
# ---------------------------------------------------------------------------


class TestSubscriptionUpdated:
    async def test_cancel_at_period_end_keeps_access_and_role(self, db_session, make_user, make_subscription):
        user = await make_user(role="premium")
        await make_subscription(user)

        stripe_sub = _make_stripe_sub(cancel_at_period_end=True, period_end=4102444800)  # 2100-01-01
        await handle_subscription_updated(db_session, stripe_sub)

        sub = await _get_sub(db_session, user)
        assert (sub.status, sub.is_active, sub.cancelation_type) == ("canceled", True, "end_of_period")
        assert sub.end_date == datetime(2100, 1, 1)
        await db_session.refresh(user)
        assert user.role == "premium"

    async def test_active_clears_scheduled_cancellation(self, db_session, make_user, make_subscription):
        user = await make_user(role="premium")
        await make_subscription(
            user, status="canceled", cancelation_type="end_of_period", end_date=utcnow() + timedelta(days=10)
        )

        await handle_subscription_updated(db_session, _make_stripe_sub(price_id=PRICE_ANNUAL, period_end=4102444800))

        sub = await _get_sub(db_session, user)
        assert (sub.status, sub.is_active, sub.cancelation_type) == ("active", True, None)
        assert sub.plan == "annual"
        assert sub.stripe_price_id == PRICE_ANNUAL

    @pytest.mark.parametrize(
        "remote,expected_status,expected_active",
        [
            ("past_due", "suspended", False),
            ("unpaid", "suspended", False),
            ("incomplete_expired", "canceled", False),
            ("trialing", "trialing", True),
            ("canceled", "canceled", False),
        ],
    )
    async def test_remote_status_mapping(
        self, db_session, make_user, make_subscription, remote, expected_status, expected_active
    ):
        user = await make_user(role="premium")
        await make_subscription(user)

        await handle_subscription_updated(db_session, _make_stripe_sub(status=remote, period_end=4102444800))

        sub = await _get_sub(db_session, user)
        assert sub.status == expected_status
        assert sub.is_active is expected_active

    async def test_remote_canceled_revokes_role(self, db_session, make_user, make_subscription):
        user = await make_user(role="premium")
        await make_subscription(user)

        await handle_subscription_updated(db_session, _make_stripe_sub(status="canceled", period_end=4102444800))

        await db_session.refresh(user)
        assert user.role == "user"

    async def test_unknown_customer_is_ignored(self, db_session):
        await handle_subscription_updated(db_session, _make_stripe_sub(customer="cus_unknown"))
        result = await db_session.execute(select(Subscription))
        assert result.scalars().all() == []

    async def test_redelivery_is_idempotent(self, db_session, make_user, make_subscription):
        user = await make_user(role="premium")
        await make_subscription(user)
        stripe_sub = _make_stripe_sub(cancel_at_period_end=True, period_end=4102444800)

        await handle_subscription_updated(db_session, stripe_sub)
        first = await _get_sub(db_session, user)
        snapshot = (first.status, first.is_active, first.cancelation_type, first.end_date, first.plan)

        await handle_subscription_updated(db_session, stripe_sub)
        second = await _get_sub(db_session, user)
        assert (second.status, second.is_active, second.cancelation_type, second.end_date, second.plan) == snapshot

    async def test_unknown_price_defaults_to_premium(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)

        await handle_subscription_updated(db_session, _make_stripe_sub(price_id="price_legacy", period_end=4102444800))

        sub = await _get_sub(db_session, user)
        assert sub.plan == "premium"


# ---------------------------------------------------------------------------
# customer.subscription.deleted
# ---------------------------------------------------------------------------


class TestSubscriptionDeleted:
    async def test_forces_canceled_and_revokes_role(self, db_session, make_user, make_subscription, mock_notify):
        user = await make_user(role="premium")
        await make_subscription(user, end_date=utcnow() + timedelta(days=20))

        await handle_subscription_deleted(db_session, _StripeObj(id="sub_test_123", customer="cus_test_123"))

        sub = await _get_sub(db_session, user)
        assert (sub.status, sub.is_active, sub.cancelation_type) == ("canceled", False, "immediate")
        assert sub.canceled_at is not None
        assert sub.end_date <= utcnow()
        await db_session.refresh(user)
        assert user.role == "user"
        assert mock_notify.await_args.args[0] == "subscription_ended"

    async def test_keeps_end_of_period_type_and_past_end_date(self, db_session, make_user, make_subscription):
        user = await make_user(role="premium")
        past = datetime(2024, 1, 1)
        await make_subscription(
            user, status="canceled", cancelation_type="end_of_period", end_date=past, canceled_at=past
        )

        await handle_subscription_deleted(db_session, _StripeObj(id="sub_test_123", customer="cus_test_123"))

        sub = await _get_sub(db_session, user)
        assert sub.cancelation_type == "end_of_period"
        assert sub.end_date == past
        assert sub.canceled_at == past

    async def test_falls_back_to_customer_lookup(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user, stripe_subscription_id=None)

        await handle_subscription_deleted(db_session, _StripeObj(id="sub_other", customer="cus_test_123"))

        sub = await _get_sub(db_session, user)
        assert sub.status == "canceled"

    async def test_unknown_subscription_is_ignored(self, db_session):
        await handle_subscription_deleted(db_session, _StripeObj(id="sub_nope", customer="cus_nope"))


# ---------------------------------------------------------------------------
# invoice.paid / invoice.payment_failed
# ---------------------------------------------------------------------------


def _invoice(**overrides) -> _StripeObj:
    values = {
        "id": "in_test_1",
        "customer": "cus_test_123",
        "subscription": "sub_test_123",
        "amount_due": 999,
        "amount_paid": 999,
        "currency": "eur",
        "status": "paid",
        "invoice_pdf": "https://example.com/in_test_1.pdf",
        "payment_intent": "pi_test_1",
        "period_start": 1700000000,
        "period_end": 1702592000,
        "next_payment_attempt": None,
        "last_payment_error": None,
    }
    values.update(overrides)
    return _StripeObj(**values)


class TestInvoicePaid:
    async def test_records_payment_and_invoice(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)

        await handle_invoice_paid(db_session, _invoice())

        sub = await _get_sub(db_session, user)
        assert sub.payment_status == "success"
        assert sub.last_transaction_id == "in_test_1"
        assert sub.last_payment_intent_id == "pi_test_1"
        assert sub.total_paid == Decimal("9.99")

        invoice = (await db_session.execute(select(Invoice))).scalar_one()
        assert invoice.status == "paid"
        assert invoice.amount_paid == Decimal("9.99")
        assert invoice.currency == "EUR"
        assert invoice.user_id == user.id

    async def test_redelivery_does_not_double_count(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)

        await handle_invoice_paid(db_session, _invoice())
        await handle_invoice_paid(db_session, _invoice())

        sub = await _get_sub(db_session, user)
        assert sub.total_paid == Decimal("9.99")
        invoices = (await db_session.execute(select(Invoice))).scalars().all()
        assert len(invoices) == 1

    async def test_out_of_order_redelivery_does_not_double_count(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)
        first = _invoice(id="in_A", payment_intent="pi_A")
        second = _invoice(id="in_B", payment_intent="pi_B")

        await handle_invoice_paid(db_session, first)
        await handle_invoice_paid(db_session, second)
        await handle_invoice_paid(db_session, first)

        sub = await _get_sub(db_session, user)
        assert sub.total_paid == Decimal("19.98")
        assert sub.last_transaction_id == "in_B"
        assert sub.last_payment_intent_id == "pi_B"
        assert len((await db_session.execute(select(Invoice))).scalars().all()) == 2

    async def test_mirrors_payment_intent_as_payment(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)

        await handle_invoice_paid(db_session, _invoice())
        await handle_invoice_paid(db_session, _invoice())

        invoice = (await db_session.execute(select(Invoice))).scalar_one()
        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.stripe_payment_id == "pi_test_1"
        assert payment.user_id == user.id
        assert payment.invoice_id == invoice.id
        assert payment.amount == Decimal("9.99")
        assert payment.currency == "EUR"
        assert payment.status == "succeeded"

    async def test_expanded_payment_intent(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)

        await handle_invoice_paid(db_session, _invoice(payment_intent=_StripeObj(id="pi_expanded")))

        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.stripe_payment_id == "pi_expanded"

    async def test_invoice_without_payment_intent_creates_no_payment(
        self, db_session, make_user, make_subscription
    ):
        user = await make_user()
        await make_subscription(user)

        await handle_invoice_paid(db_session, _invoice(payment_intent=None))

        assert (await db_session.execute(select(Payment))).scalars().all() == []
        assert (await _get_sub(db_session, user)).total_paid == Decimal("9.99")

    async def test_payment_intent_events_update_mirrored_payment(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)
        await handle_invoice_payment_failed(db_session, _invoice(status="open", amount_paid=0))

        await handle_payment_intent_succeeded(db_session, _StripeObj(id="pi_test_1", payment_method="pm_card"))

        payment = (await db_session.execute(select(Payment))).scalar_one()
        invoice = (await db_session.execute(select(Invoice))).scalar_one()
        await db_session.refresh(payment)
        await db_session.refresh(invoice)
        assert payment.status == "succeeded"
        assert invoice.status == "paid"

    async def test_unknown_customer_is_ignored(self, db_session):
        await handle_invoice_paid(db_session, _invoice(customer="cus_unknown"))
        assert (await db_session.execute(select(Invoice))).scalars().all() == []


class TestInvoicePaymentFailed:
    async def test_records_failure_and_notifies(self, db_session, make_user, make_subscription, mock_notify):
        user = await make_user()
        await make_subscription(user)
        invoice = _invoice(
            status="open",
            amount_paid=0,
            last_payment_error=_StripeObj(message="Your card was declined."),
            next_payment_attempt=1702600000,
        )

        await handle_invoice_payment_failed(db_session, invoice)

        sub = await _get_sub(db_session, user)
        assert sub.payment_status == "failed"
        assert sub.payment_failure_reason == "Your card was declined."
        assert sub.last_failure_date is not None
        stored = (await db_session.execute(select(Invoice))).scalar_one()
        assert stored.status == "open"

        event_type, email, payload = mock_notify.await_args.args
        assert event_type == "payment_failed"
        assert email == user.email
        assert payload["nextAttempt"] == datetime(2023, 12, 15, 0, 26, 40)

    async def test_default_reason_and_retry_date(self, db_session, make_user, make_subscription, mock_notify):
        user = await make_user()
        await make_subscription(user)

        before = utcnow()
        await handle_invoice_payment_failed(db_session, _invoice(status=None))

        sub = await _get_sub(db_session, user)
        assert sub.payment_failure_reason == "Unknown payment failure"
        stored = (await db_session.execute(select(Invoice))).scalar_one()
        assert stored.status == "open"
        next_attempt = mock_notify.await_args.args[2]["nextAttempt"]
        assert next_attempt >= before + timedelta(days=3)

    async def test_records_failed_payment(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)
        invoice = _invoice(
            status="open", amount_paid=0, last_payment_error=_StripeObj(message="Your card was declined.")
        )

        await handle_invoice_payment_failed(db_session, invoice)

        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.status == "failed"
        assert payment.amount == Decimal("9.99")
        assert payment.failure_reason == "Your card was declined."

    async def test_unknown_customer_is_ignored(self, db_session, mock_notify):
        result = await dispatch_event(
            db_session, _make_event("invoice.payment_failed", vars(_invoice(customer="cus_unknown")))
        )

        assert result == {"received": True}
        assert (await db_session.execute(select(Invoice))).scalars().all() == []
        assert (await db_session.execute(select(Subscription))).scalars().all() == []
        mock_notify.assert_not_awaited()

    async def test_notification_failure_does_not_fail_handler(
        self, db_session, make_user, make_subscription, mock_notify
    ):
        user = await make_user()
        await make_subscription(user)
        mock_notify.side_effect = RuntimeError("smtp down")

        await handle_invoice_payment_failed(db_session, _invoice())

        sub = await _get_sub(db_session, user)
        assert sub.payment_status == "failed"


# ---------------------------------------------------------------------------
# payment_intent.*
# ---------------------------------------------------------------------------


class TestPaymentIntents:
    async def _payment(self, db_session, user, invoice_id=None) -> Payment:
        payment = Payment(
            user_id=user.id,
            stripe_payment_id="pi_test_9",
            invoice_id=invoice_id,
            amount=Decimal("9.99"),
            currency="EUR",
            status="processing",
        )
        db_session.add(payment)
        await db_session.flush()
        return payment

    async def test_succeeded_marks_payment_and_invoice(self, db_session, make_user):
        user = await make_user()
        invoice = Invoice(user_id=user.id, stripe_invoice_id="in_9", status="open")
        db_session.add(invoice)
        await db_session.flush()
        payment = await self._payment(db_session, user, invoice_id=invoice.id)

        await handle_payment_intent_succeeded(db_session, _StripeObj(id="pi_test_9", payment_method="pm_card"))

        await db_session.refresh(payment)
        await db_session.refresh(invoice)
        assert payment.status == "succeeded"
        assert payment.payment_method == "pm_card"
        assert invoice.status == "paid"

    async def test_failed_records_message(self, db_session, make_user):
        user = await make_user()
        payment = await self._payment(db_session, user)

        await handle_payment_intent_failed(
            db_session,
            _StripeObj(id="pi_test_9", last_payment_error=_StripeObj(message="Insufficient funds")),
        )

        await db_session.refresh(payment)
        assert payment.status == "failed"
        assert payment.failure_reason == "Insufficient funds"

    async def test_unknown_payment_is_ignored(self, db_session):
        await handle_payment_intent_succeeded(db_session, _StripeObj(id="pi_unknown"))


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_handler_table_covers_lifecycle_events(self):
        assert set(EVENT_HANDLERS) == {
            "checkout.session.completed",
            "customer.subscription.updated",
            "customer.subscription.deleted",
            "invoice.paid",
            "invoice.payment_failed",
            "payment_intent.succeeded",
            "payment_intent.payment_failed",
        }

    async def test_unknown_event_is_ignored(self, db_session):
        result = await dispatch_event(db_session, _make_event("customer.created", {"id": "cus_1"}))
        assert result == {"received": True, "ignored": True}

    async def test_routes_to_handler(self, db_session, make_user, make_subscription):
        user = await make_user()
        await make_subscription(user)

        result = await dispatch_event(db_session, _make_event("invoice.paid", vars(_invoice())))

        assert result == {"received": True}
        sub = await _get_sub(db_session, user)
        assert sub.last_transaction_id == "in_test_1"

    async def test_handler_failure_is_acknowledged(self, db_session, caplog):
        event = _make_event("checkout.session.completed", {"id": "cs_bad", "metadata": {}})

        result = await dispatch_event(db_session, event)

        assert result["received"] is True
        assert "userId" in result["error"]
        assert "Error handling Stripe event" in caplog.text
