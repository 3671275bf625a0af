from unittest import mock

import pytest
import stripe

from app import db
from models import DunningAttempt, Payment
from services.errors import Conflict, PaymentRequired, ValidationFailed
from services.invoices import create_invoice, finalize_invoice
from services.payments import pay_invoice, record_manual_payment, record_provider_payment, refund_payment


@pytest.fixture
def fake_stripe():
    fake = mock.MagicMock()
    fake.StripeError = stripe.StripeError
    fake.Customer.create.return_value = {"id": "cus_1"}
    with mock.patch("services.payments.ensure_stripe", return_value=fake):
        yield fake


@pytest.fixture
def invoice(customer):
    customer.default_payment_method = "pm_card_visa"
    inv = create_invoice(customer, [{"description": "Seats", "quantity": 1, "unit_amount": 3000}])
    finalize_invoice(inv)
    db.session.commit()
    return inv


def test_successful_charge_settles_invoice(fake_stripe, customer, invoice):
    fake_stripe.PaymentIntent.create.return_value = {"id": "pi_1", "status": "succeeded"}

    p = pay_invoice(invoice)

    assert p.status == "succeeded"
    assert p.external_id == "pi_1"
    assert invoice.status == "paid"
    assert customer.stripe_customer_id == "cus_1"
    kwargs = fake_stripe.PaymentIntent.create.call_args.kwargs
    assert kwargs["amount"] == 3000
    assert kwargs["customer"] == "cus_1"
    assert kwargs["off_session"] is True


def test_decline_records_failure_and_schedules_dunning(fake_stripe, invoice):
    fake_stripe.PaymentIntent.create.side_effect = stripe.CardError(
        "Your card was declined.", param=None, code="card_declined"
    )

    p = pay_invoice(invoice)

    assert p.status == "failed"
    assert "declined" in p.failure_reason
    assert invoice.status == "open"
    assert DunningAttempt.query.filter_by(invoice_id=invoice.id).count() == 1


def test_processing_charge_stays_pending(fake_stripe, invoice):
    fake_stripe.PaymentIntent.create.return_value = {"id": "pi_2", "status": "processing"}
    assert pay_invoice(invoice).status == "pending"
    assert invoice.status == "open"


def test_charge_needs_payment_method(customer):
    inv = create_invoice(customer, [{"description": "Seats", "quantity": 1, "unit_amount": 3000}])
    finalize_invoice(inv)
    with pytest.raises(PaymentRequired):
        pay_invoice(inv)


def test_refunds(fake_stripe, invoice):
    p = record_manual_payment(invoice, 3000, reference="wire-42")
    with pytest.raises(ValidationFailed):
        refund_payment(p, 5000)

    refund_payment(p, 1000)
    assert p.status == "succeeded"
    assert p.refunded_amount == 1000
    refund_payment(p)
    assert p.status == "refunded"
    with pytest.raises(Conflict):
        refund_payment(p)
    # manual payments never touch Stripe
    fake_stripe.Refund.create.assert_not_called()


def test_stripe_refund_goes_through_the_api(fake_stripe, invoice):
    fake_stripe.PaymentIntent.create.return_value = {"id": "pi_9", "status": "succeeded"}
    p = pay_invoice(invoice)
    refund_payment(p, 500, reason="duplicate")
    fake_stripe.Refund.create.assert_called_once()
    assert fake_stripe.Refund.create.call_args.kwargs["payment_intent"] == "pi_9"


def test_provider_payments_upsert_once(invoice):
    first = record_provider_payment("paypal", "ORDER-7", "succeeded", amount=3000, invoice=invoice)
    again = record_provider_payment("paypal", "ORDER-7", "succeeded", amount=3000, invoice=invoice)
    assert again.id == first.id
    assert invoice.status == "paid"
    assert invoice.amount_paid == 3000
    assert Payment.query.count() == 1
    assert record_provider_payment("paypal", "ORPHAN", "succeeded", amount=10) is None
