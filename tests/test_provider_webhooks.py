import calendar
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta
from unittest import mock

import pytest
import responses

from app import db
from models import DunningAttempt, Invoice, Notification, Payment, ProcessedWebhookEvent, Subscription
from services.dates import utcnow
from services.dunning import process_due_retries, retry_one, schedule_dunning
from services.invoices import create_invoice, finalize_invoice
from services.subscriptions import create_subscription

from .conftest import STRIPE_WEBHOOK_SECRET, WYRE_WEBHOOK_SECRET


def stripe_post(client, event, secret=STRIPE_WEBHOOK_SECRET):
    payload = json.dumps(event)
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return client.post(
        "/webhooks/stripe",
        data=payload,
        headers={"Stripe-Signature": f"t={ts},v1={sig}"},
        content_type="application/json",
    )


@pytest.fixture
def open_invoice(customer):
    inv = create_invoice(customer, [{"description": "Seats", "quantity": 1, "unit_amount": 3000}])
    finalize_invoice(inv)
    inv.stripe_invoice_id = "in_123"
    db.session.commit()
    return inv


def invoice_paid_event(event_id="evt_1"):
    return {
        "id": event_id,
        "type": "invoice.paid",
        "data": {"object": {"id": "in_123", "payment_intent": "pi_1", "amount_paid": 3000, "currency": "usd"}},
    }


# ------------------------- Stripe -------------------------

def test_stripe_invoice_paid_settles_invoice_once(client, open_invoice):
    resp = stripe_post(client, invoice_paid_event())
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["received"] is True
    assert body["status"] == "paid"
    assert open_invoice.status == "paid"

    replay = stripe_post(client, invoice_paid_event())
    assert replay.status_code == 200
    assert replay.get_json() == {"received": True, "duplicate": True}
    assert Payment.query.count() == 1
    assert ProcessedWebhookEvent.query.filter_by(provider="stripe", event_id="evt_1").count() == 1


def test_stripe_bad_signature(client, open_invoice):
    resp = stripe_post(client, invoice_paid_event(), secret="whsec_wrong")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "Invalid signature"}
    assert open_invoice.status == "open"


def test_stripe_missing_secret(app, client, ctx):
    app.config["STRIPE_WEBHOOK_SECRET"] = ""
    resp = stripe_post(client, invoice_paid_event())
    assert resp.status_code == 500


def test_stripe_unknown_event_is_acknowledged(client, ctx):
    resp = stripe_post(client, {"id": "evt_x", "type": "customer.created", "data": {"object": {}}})
    assert resp.status_code == 200
    assert resp.get_json() == {"received": True, "ignored": "customer.created"}
    assert ProcessedWebhookEvent.query.count() == 0


def test_stripe_handler_failure_is_retryable(client, ctx):
    # payment intent without an id cannot be recorded
    event = {"id": "evt_bad", "type": "payment_intent.succeeded", "data": {"object": {"amount": 100}}}
    resp = stripe_post(client, event)
    assert resp.status_code == 500
    assert ProcessedWebhookEvent.query.count() == 0


def payment_failed_event(event_id="evt_fail"):
    return {
        "id": event_id,
        "type": "invoice.payment_failed",
        "data": {"object": {"id": "in_123", "payment_intent": "pi_2", "amount_due": 3000, "currency": "usd"}},
    }


def test_stripe_payment_failed_is_mirrored_without_dunning(client, open_invoice):
    resp = stripe_post(client, payment_failed_event())
    assert resp.status_code == 200
    p = Payment.query.filter_by(external_id="pi_2").one()
    assert p.status == "failed"
    assert open_invoice.status == "open"
    assert DunningAttempt.query.count() == 0
    assert Notification.query.filter_by(type="PAYMENT_FAILED").count() == 1


def test_stripe_failed_invoice_is_never_charged_locally(app, client, customer, open_invoice):
    customer.default_payment_method = "pm_card_visa"
    db.session.commit()
    app.config["STRIPE_SECRET_KEY"] = "sk_test_123"

    assert stripe_post(client, payment_failed_event()).status_code == 200
    with mock.patch("stripe.PaymentIntent.create") as create:
        stats = process_due_retries(utcnow() + timedelta(hours=2))
    assert create.call_count == 0
    assert stats["processed"] == 0


def test_stripe_subscription_past_due_is_mirrored(customer, basic_plan):
    sub = create_subscription(customer, basic_plan)
    sub.stripe_subscription_id = "sub_123"
    inv = Invoice.query.filter_by(subscription_id=sub.id).one()
    db.session.commit()

    assert schedule_dunning(inv) is None
    assert sub.status == "past_due"
    assert DunningAttempt.query.count() == 0


def test_dunning_row_stops_once_stripe_takes_over(customer, open_invoice):
    open_invoice.stripe_invoice_id = None
    row = schedule_dunning(open_invoice)
    db.session.commit()
    assert row is not None

    open_invoice.stripe_invoice_id = "in_123"
    assert retry_one(row) is False
    assert row.status == "failed"
    assert row.attempts_made == 0
    assert Payment.query.count() == 0


def stripe_event(event_type, obj, event_id=None):
    return {"id": event_id or f"evt_{event_type}", "type": event_type, "data": {"object": obj}}


def _ts(dt):
    return calendar.timegm(dt.utctimetuple())


def test_stripe_checkout_creates_linked_subscription(client, customer, basic_plan):
    obj = {
        "id": "cs_1",
        "mode": "subscription",
        "customer": "cus_9",
        "subscription": "sub_9",
        "client_reference_id": str(customer.id),
        "metadata": {"plan_id": str(basic_plan.id)},
    }
    resp = stripe_post(client, stripe_event("checkout.session.completed", obj))
    assert resp.status_code == 200
    body = resp.get_json()

    db.session.expire_all()
    sub = db.session.get(Subscription, body["subscription_id"])
    assert sub.stripe_subscription_id == "sub_9"
    assert sub.status == "active"
    assert sub.plan_id == basic_plan.id
    assert customer.stripe_customer_id == "cus_9"


def test_stripe_subscription_updates_are_mirrored(client, customer, basic_plan, pro_plan):
    sub = create_subscription(customer, basic_plan)
    sub.stripe_subscription_id = "sub_9"
    pro_plan.stripe_price_id = "price_pro"
    db.session.commit()

    start, end = datetime(2025, 6, 1), datetime(2025, 7, 1)
    obj = {
        "id": "sub_9",
        "status": "unpaid",
        "cancel_at_period_end": True,
        "items": {"data": [{
            "quantity": 3,
            "price": {"id": "price_pro"},
            "current_period_start": _ts(start),
            "current_period_end": _ts(end),
        }]},
    }
    assert stripe_post(client, stripe_event("customer.subscription.updated", obj)).status_code == 200

    db.session.expire_all()
    assert sub.status == "past_due"
    assert sub.plan_id == pro_plan.id
    assert sub.quantity == 3
    assert sub.cancel_at_period_end is True
    assert (sub.current_period_start, sub.current_period_end) == (start, end)

    canceled = {"id": "sub_9", "canceled_at": _ts(datetime(2025, 6, 15))}
    assert stripe_post(client, stripe_event("customer.subscription.deleted", canceled)).status_code == 200
    db.session.expire_all()
    assert sub.status == "canceled"
    assert sub.canceled_at == datetime(2025, 6, 15)
    assert sub.cancel_at_period_end is False


def test_stripe_charge_refunds_partial_then_full(client, open_invoice):
    assert stripe_post(client, invoice_paid_event()).status_code == 200

    partial = {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 1000}
    resp = stripe_post(client, stripe_event("charge.refunded", partial, event_id="evt_r1"))
    assert resp.get_json()["refunded_amount"] == 1000
    db.session.expire_all()
    p = Payment.query.filter_by(external_id="pi_1").one()
    assert p.status == "succeeded"

    full = {"id": "ch_1", "payment_intent": "pi_1", "amount_refunded": 3000}
    stripe_post(client, stripe_event("charge.refunded", full, event_id="evt_r2"))
    db.session.expire_all()
    p = Payment.query.filter_by(external_id="pi_1").one()
    assert p.status == "refunded"
    assert p.refunded_amount == 3000


# ------------------------- Wyre -------------------------

def wyre_post(client, payload, secret=WYRE_WEBHOOK_SECRET):
    raw = json.dumps(payload).encode()
    sig = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return client.post("/webhooks/wyre", data=raw, headers={"X-Wyre-Signature": sig},
                       content_type="application/json")


def test_wyre_completed_transfer_pays_invoice(client, open_invoice):
    payload = {
        "transferId": "TF_1",
        "status": "COMPLETED",
        "sourceAmount": "30.00",
        "sourceCurrency": "USD",
        "metadata": {"invoice_id": open_invoice.id},
    }
    resp = wyre_post(client, payload)
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "succeeded"
    assert open_invoice.status == "paid"

    p = Payment.query.filter_by(provider="wyre").one()
    assert p.external_id == "TF_1"
    assert p.amount == 3000
    assert p.currency == "usd"

    assert wyre_post(client, payload).get_json()["duplicate"] is True


def test_wyre_signature_checked(client, open_invoice):
    resp = wyre_post(client, {"transferId": "TF_2", "status": "COMPLETED"}, secret="nope")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid signature"


# ------------------------- BitPay -------------------------

def test_bitpay_trusts_only_the_refetched_invoice(client, open_invoice):
    fetched = {"data": {"id": "BP1", "status": "confirmed", "price": 30, "currency": "USD",
                        "orderId": str(open_invoice.id)}}
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "https://test.bitpay.com/invoices/BP1", json=fetched)
        # the posted body claims a different status; only the fetched copy counts
        resp = client.post("/webhooks/bitpay", json={"data": {"id": "BP1", "status": "complete"}})

    assert resp.status_code == 200
    assert open_invoice.status == "paid"
    row = ProcessedWebhookEvent.query.filter_by(provider="bitpay").one()
    assert row.event_id == "BP1:confirmed"


def test_bitpay_unknown_invoice(client, ctx):
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, "https://test.bitpay.com/invoices/NOPE", status=404)
        resp = client.post("/webhooks/bitpay", json={"id": "NOPE"})
    assert resp.status_code == 400


# ------------------------- PayPal -------------------------

PAYPAL_HEADERS = {
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
    "PAYPAL-TRANSMISSION-ID": "tx-1",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-TRANSMISSION-TIME": "2025-01-01T00:00:00Z",
}


@pytest.fixture
def paypal_app(app):
    app.config.update(
        PAYPAL_CLIENT_ID="client",
        PAYPAL_CLIENT_SECRET="secret",
        PAYPAL_WEBHOOK_ID="WH-1",
        PAYPAL_API_BASE="https://paypal.test",
    )
    return app


def _paypal_mocks(rsps, verification_status):
    rsps.add(responses.POST, "https://paypal.test/v1/oauth2/token", json={"access_token": "tok"})
    rsps.add(responses.POST, "https://paypal.test/v1/notifications/verify-webhook-signature",
             json={"verification_status": verification_status})


def test_paypal_capture_completed(paypal_app, client, open_invoice):
    event = {
        "id": "WH-EVT-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-1",
            "custom_id": str(open_invoice.id),
            "amount": {"value": "30.00", "currency_code": "USD"},
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        },
    }
    with responses.RequestsMock() as rsps:
        _paypal_mocks(rsps, "SUCCESS")
        resp = client.post("/webhooks/paypal", json=event, headers=PAYPAL_HEADERS)
        sent = json.loads(rsps.calls[1].request.body)

    assert resp.status_code == 200
    assert sent["webhook_id"] == "WH-1"
    assert sent["transmission_id"] == "tx-1"
    assert open_invoice.status == "paid"
    assert Payment.query.filter_by(provider="paypal").one().external_id == "ORDER-1"


def test_paypal_rejected_signature(paypal_app, client, open_invoice):
    with responses.RequestsMock() as rsps:
        _paypal_mocks(rsps, "FAILURE")
        resp = client.post("/webhooks/paypal", json={"id": "WH-EVT-2", "event_type": "PAYMENT.CAPTURE.COMPLETED"},
                           headers=PAYPAL_HEADERS)
    assert resp.status_code == 400
    assert ProcessedWebhookEvent.query.count() == 0


def test_paypal_missing_headers(paypal_app, client, ctx):
    resp = client.post("/webhooks/paypal", json={"id": "x", "event_type": "PAYMENT.CAPTURE.COMPLETED"})
    assert resp.status_code == 400
