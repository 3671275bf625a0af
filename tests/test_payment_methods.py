from unittest import mock

import pytest
import stripe

from app import db
from models import Notification
from services.errors import NotFound, ProviderError
from services.payments import (
    attach_payment_method,
    detach_payment_method,
    list_payment_methods,
    set_default_payment_method,
)

VISA = {
    "id": "pm_1",
    "type": "card",
    "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030},
    "created": 1700000000,
}


@pytest.fixture
def fake_stripe():
    fake = mock.MagicMock()
    fake.StripeError = stripe.StripeError
    fake.Customer.create.return_value = {"id": "cus_1"}
    with mock.patch("services.payments.ensure_stripe", return_value=fake):
        yield fake


@pytest.fixture
def linked_customer(customer):
    customer.stripe_customer_id = "cus_1"
    customer.default_payment_method = "pm_1"
    db.session.commit()
    return customer


def test_listing_without_stripe_account(fake_stripe, customer):
    assert list_payment_methods(customer) == {"data": [], "has_more": False, "default_payment_method": None}
    fake_stripe.PaymentMethod.list.assert_not_called()


def test_listing_marks_the_default(fake_stripe, linked_customer):
    fake_stripe.PaymentMethod.list.return_value = {"data": [VISA, {"id": "pm_2", "type": "card"}], "has_more": True}

    out = list_payment_methods(linked_customer, limit=2)

    assert out["has_more"] is True
    first, second = out["data"]
    assert (first["brand"], first["last4"], first["is_default"]) == ("visa", "4242", True)
    assert first["created_at"] == "2023-11-14T22:13:20"
    assert second["is_default"] is False
    assert fake_stripe.PaymentMethod.list.call_args.kwargs == {"customer": "cus_1", "type": "card", "limit": 2}


def test_first_card_becomes_default(fake_stripe, customer):
    fake_stripe.PaymentMethod.attach.return_value = VISA

    method = attach_payment_method(customer, "pm_1")

    assert method["is_default"] is True
    assert customer.stripe_customer_id == "cus_1"
    assert customer.default_payment_method == "pm_1"
    fake_stripe.PaymentMethod.attach.assert_called_once_with("pm_1", customer="cus_1")
    fake_stripe.Customer.modify.assert_called_once_with(
        "cus_1", invoice_settings={"default_payment_method": "pm_1"}
    )

    # a second card does not take over unless asked
    fake_stripe.PaymentMethod.attach.return_value = {"id": "pm_2", "type": "card"}
    assert attach_payment_method(customer, "pm_2")["is_default"] is False
    assert customer.default_payment_method == "pm_1"
    assert attach_payment_method(customer, "pm_2", make_default=True)["is_default"] is True
    assert customer.default_payment_method == "pm_2"


def test_declined_attach_is_a_provider_error(fake_stripe, customer):
    fake_stripe.PaymentMethod.attach.side_effect = stripe.CardError(
        "Your card was declined.", param=None, code="card_declined"
    )
    with pytest.raises(ProviderError):
        attach_payment_method(customer, "pm_bad")
    assert customer.default_payment_method is None


def test_set_default_checks_ownership(fake_stripe, linked_customer):
    fake_stripe.PaymentMethod.retrieve.return_value = {"id": "pm_2", "customer": "cus_1"}
    assert set_default_payment_method(linked_customer, "pm_2")["is_default"] is True
    assert linked_customer.default_payment_method == "pm_2"

    fake_stripe.Customer.modify.reset_mock()
    fake_stripe.PaymentMethod.retrieve.return_value = {"id": "pm_9", "customer": "cus_other"}
    with pytest.raises(NotFound):
        set_default_payment_method(linked_customer, "pm_9")
    fake_stripe.Customer.modify.assert_not_called()


def test_detaching_the_default_promotes_the_next_card(fake_stripe, linked_customer):
    fake_stripe.PaymentMethod.retrieve.return_value = {"id": "pm_1", "customer": "cus_1"}
    fake_stripe.PaymentMethod.list.return_value = {"data": [{"id": "pm_2", "type": "card"}], "has_more": False}

    result = detach_payment_method(linked_customer, "pm_1")

    assert result == {"id": "pm_1", "detached": True, "default_payment_method": "pm_2"}
    fake_stripe.PaymentMethod.detach.assert_called_once_with("pm_1")
    assert linked_customer.default_payment_method == "pm_2"
    assert Notification.query.filter_by(type="PAYMENT_METHOD_REMOVED").count() == 1


def test_detaching_the_last_card_clears_the_default(fake_stripe, linked_customer):
    fake_stripe.PaymentMethod.retrieve.return_value = {"id": "pm_1", "customer": "cus_1"}
    fake_stripe.PaymentMethod.list.return_value = {"data": [], "has_more": False}

    detach_payment_method(linked_customer, "pm_1")

    assert linked_customer.default_payment_method is None
    fake_stripe.Customer.modify.assert_called_once_with(
        "cus_1", invoice_settings={"default_payment_method": ""}
    )


def test_payment_method_routes(fake_stripe, owner_client):
    cust = owner_client.post("/api/customers", json={"name": "Globex"}).get_json()
    base = f"/api/customers/{cust['id']}/payment-methods"
    fake_stripe.PaymentMethod.attach.return_value = VISA

    resp = owner_client.post(base, json={"payment_method_id": "pm_1"})
    assert resp.status_code == 201
    assert resp.get_json()["is_default"] is True
    assert owner_client.get(f"/api/customers/{cust['id']}").get_json()["has_payment_method"] is True

    fake_stripe.PaymentMethod.list.return_value = {"data": [VISA], "has_more": False}
    listing = owner_client.get(base).get_json()
    assert [m["id"] for m in listing["data"]] == ["pm_1"]
    assert listing["default_payment_method"] == "pm_1"

    fake_stripe.PaymentMethod.retrieve.return_value = {"id": "pm_7", "customer": "cus_other"}
    assert owner_client.put(f"{base}/pm_7/default").status_code == 404
    assert owner_client.delete(f"{base}/pm_7").status_code == 404
    assert owner_client.post(base, json={}).status_code == 400
