from datetime import timedelta

import pytest

from models import CreditAdjustment
from services.coupons import compute_discount, create_coupon, redeem_coupon, validate_coupon
from services.credits import add_credit, apply_credit_to_invoice, credit_history, deduct_credit
from services.dates import utcnow
from services.errors import Conflict, ValidationFailed
from services.invoices import create_invoice, finalize_invoice, register_payment


# ------------------------- credits -------------------------

def test_add_and_deduct_keep_a_ledger(customer):
    add_credit(customer, 1000, description="Goodwill")
    deduct_credit(customer, 300, reason="correction")

    assert customer.credit_balance == 700
    rows = credit_history(customer)
    assert [(r.kind, r.amount, r.balance_after) for r in rows] == [("DEBIT", -300, 700), ("CREDIT", 1000, 1000)]


def test_deduct_more_than_balance(customer):
    add_credit(customer, 1000)
    with pytest.raises(ValidationFailed) as exc:
        deduct_credit(customer, 2000)
    assert exc.value.extra == {"balance": 1000}
    assert exc.value.to_dict()["balance"] == 1000


@pytest.mark.parametrize("amount", [0, -5, "abc"])
def test_credit_amount_must_be_positive(customer, amount):
    with pytest.raises(ValidationFailed):
        add_credit(customer, amount)


def test_apply_is_capped_by_balance_and_due(customer):
    inv = create_invoice(customer, [{"description": "Seats", "quantity": 1, "unit_amount": 3000}])
    customer.credit_balance = 1000

    assert apply_credit_to_invoice(customer, inv, amount=200) == 200
    assert apply_credit_to_invoice(customer, inv) == 800
    assert apply_credit_to_invoice(customer, inv) == 0
    assert inv.credit_applied == 1000
    assert inv.amount_due == 2000
    assert CreditAdjustment.query.filter_by(kind="APPLIED").count() == 2


def test_apply_rejects_settled_invoice(customer):
    inv = create_invoice(customer, [{"description": "Seats", "quantity": 1, "unit_amount": 3000}])
    finalize_invoice(inv)
    register_payment(inv, inv.amount_due)
    customer.credit_balance = 1000
    with pytest.raises(Conflict):
        apply_credit_to_invoice(customer, inv)


# ------------------------- coupons -------------------------

def test_coupon_codes_are_unique_per_org(org):
    create_coupon(org, "launch", "fixed", 500)
    with pytest.raises(Conflict):
        create_coupon(org, "LAUNCH", "percentage", 10)


@pytest.mark.parametrize("kind,amount", [("percentage", 0), ("percentage", 150), ("fixed", 0), ("bogus", 5)])
def test_coupon_amount_validation(org, kind, amount):
    with pytest.raises(ValidationFailed):
        create_coupon(org, "X", kind, amount)


def test_validate_coupon_reasons(org, basic_plan, pro_plan):
    now = utcnow()
    create_coupon(org, "old", "fixed", 100, valid_until=now - timedelta(days=1))
    once = create_coupon(org, "once", "fixed", 100, max_redemptions=1)
    create_coupon(org, "proonly", "percentage", 20, plan_id=pro_plan.id)
    off = create_coupon(org, "off", "fixed", 100)
    off.active = False
    redeem_coupon(once)

    def reason(code, plan_id=None):
        return validate_coupon(org.id, code, plan_id=plan_id, now=now)["reason"]

    assert reason("nope") == "Coupon not found"
    assert reason("old") == "Coupon has expired"
    assert reason("once") == "Coupon has reached its maximum redemptions"
    assert reason("off") == "Coupon is inactive"
    assert reason("proonly", basic_plan.id) == "Coupon is not valid for this plan"

    ok = validate_coupon(org.id, "ProOnly", plan_id=pro_plan.id, now=now)
    assert ok["valid"] is True
    assert ok["coupon"].code == "PROONLY"


def test_discount_never_exceeds_subtotal(org):
    fixed = create_coupon(org, "big", "fixed", 5000)
    pct = create_coupon(org, "quarter", "percentage", 25)
    assert compute_discount(3000, fixed) == 3000
    assert compute_discount(3000, pct) == 750
    assert compute_discount(0, pct) == 0
    assert compute_discount(3000, None) == 0
