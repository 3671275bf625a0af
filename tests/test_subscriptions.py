from datetime import datetime, timedelta

import pytest

from app import db
from models import Event, Invoice, Plan
from services.coupons import create_coupon
from services.dates import utcnow
from services.errors import Conflict, ValidationFailed
from services.subscriptions import (
    cancel_subscription,
    change_plan,
    create_subscription,
    pause_subscription,
    preview_plan_change,
    resume_subscription,
    start_trial,
    subscription_details,
)

APRIL = datetime(2025, 4, 1)
MID_APRIL = datetime(2025, 4, 16)  # half of a 30-day period left


def test_create_active_bills_first_period(customer, basic_plan):
    sub = create_subscription(customer, basic_plan, now=APRIL)
    db.session.commit()

    assert sub.status == "active"
    assert sub.current_period_start == APRIL
    assert sub.current_period_end == datetime(2025, 5, 1)
    inv = Invoice.query.filter_by(subscription_id=sub.id).one()
    assert inv.status == "open"
    assert inv.total == 1000
    assert Event.query.filter_by(event_type="SUBSCRIPTION_CREATED").count() == 1


def test_trial_defers_billing(customer, basic_plan):
    sub = create_subscription(customer, basic_plan, trial_days=14, now=APRIL)

    assert sub.status == "trialing"
    assert sub.trial_end == APRIL + timedelta(days=14)
    assert sub.current_period_end == sub.trial_end
    assert Invoice.query.count() == 0
    assert Event.query.filter_by(event_type="TRIAL_STARTED").count() == 1


def test_start_trial_needs_days(customer, basic_plan):
    with pytest.raises(ValidationFailed):
        start_trial(customer, basic_plan)
    basic_plan.trial_days = 7
    assert start_trial(customer, basic_plan).status == "trialing"


def test_one_live_subscription_per_customer(customer, basic_plan, pro_plan):
    create_subscription(customer, basic_plan)
    with pytest.raises(Conflict):
        create_subscription(customer, pro_plan)


def test_rejects_bad_input(customer, basic_plan):
    with pytest.raises(ValidationFailed):
        create_subscription(customer, basic_plan, quantity=0)
    basic_plan.active = False
    with pytest.raises(ValidationFailed):
        create_subscription(customer, basic_plan)


def test_coupon_is_validated_and_redeemed(org, customer, basic_plan):
    with pytest.raises(ValidationFailed) as exc:
        create_subscription(customer, basic_plan, coupon_code="missing")
    assert exc.value.message == "Coupon not found"

    coupon = create_coupon(org, "half", "percentage", 50)
    sub = create_subscription(customer, basic_plan, coupon_code="half")
    assert coupon.times_redeemed == 1
    inv = Invoice.query.filter_by(subscription_id=sub.id).one()
    assert inv.discount == 500
    assert inv.total == 500


def test_upgrade_invoices_prorated_difference(customer, basic_plan, pro_plan):
    sub = create_subscription(customer, basic_plan, now=APRIL)

    preview = preview_plan_change(sub, pro_plan, at=MID_APRIL)
    assert (preview["credit"], preview["charge"], preview["net"]) == (500, 1500, 1000)

    result = change_plan(sub, pro_plan, at=MID_APRIL)
    assert sub.plan_id == pro_plan.id
    assert result["invoice"].total == 1000
    assert result["invoice"].status == "open"


def test_downgrade_credits_customer(customer, basic_plan, pro_plan):
    sub = create_subscription(customer, pro_plan, now=APRIL)
    result = change_plan(sub, basic_plan, at=MID_APRIL)

    assert result["invoice"] is None
    assert result["proration"]["net"] == -1000
    assert customer.credit_balance == 1000


def test_trial_plan_change_skips_proration(customer, basic_plan, pro_plan):
    sub = create_subscription(customer, basic_plan, trial_days=14, now=APRIL)
    result = change_plan(sub, pro_plan, at=APRIL + timedelta(days=3))
    assert result["invoice"] is None
    assert customer.credit_balance == 0
    assert sub.plan_id == pro_plan.id


def test_currency_mismatch(org, customer, basic_plan):
    eur = Plan(organization_id=org.id, code="eur", name="Euro", price=900, currency="eur")
    db.session.add(eur)
    db.session.commit()
    sub = create_subscription(customer, basic_plan)
    with pytest.raises(ValidationFailed):
        preview_plan_change(sub, eur)


def test_explicit_zero_quantity_is_rejected(customer, basic_plan, pro_plan):
    sub = create_subscription(customer, basic_plan, quantity=2, now=APRIL)
    with pytest.raises(ValidationFailed):
        preview_plan_change(sub, pro_plan, quantity=0, at=MID_APRIL)
    with pytest.raises(ValidationFailed):
        change_plan(sub, pro_plan, quantity=0, at=MID_APRIL)
    assert sub.plan_id == basic_plan.id
    assert preview_plan_change(sub, pro_plan, at=MID_APRIL)["quantity"] == 2


def test_cancel_at_period_end_then_now(customer, basic_plan):
    sub = create_subscription(customer, basic_plan)

    cancel_subscription(sub, at_period_end=True)
    assert sub.status == "active"
    assert sub.cancel_at_period_end is True

    cancel_subscription(sub, at_period_end=False)
    assert sub.status == "canceled"
    assert sub.canceled_at is not None
    with pytest.raises(Conflict):
        cancel_subscription(sub)


def test_pause_and_resume(customer, basic_plan):
    sub = create_subscription(customer, basic_plan)
    now = utcnow()

    with pytest.raises(ValidationFailed):
        pause_subscription(sub, resume_at=now - timedelta(days=1), now=now)

    pause_subscription(sub, resume_at=now + timedelta(days=10), now=now)
    assert sub.status == "paused"
    with pytest.raises(Conflict):
        pause_subscription(sub)

    resume_subscription(sub)
    assert sub.status == "active"
    assert sub.resume_at is None
    with pytest.raises(Conflict):
        resume_subscription(sub)


def test_resume_after_period_end_starts_new_period(customer, basic_plan):
    sub = create_subscription(customer, basic_plan, now=APRIL)
    pause_subscription(sub, now=APRIL + timedelta(days=1))
    resume_subscription(sub, now=datetime(2025, 6, 10))
    assert sub.current_period_start == datetime(2025, 6, 10)
    assert sub.current_period_end == datetime(2025, 7, 10)


def test_details(customer, basic_plan):
    sub = create_subscription(customer, basic_plan)
    db.session.commit()
    out = subscription_details(sub)
    assert out["plan"]["code"] == "basic"
    assert out["usage"] == []
    assert len(out["recent_invoices"]) == 1
