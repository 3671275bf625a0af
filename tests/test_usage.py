import math
from datetime import timedelta

import pytest

from app import db
from models import Event, Notification, PricingTier, UsageRecord
from services.errors import Conflict, ValidationFailed
from services.invoices import create_invoice_from_subscription
from services.subscriptions import cancel_subscription, create_subscription
from services.usage_store import (
    aggregate_usage,
    price_usage,
    record_usage,
    record_usage_bulk,
    select_tier,
    usage_line_items,
    usage_summary,
)

TIERS = [
    PricingTier(metric="api_calls", up_to=500, unit_amount=2),
    PricingTier(metric="api_calls", up_to=None, unit_amount=1, flat_amount=100),
]


@pytest.fixture
def sub(customer, metered_plan):
    s = create_subscription(customer, metered_plan)
    db.session.commit()
    return s


def _events(kind):
    return Event.query.filter_by(event_type=kind).count()


def test_volume_tiers():
    assert select_tier(300, TIERS).up_to == 500
    assert select_tier(500, TIERS).up_to == 500
    assert select_tier(501, TIERS).up_to is None
    assert price_usage(300, TIERS) == 600
    assert price_usage(600, TIERS) == 700  # 600 * 1 + flat 100
    assert price_usage(0, TIERS) == 0
    assert price_usage(10, []) == 0


def test_idempotency_key_returns_existing_record(sub):
    first = record_usage(sub, "api_calls", 5, idempotency_key="req-1")
    again = record_usage(sub, "api_calls", 5, idempotency_key="req-1")
    assert again.id == first.id
    assert UsageRecord.query.count() == 1


@pytest.mark.parametrize("metric,quantity", [
    ("api_calls", -1),
    ("api_calls", math.nan),
    ("api_calls", math.inf),
    ("api_calls", "lots"),
    ("  ", 1),
])
def test_invalid_usage_rejected(sub, metric, quantity):
    with pytest.raises(ValidationFailed):
        record_usage(sub, metric, quantity)


def test_no_usage_on_canceled_subscription(sub):
    cancel_subscription(sub, at_period_end=False)
    with pytest.raises(Conflict):
        record_usage(sub, "api_calls", 1)


def test_limit_alerts_fire_once_per_crossing(sub):
    record_usage(sub, "api_calls", 700)
    assert _events("USAGE_WARNING") == 0

    record_usage(sub, "api_calls", 150)  # 850 >= 80% of 1000
    assert _events("USAGE_WARNING") == 1

    record_usage(sub, "api_calls", 100)
    assert _events("USAGE_WARNING") == 1
    assert _events("USAGE_LIMIT_EXCEEDED") == 0

    record_usage(sub, "api_calls", 100)  # 1050
    assert _events("USAGE_LIMIT_EXCEEDED") == 1
    assert Notification.query.filter_by(type="USAGE_LIMIT_EXCEEDED").count() == 1


def test_single_jump_fires_both_alerts(sub):
    record_usage(sub, "api_calls", 1200)
    assert _events("USAGE_WARNING") == 1
    assert _events("USAGE_LIMIT_EXCEEDED") == 1


def test_aggregations(sub):
    t0 = sub.current_period_start
    for minutes, qty in [(1, 4), (2, 10), (3, 6)]:
        record_usage(sub, "seats", qty, recorded_at=t0 + timedelta(minutes=minutes))
    end = sub.current_period_end

    assert aggregate_usage(sub.id, "seats", t0, end, "sum") == 20
    assert aggregate_usage(sub.id, "seats", t0, end, "max") == 10
    assert aggregate_usage(sub.id, "seats", t0, end, "min") == 4
    assert aggregate_usage(sub.id, "seats", t0, end, "last") == 6
    assert aggregate_usage(sub.id, "nothing", t0, end, "sum") == 0
    with pytest.raises(ValidationFailed):
        aggregate_usage(sub.id, "seats", t0, end, "median")


def test_bulk_is_all_or_nothing(sub):
    with pytest.raises(ValidationFailed) as exc:
        record_usage_bulk(sub, [
            {"metric": "api_calls", "quantity": 1},
            {"metric": "api_calls", "quantity": -3},
        ])
    assert exc.value.extra["details"][0]["index"] == 1
    assert UsageRecord.query.count() == 0

    rows = record_usage_bulk(sub, [
        {"metric": "api_calls", "quantity": 1},
        {"metric": "storage_gb", "quantity": 2.5},
    ])
    assert len(rows) == 2


def test_summary_and_overage_invoice(sub):
    record_usage(sub, "api_calls", 350)

    row = usage_summary(sub)[0]
    assert row["metric"] == "api_calls"
    assert row["total"] == 350
    assert row["included"] == 100
    assert row["billable"] == 250
    assert row["percent_of_limit"] == 35.0
    assert row["estimated_amount"] == 500

    items = usage_line_items(sub, sub.current_period_start, sub.current_period_end)
    assert [(i.metric, i.amount) for i in items] == [("api_calls", 500)]

    inv = create_invoice_from_subscription(sub, sub.current_period_start, sub.current_period_end)
    assert inv.subtotal == 2500
    assert inv.status == "open"
