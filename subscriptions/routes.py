# subscriptions/routes.py
from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app import db
from models import Customer, Plan
from schemas import (
    CancelRequest,
    ChangePlanRequest,
    PauseRequest,
    ProrationPreviewRequest,
    SubscriptionCreate,
    TrialRequest,
    UsageBulkRequest,
    UsageRecordIn,
)
from services.guards import current_org, get_owned, require_manager
from services.params import date_arg, int_arg, limit_arg
from services.subscriptions import (
    cancel_subscription,
    change_plan,
    create_subscription,
    get_subscription,
    list_subscriptions,
    pause_subscription,
    preview_plan_change,
    resume_subscription,
    start_trial,
    subscription_details,
)
from services.usage_store import list_usage, record_usage, record_usage_bulk, usage_summary

subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


def _sub(subscription_id: int):
    return get_subscription(current_org(), subscription_id)


# ------------------------- list / create -------------------------

@subscriptions_bp.route("", methods=["GET"])
@login_required
def index():
    rows = list_subscriptions(
        current_org(),
        customer_id=int_arg("customer_id"),
        status=request.args.get("status") or None,
    )
    return jsonify({"items": [s.to_dict() for s in rows]})


@subscriptions_bp.route("", methods=["POST"])
@login_required
@require_manager
def create():
    body = SubscriptionCreate.model_validate(request.get_json(silent=True) or {})
    customer = get_owned(Customer, body.customer_id, "Customer")
    plan = get_owned(Plan, body.plan_id, "Plan")
    sub = create_subscription(
        customer,
        plan,
        quantity=body.quantity,
        trial_days=body.trial_days,
        coupon_code=body.coupon_code,
        metadata=body.metadata,
    )
    db.session.commit()
    return jsonify(subscription_details(sub)), 201


@subscriptions_bp.route("/trial", methods=["POST"])
@login_required
@require_manager
def trial():
    body = TrialRequest.model_validate(request.get_json(silent=True) or {})
    customer = get_owned(Customer, body.customer_id, "Customer")
    plan = get_owned(Plan, body.plan_id, "Plan")
    sub = start_trial(customer, plan, trial_days=body.trial_days)
    db.session.commit()
    return jsonify(sub.to_dict()), 201


@subscriptions_bp.route("/<int:subscription_id>", methods=["GET"])
@login_required
def show(subscription_id: int):
    return jsonify(subscription_details(_sub(subscription_id)))


# ------------------------- plan changes -------------------------

@subscriptions_bp.route("/proration-preview", methods=["POST"])
@login_required
def proration_preview():
    body = ProrationPreviewRequest.model_validate(request.get_json(silent=True) or {})
    sub = _sub(body.subscription_id)
    plan = get_owned(Plan, body.new_plan_id, "Plan")
    return jsonify(preview_plan_change(sub, plan, body.quantity))


@subscriptions_bp.route("/<int:subscription_id>/change-plan", methods=["POST"])
@login_required
@require_manager
def change(subscription_id: int):
    sub = _sub(subscription_id)
    body = ChangePlanRequest.model_validate(request.get_json(silent=True) or {})
    plan = get_owned(Plan, body.plan_id, "Plan")
    result = change_plan(sub, plan, body.quantity, actor_id=current_user.id)
    db.session.commit()
    inv = result["invoice"]
    return jsonify({
        "subscription": result["subscription"].to_dict(),
        "proration": result["proration"],
        "invoice": inv.to_dict() if inv else None,
    })


# ------------------------- lifecycle -------------------------

@subscriptions_bp.route("/<int:subscription_id>/cancel", methods=["POST"])
@login_required
@require_manager
def cancel(subscription_id: int):
    sub = _sub(subscription_id)
    body = CancelRequest.model_validate(request.get_json(silent=True) or {})
    cancel_subscription(sub, at_period_end=body.at_period_end, reason=body.reason)
    db.session.commit()
    return jsonify(sub.to_dict())


@subscriptions_bp.route("/<int:subscription_id>/pause", methods=["POST"])
@login_required
@require_manager
def pause(subscription_id: int):
    sub = _sub(subscription_id)
    body = PauseRequest.model_validate(request.get_json(silent=True) or {})
    pause_subscription(sub, resume_at=body.resume_at)
    db.session.commit()
    return jsonify(sub.to_dict())


@subscriptions_bp.route("/<int:subscription_id>/resume", methods=["POST"])
@login_required
@require_manager
def resume(subscription_id: int):
    sub = _sub(subscription_id)
    resume_subscription(sub)
    db.session.commit()
    return jsonify(sub.to_dict())


@subscriptions_bp.route("/<int:subscription_id>/retry-billing", methods=["POST"])
@login_required
@require_manager
def retry_billing(subscription_id: int):
    from services.billing_jobs import retry_failed_billing

    # commits (or records the failure) itself
    return jsonify(retry_failed_billing(_sub(subscription_id)))


# ------------------------- usage -------------------------

@subscriptions_bp.route("/<int:subscription_id>/usage", methods=["GET"])
@login_required
def get_usage(subscription_id: int):
    sub = _sub(subscription_id)
    start, end = date_arg("start"), date_arg("end")
    rows = list_usage(sub, metric=request.args.get("metric") or None, start=start, end=end, limit=limit_arg())
    return jsonify({
        "subscription_id": sub.id,
        "summary": usage_summary(sub, start, end),
        "records": [r.to_dict() for r in rows],
    })


@subscriptions_bp.route("/<int:subscription_id>/usage", methods=["POST"])
@login_required
def post_usage(subscription_id: int):
    sub = _sub(subscription_id)
    body = UsageRecordIn.model_validate(request.get_json(silent=True) or {})
    rec = record_usage(
        sub,
        body.metric,
        body.quantity,
        recorded_at=body.recorded_at,
        idempotency_key=body.idempotency_key,
        metadata=body.metadata,
    )
    db.session.commit()
    return jsonify(rec.to_dict()), 201


@subscriptions_bp.route("/<int:subscription_id>/usage/bulk", methods=["POST"])
@login_required
def post_usage_bulk(subscription_id: int):
    sub = _sub(subscription_id)
    body = UsageBulkRequest.model_validate(request.get_json(silent=True) or {})
    rows = record_usage_bulk(sub, [r.model_dump() for r in body.records])
    db.session.commit()
    return jsonify({"count": len(rows), "records": [r.to_dict() for r in rows]}), 201
