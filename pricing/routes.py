# pricing/routes.py
from __future__ import annotations

from typing import List

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

from app import db
from models import Plan, PlanFeature, PricingTier, Subscription, LIVE_SUBSCRIPTION_STATUSES
from schemas import CouponCreate, CouponValidateRequest, PlanCreate, PlanFeatureIn, PlanUpdate, PricingTierIn
from services.coupons import create_coupon, list_coupons, validate_coupon
from services.errors import Conflict, ValidationFailed
from services.guards import current_org, get_owned, require_manager
from services.params import bool_arg

pricing_bp = Blueprint("pricing", __name__, url_prefix="/api")


def _set_features(plan: Plan, features: List[PlanFeatureIn]) -> None:
    metrics = [f.metric for f in features]
    if len(metrics) != len(set(metrics)):
        raise ValidationFailed("Each metric may appear only once in features.")
    plan.features = [PlanFeature(**f.model_dump()) for f in features]


def _set_tiers(plan: Plan, tiers: List[PricingTierIn]) -> None:
    by_metric = {}
    for t in tiers:
        by_metric.setdefault(t.metric, []).append(t)
    for metric, rows in by_metric.items():
        if sum(1 for r in rows if r.up_to is None) > 1:
            raise ValidationFailed(f"Only one unbounded tier allowed for {metric}.")
        bounds = [r.up_to for r in rows if r.up_to is not None]
        if len(bounds) != len(set(bounds)):
            raise ValidationFailed(f"Duplicate tier bounds for {metric}.")
    plan.tiers = [PricingTier(**t.model_dump()) for t in tiers]


# ------------------------- plans -------------------------

@pricing_bp.route("/plans", methods=["GET"])
@login_required
def list_plans():
    org = current_org()
    q = Plan.query.filter_by(organization_id=org.id)
    active = bool_arg("active")
    if active is not None:
        q = q.filter_by(active=active)
    return jsonify({"items": [p.to_dict() for p in q.order_by(Plan.price.asc(), Plan.id.asc()).all()]})


@pricing_bp.route("/plans", methods=["POST"])
@login_required
@require_manager
def create_plan():
    org = current_org()
    body = PlanCreate.model_validate(request.get_json(silent=True) or {})
    if Plan.query.filter_by(organization_id=org.id, code=body.code).first():
        raise Conflict(f"Plan code {body.code} already exists.")

    plan = Plan(
        organization_id=org.id,
        code=body.code,
        name=body.name,
        description=body.description,
        price=body.price,
        currency=body.currency,
        interval=body.interval,
        trial_days=body.trial_days,
        stripe_price_id=body.stripe_price_id,
        active=True,
    )
    _set_features(plan, body.features)
    _set_tiers(plan, body.tiers)
    db.session.add(plan)
    db.session.commit()
    current_app.logger.info("[Pricing] plan created id=%s code=%s", plan.id, plan.code)
    return jsonify(plan.to_dict()), 201


@pricing_bp.route("/plans/<int:plan_id>", methods=["GET"])
@login_required
def get_plan(plan_id: int):
    return jsonify(get_owned(Plan, plan_id, "Plan").to_dict())


@pricing_bp.route("/plans/<int:plan_id>", methods=["PATCH"])
@login_required
@require_manager
def update_plan(plan_id: int):
    plan = get_owned(Plan, plan_id, "Plan")
    body = PlanUpdate.model_validate(request.get_json(silent=True) or {})
    changes = body.model_dump(exclude_unset=True, exclude={"features", "tiers"})
    for field, value in changes.items():
        setattr(plan, field, value)
    if body.features is not None:
        _set_features(plan, body.features)
    if body.tiers is not None:
        _set_tiers(plan, body.tiers)
    db.session.commit()
    return jsonify(plan.to_dict())


@pricing_bp.route("/plans/<int:plan_id>", methods=["DELETE"])
@login_required
@require_manager
def delete_plan(plan_id: int):
    """Archive: plans with live subscribers stay in the table but stop being sold."""
    plan = get_owned(Plan, plan_id, "Plan")
    live = Subscription.query.filter(
        Subscription.plan_id == plan.id,
        Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
    ).count()
    plan.active = False
    db.session.commit()
    return jsonify({"id": plan.id, "active": False, "live_subscriptions": live})


# ------------------------- coupons -------------------------

@pricing_bp.route("/coupons", methods=["GET"])
@login_required
def get_coupons():
    return jsonify({"items": [c.to_dict() for c in list_coupons(current_org())]})


@pricing_bp.route("/coupons", methods=["POST"])
@login_required
@require_manager
def post_coupon():
    org = current_org()
    body = CouponCreate.model_validate(request.get_json(silent=True) or {})
    if body.plan_id is not None:
        get_owned(Plan, body.plan_id, "Plan")
    c = create_coupon(
        org,
        body.code,
        body.discount_type,
        body.amount,
        max_redemptions=body.max_redemptions,
        valid_until=body.valid_until,
        plan_id=body.plan_id,
    )
    db.session.commit()
    return jsonify(c.to_dict()), 201


@pricing_bp.route("/coupons/validate", methods=["PUT"])
@login_required
def check_coupon():
    body = CouponValidateRequest.model_validate(request.get_json(silent=True) or {})
    res = validate_coupon(current_org().id, body.code, plan_id=body.plan_id)
    return jsonify({
        "valid": res["valid"],
        "reason": res["reason"],
        "coupon": res["coupon"].to_dict() if res["coupon"] else None,
    })
