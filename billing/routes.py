# billing/routes.py
"""Stripe-hosted Checkout and Customer Portal sessions for a customer."""
from __future__ import annotations

from flask import current_app, jsonify, redirect, request
from flask_login import login_required

from app import db
from models import Customer, Plan
from schemas import CheckoutRequest
from services.errors import ValidationFailed
from services.guards import get_owned, require_manager
from services.params import int_arg
from services.payments import create_checkout_session, create_portal_session

from . import bp


@bp.route("/checkout", methods=["POST"])
@login_required
@require_manager
def start_checkout():
    body = CheckoutRequest.model_validate(request.get_json(silent=True) or {})
    customer = get_owned(Customer, body.customer_id, "Customer")
    plan = get_owned(Plan, body.plan_id, "Plan")
    if not plan.active:
        raise ValidationFailed("Plan is archived.")

    session = create_checkout_session(customer, plan, base_url=request.url_root)
    # ensure_stripe_customer may have linked a new Stripe customer id
    db.session.commit()
    current_app.logger.info("[Stripe] checkout session %s customer=%s plan=%s",
                            session["id"], customer.id, plan.id)
    return jsonify(session)


@bp.route("/portal", methods=["GET"])
@login_required
@require_manager
def billing_portal():
    customer_id = int_arg("customer_id")
    if customer_id is None:
        raise ValidationFailed("customer_id is required.")
    customer = get_owned(Customer, customer_id, "Customer")
    session = create_portal_session(customer, base_url=request.url_root)
    if request.args.get("redirect") in ("1", "true"):
        return redirect(session["url"])
    return jsonify(session)
