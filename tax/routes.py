# tax/routes.py
"""
Tax endpoints.

Tax rates are shared by every organization (jurisdiction tables), so writes
are limited to platform admins; reads and calculations are open to any
signed-in user.
"""
from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from app import db
from models import Customer
from schemas import TaxCalculateRequest, TaxRateCreate, TaxRateUpdate
from services.errors import ValidationFailed
from services.guards import current_org, get_owned, require_admin
from services.params import bool_arg, date_range
from services.tax import (
    calculate_tax,
    calculate_tax_for_customer,
    create_or_update_tax_rate,
    deactivate_tax_rate,
    get_tax_rate_by_id,
    list_tax_rates,
    tax_report,
    update_tax_rate,
)
from services.tax_cache import get_tax_cache

tax_bp = Blueprint("tax", __name__, url_prefix="/api")


# ------------------------- rates -------------------------

@tax_bp.route("/tax-rates", methods=["GET"])
@login_required
def get_rates():
    rows = list_tax_rates(active=bool_arg("active"), country=request.args.get("country") or None)
    return jsonify({"items": [r.to_dict() for r in rows]})


@tax_bp.route("/tax-rates", methods=["POST"])
@login_required
@require_admin
def post_rate():
    body = TaxRateCreate.model_validate(request.get_json(silent=True) or {})
    rate = create_or_update_tax_rate(
        name=body.name,
        country=body.country,
        state=body.state,
        percentage=body.percentage,
        tax_type=body.tax_type,
        description=body.description,
        active=body.active,
        actor_id=current_user.id,
    )
    db.session.commit()
    return jsonify(rate.to_dict()), 201


@tax_bp.route("/tax-rates/<int:rate_id>", methods=["PATCH"])
@login_required
@require_admin
def patch_rate(rate_id: int):
    rate = get_tax_rate_by_id(rate_id)
    body = TaxRateUpdate.model_validate(request.get_json(silent=True) or {})
    rate = update_tax_rate(rate, actor_id=current_user.id, **body.model_dump(exclude_unset=True))
    db.session.commit()
    return jsonify(rate.to_dict())


@tax_bp.route("/tax-rates/<int:rate_id>", methods=["DELETE"])
@login_required
@require_admin
def delete_rate(rate_id: int):
    rate = deactivate_tax_rate(get_tax_rate_by_id(rate_id), actor_id=current_user.id)
    db.session.commit()
    return jsonify(rate.to_dict())


# ------------------------- calculation / reports -------------------------

@tax_bp.route("/tax/calculate", methods=["POST"])
@login_required
def calculate():
    body = TaxCalculateRequest.model_validate(request.get_json(silent=True) or {})
    if body.customer_id is not None:
        customer = get_owned(Customer, body.customer_id, "Customer")
        result = calculate_tax_for_customer(body.amount, body.currency, customer)
    else:
        if not body.country:
            raise ValidationFailed("country or customer_id is required.")
        result = calculate_tax(
            body.amount,
            body.currency,
            body.country,
            body.state,
            tax_exempt=body.tax_exempt,
            organization_id=current_org().id,
        )
    # a missing rate records a warning event
    db.session.commit()
    return jsonify(result.to_dict())


@tax_bp.route("/tax/reports", methods=["GET"])
@login_required
def reports():
    start, end = date_range(default_days=90)
    return jsonify(tax_report(current_org(), start, end))


@tax_bp.route("/tax/cache/clear", methods=["POST"])
@login_required
@require_admin
def clear_cache():
    cache = get_tax_cache()
    cleared = cache.clear()
    return jsonify({"cleared": cleared, "stats": cache.stats()})
