# customers/routes.py
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from app import db
from models import Customer, Invoice
from schemas import (
    ApplyCreditRequest,
    CreditRequest,
    CustomerCreate,
    CustomerUpdate,
    MetadataUpdate,
    PaymentMethodAttach,
    TaxExemptionRequest,
    TaxIdValidateRequest,
)
from services.credits import add_credit, apply_credit_to_invoice, credit_history, deduct_credit
from services.entitlements import describe_plan, get_entitlements
from services.errors import ValidationFailed
from services.guards import current_org, get_owned, require_manager
from services.params import int_arg, limit_arg
from services.payments import (
    attach_payment_method,
    detach_payment_method,
    list_payment_methods,
    set_default_payment_method,
)
from services.subscriptions import live_subscription_for
from services.tax import set_tax_exemption
from services.tax_validation import apply_validation, validate_tax_id

customers_bp = Blueprint("customers", __name__, url_prefix="/api/customers")


def _customer(customer_id: int) -> Customer:
    return get_owned(Customer, customer_id, "Customer")


# ------------------------- CRUD -------------------------

@customers_bp.route("", methods=["GET"])
@login_required
def list_customers():
    org = current_org()
    q = Customer.query.filter_by(organization_id=org.id)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(db.or_(Customer.name.ilike(like), Customer.email.ilike(like)))
    pg = q.order_by(Customer.id.desc()).paginate(
        page=int_arg("page", 1), per_page=int_arg("per_page", 20, hi=100), error_out=False
    )
    return jsonify({
        "items": [c.to_dict() for c in pg.items],
        "page": pg.page,
        "per_page": pg.per_page,
        "total": pg.total,
        "pages": pg.pages,
    })


@customers_bp.route("", methods=["POST"])
@login_required
@require_manager
def create_customer():
    org = current_org()
    body = CustomerCreate.model_validate(request.get_json(silent=True) or {})
    c = Customer(
        organization_id=org.id,
        name=body.name,
        email=(body.email or "").lower() or None,
        country=body.country,
        state=body.state or None,
        tax_id=body.tax_id,
        is_business=body.is_business,
        currency=body.currency,
        default_payment_method=body.default_payment_method,
        meta=body.metadata,
    )
    db.session.add(c)
    db.session.commit()
    current_app.logger.info("[Customers] created id=%s org=%s", c.id, org.id)
    return jsonify(c.to_dict()), 201


@customers_bp.route("/<int:customer_id>", methods=["GET"])
@login_required
def get_customer(customer_id: int):
    c = _customer(customer_id)
    out = c.to_dict()
    sub = live_subscription_for(c)
    out["subscription"] = sub.to_dict() if sub else None
    out["plan_summary"] = describe_plan(sub)
    return jsonify(out)


@customers_bp.route("/<int:customer_id>", methods=["PATCH"])
@login_required
@require_manager
def update_customer(customer_id: int):
    c = _customer(customer_id)
    body = CustomerUpdate.model_validate(request.get_json(silent=True) or {})
    changes = body.model_dump(exclude_unset=True)
    if "tax_id" in changes and changes["tax_id"] != c.tax_id:
        # a new id has not been checked yet
        c.tax_id_validated = False
    if "email" in changes and changes["email"]:
        changes["email"] = changes["email"].lower()
    for field, value in changes.items():
        setattr(c, field, value)
    db.session.commit()
    return jsonify(c.to_dict())


@customers_bp.route("/<int:customer_id>/metadata", methods=["PATCH"])
@login_required
@require_manager
def update_metadata(customer_id: int):
    c = _customer(customer_id)
    body = MetadataUpdate.model_validate(request.get_json(silent=True) or {})
    c.meta = dict(body.metadata) if body.replace else {**(c.meta or {}), **body.metadata}
    db.session.commit()
    return jsonify({"id": c.id, "metadata": c.meta})


# ------------------------- credits -------------------------

@customers_bp.route("/<int:customer_id>/credits", methods=["GET"])
@login_required
def get_credits(customer_id: int):
    c = _customer(customer_id)
    rows = credit_history(c, limit=limit_arg())
    return jsonify({"balance": int(c.credit_balance or 0), "history": [r.to_dict() for r in rows]})


@customers_bp.route("/<int:customer_id>/credits", methods=["POST"])
@login_required
@require_manager
def adjust_credits(customer_id: int):
    c = _customer(customer_id)
    body = CreditRequest.model_validate(request.get_json(silent=True) or {})
    fn = add_credit if body.action == "add" else deduct_credit
    row = fn(c, body.amount, description=body.description, reason=body.reason, actor_id=current_user.id)
    db.session.commit()
    return jsonify({"balance": int(c.credit_balance or 0), "adjustment": row.to_dict()}), 201


@customers_bp.route("/<int:customer_id>/credit-balance/apply", methods=["POST"])
@login_required
@require_manager
def apply_credits(customer_id: int):
    c = _customer(customer_id)
    body = ApplyCreditRequest.model_validate(request.get_json(silent=True) or {})
    inv = get_owned(Invoice, body.invoice_id, "Invoice")
    applied = apply_credit_to_invoice(c, inv, body.amount, actor_id=current_user.id)
    db.session.commit()
    return jsonify({
        "applied": applied,
        "balance": int(c.credit_balance or 0),
        "invoice": inv.to_dict(with_items=False),
    })


# ------------------------- tax -------------------------

@customers_bp.route("/<int:customer_id>/tax-id/validate", methods=["POST"])
@login_required
@require_manager
def validate_customer_tax_id(customer_id: int):
    c = _customer(customer_id)
    body = TaxIdValidateRequest.model_validate(request.get_json(silent=True) or {})
    tax_id = body.tax_id or c.tax_id
    country = body.country or c.country
    if not tax_id or not country:
        raise ValidationFailed("tax_id and country are required.")

    result = validate_tax_id(tax_id, country, body.tax_type)
    # an unreachable registry says nothing about the id; keep the current flag
    if result.error is None:
        apply_validation(c, result)
    db.session.commit()
    return jsonify({"customer_id": c.id, "tax_id_validated": bool(c.tax_id_validated), **result.to_dict()})


@customers_bp.route("/<int:customer_id>/tax-exemption", methods=["PUT"])
@login_required
@require_manager
def put_tax_exemption(customer_id: int):
    c = _customer(customer_id)
    body = TaxExemptionRequest.model_validate(request.get_json(silent=True) or {})
    row = set_tax_exemption(
        c,
        body.exempt,
        tax_type=body.tax_type,
        certificate_url=body.certificate_url,
        valid_until=body.valid_until,
    )
    db.session.commit()
    return jsonify({"customer_id": c.id, "exempt": body.exempt, "exemption": row.to_dict() if row else None})


# ------------------------- payment methods -------------------------

@customers_bp.route("/<int:customer_id>/payment-methods", methods=["GET"])
@login_required
def get_payment_methods(customer_id: int):
    c = _customer(customer_id)
    return jsonify(list_payment_methods(
        c, limit=limit_arg(default=10, max_cap=100), starting_after=request.args.get("starting_after") or None,
    ))


@customers_bp.route("/<int:customer_id>/payment-methods", methods=["POST"])
@login_required
@require_manager
def add_payment_method(customer_id: int):
    c = _customer(customer_id)
    body = PaymentMethodAttach.model_validate(request.get_json(silent=True) or {})
    method = attach_payment_method(c, body.payment_method_id, make_default=body.set_default)
    db.session.commit()
    return jsonify(method), 201


@customers_bp.route("/<int:customer_id>/payment-methods/<payment_method_id>/default", methods=["PUT"])
@login_required
@require_manager
def make_default_payment_method(customer_id: int, payment_method_id: str):
    method = set_default_payment_method(_customer(customer_id), payment_method_id)
    db.session.commit()
    return jsonify(method)


@customers_bp.route("/<int:customer_id>/payment-methods/<payment_method_id>", methods=["DELETE"])
@login_required
@require_manager
def remove_payment_method(customer_id: int, payment_method_id: str):
    result = detach_payment_method(_customer(customer_id), payment_method_id)
    db.session.commit()
    return jsonify(result)


# ------------------------- entitlements -------------------------

@customers_bp.route("/<int:customer_id>/entitlements", methods=["GET"])
@login_required
def get_customer_entitlements(customer_id: int):
    from services.usage_store import usage_summary

    c = _customer(customer_id)
    sub = live_subscription_for(c)
    usage = {row["metric"]: row["total"] for row in usage_summary(sub)} if sub else {}
    return jsonify({"customer_id": c.id, **get_entitlements(sub, usage)})
