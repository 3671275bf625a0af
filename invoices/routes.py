# invoices/routes.py
from __future__ import annotations

from flask import Blueprint, Response, jsonify, request
from flask_login import login_required

from app import db
from models import Customer
from schemas import InvoiceCreate
from services.coupons import redeem_coupon, validate_coupon
from services.errors import ValidationFailed
from services.guards import current_org, get_owned, require_manager
from services.invoices import (
    create_invoice,
    export_invoice_csv,
    finalize_invoice,
    get_invoice,
    invoice_to_dict,
    list_invoices,
    mark_uncollectible,
    send_invoice,
    void_invoice,
)
from services.params import date_arg, int_arg
from services.payments import pay_invoice
from services.subscriptions import get_subscription

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


def _invoice(invoice_id: int):
    return get_invoice(current_org(), invoice_id)


@invoices_bp.route("", methods=["GET"])
@login_required
def index():
    return jsonify(list_invoices(
        current_org(),
        customer_id=int_arg("customer_id"),
        status=request.args.get("status") or None,
        start=date_arg("start"),
        end=date_arg("end"),
        page=int_arg("page", 1),
        per_page=int_arg("per_page", 20, hi=100),
    ))


@invoices_bp.route("", methods=["POST"])
@login_required
@require_manager
def create():
    org = current_org()
    body = InvoiceCreate.model_validate(request.get_json(silent=True) or {})
    customer = get_owned(Customer, body.customer_id, "Customer")
    sub = get_subscription(org, body.subscription_id) if body.subscription_id else None
    if sub is not None and sub.customer_id != customer.id:
        raise ValidationFailed("Subscription does not belong to this customer.")

    coupon = None
    if body.coupon_code:
        check = validate_coupon(org.id, body.coupon_code, plan_id=sub.plan_id if sub else None)
        if not check["valid"]:
            raise ValidationFailed(check["reason"])
        coupon = redeem_coupon(check["coupon"])

    inv = create_invoice(
        customer,
        [i.model_dump() for i in body.items],
        subscription=sub,
        currency=body.currency,
        due_days=body.due_days,
        notes=body.notes,
        coupon=coupon,
    )
    if body.finalize:
        finalize_invoice(inv)
    db.session.commit()
    return jsonify(invoice_to_dict(inv)), 201


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
@login_required
def show(invoice_id: int):
    return jsonify(invoice_to_dict(_invoice(invoice_id)))


# ------------------------- transitions -------------------------

@invoices_bp.route("/<int:invoice_id>/finalize", methods=["POST"])
@login_required
@require_manager
def finalize(invoice_id: int):
    inv = finalize_invoice(_invoice(invoice_id))
    db.session.commit()
    return jsonify(invoice_to_dict(inv))


@invoices_bp.route("/<int:invoice_id>/void", methods=["POST"])
@login_required
@require_manager
def void(invoice_id: int):
    inv = void_invoice(_invoice(invoice_id))
    db.session.commit()
    return jsonify(invoice_to_dict(inv))


@invoices_bp.route("/<int:invoice_id>/uncollectible", methods=["POST"])
@login_required
@require_manager
def uncollectible(invoice_id: int):
    inv = mark_uncollectible(_invoice(invoice_id))
    db.session.commit()
    return jsonify(invoice_to_dict(inv))


@invoices_bp.route("/<int:invoice_id>/send", methods=["POST"])
@login_required
@require_manager
def send(invoice_id: int):
    inv = send_invoice(_invoice(invoice_id))
    db.session.commit()
    return jsonify({"ok": True, "invoice": inv.to_dict(with_items=False)})


@invoices_bp.route("/<int:invoice_id>/pay", methods=["POST"])
@login_required
@require_manager
def pay(invoice_id: int):
    inv = _invoice(invoice_id)
    payment = pay_invoice(inv)
    # a declined charge is still recorded (failed payment + dunning)
    db.session.commit()
    status = {"succeeded": 200, "pending": 202}.get(payment.status, 402)
    return jsonify({"payment": payment.to_dict(), "invoice": inv.to_dict(with_items=False)}), status


@invoices_bp.route("/<int:invoice_id>/download", methods=["GET"])
@login_required
def download(invoice_id: int):
    inv = _invoice(invoice_id)
    return Response(
        export_invoice_csv(inv),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{inv.number}.csv"'},
    )
