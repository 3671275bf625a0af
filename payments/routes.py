# payments/routes.py
from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

from app import db
from models import Invoice
from schemas import ManualPaymentRequest, RefundRequest
from services.guards import current_org, get_owned, require_manager
from services.params import int_arg
from services.payments import get_payment, payment_history, record_manual_payment, refund_payment

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.route("", methods=["GET"])
@login_required
def index():
    return jsonify(payment_history(
        current_org(),
        customer_id=int_arg("customer_id"),
        status=request.args.get("status") or None,
        page=int_arg("page", 1),
        per_page=int_arg("per_page", 20, hi=100),
    ))


@payments_bp.route("/<int:payment_id>", methods=["GET"])
@login_required
def show(payment_id: int):
    return jsonify(get_payment(current_org(), payment_id).to_dict())


@payments_bp.route("/<int:payment_id>/refund", methods=["POST"])
@login_required
@require_manager
def refund(payment_id: int):
    p = get_payment(current_org(), payment_id)
    body = RefundRequest.model_validate(request.get_json(silent=True) or {})
    refund_payment(p, body.amount, reason=body.reason)
    db.session.commit()
    return jsonify(p.to_dict())


@payments_bp.route("/manual", methods=["POST"])
@login_required
@require_manager
def manual():
    body = ManualPaymentRequest.model_validate(request.get_json(silent=True) or {})
    inv = get_owned(Invoice, body.invoice_id, "Invoice")
    if inv.status != "open":
        return jsonify({"error": f"Cannot record a payment on a {inv.status} invoice."}), 409
    p = record_manual_payment(inv, body.amount, reference=body.reference)
    db.session.commit()
    return jsonify({"payment": p.to_dict(), "invoice": inv.to_dict(with_items=False)}), 201
