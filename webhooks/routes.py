"""
Inbound payment-provider webhooks.

Endpoints (no login; each provider proves itself):
  POST /webhooks/stripe   Stripe-Signature header, STRIPE_WEBHOOK_SECRET
  POST /webhooks/paypal   PayPal verify-webhook-signature API
  POST /webhooks/bitpay   invoice re-fetched from BitPay
  POST /webhooks/wyre     X-Wyre-Signature HMAC, WYRE_WEBHOOK_SECRET

Every event is recorded in processed_webhook_events in the same commit as
its side effects, so a retried delivery is answered without replaying it.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Dict

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from app import db
from services.settings import get_cfg
from services.store import already_processed, mark_processed
from webhooks import providers
from webhooks.stripe import HANDLERS as STRIPE_HANDLERS

bp = Blueprint("provider_webhooks", __name__, url_prefix="/webhooks")


def _process(provider: str, event_id: str, event_type: str,
             handler: Callable[[Dict[str, Any]], Dict[str, Any]], obj: Dict[str, Any]):
    if already_processed(provider, event_id):
        current_app.logger.info("[Webhooks] duplicate %s event %s", provider, event_id)
        return jsonify({"received": True, "duplicate": True}), 200

    try:
        result = handler(obj)
        mark_processed(provider, event_id, event_type)
        db.session.commit()
    except IntegrityError:
        # a concurrent delivery of the same event won the insert
        db.session.rollback()
        return jsonify({"received": True, "duplicate": True}), 200
    except Exception as e:
        db.session.rollback()
        current_app.logger.exception("[Webhooks] %s %s (%s) failed: %s", provider, event_type, event_id, e)
        # non-2xx so the provider retries
        return jsonify({"error": "Webhook processing failed"}), 500

    current_app.logger.info("[Webhooks] %s %s processed (%s)", provider, event_type, event_id)
    return jsonify({"received": True, **(result or {})}), 200


# ------------------ Stripe ------------------

@bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    import stripe

    secret = get_cfg("STRIPE_WEBHOOK_SECRET")
    if not secret:
        current_app.logger.error("[Stripe] STRIPE_WEBHOOK_SECRET not configured")
        return jsonify({"error": "Webhook secret not configured"}), 500

    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature", "")
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret)
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, ValueError) as e:
        current_app.logger.warning("[Stripe] webhook signature verification failed: %s", e)
        return jsonify({"error": "Invalid signature"}), 400

    etype = event.get("type", "")
    handler = STRIPE_HANDLERS.get(etype)
    if handler is None:
        return jsonify({"received": True, "ignored": etype}), 200

    obj = (event.get("data") or {}).get("object") or {}
    return _process("stripe", event.get("id") or "", etype, handler, obj)


# ------------------ PayPal ------------------

PAYPAL_EVENTS = {
    "PAYMENT.CAPTURE.COMPLETED",
    "PAYMENT.CAPTURE.DENIED",
    "PAYMENT.CAPTURE.DECLINED",
    "PAYMENT.CAPTURE.REFUNDED",
}


@bp.route("/paypal", methods=["POST"])
def paypal_webhook():
    if not get_cfg("PAYPAL_WEBHOOK_ID"):
        current_app.logger.error("[PayPal] PAYPAL_WEBHOOK_ID not configured")
        return jsonify({"error": "Webhook not configured"}), 500

    event = providers.verify_paypal(request.get_data(), request.headers)
    etype = event.get("event_type", "")
    if etype not in PAYPAL_EVENTS:
        return jsonify({"received": True, "ignored": etype}), 200
    return _process("paypal", event.get("id") or "", etype, providers.handle_paypal, event)


# ------------------ BitPay ------------------

@bp.route("/bitpay", methods=["POST"])
def bitpay_webhook():
    invoice = providers.verify_bitpay(request.get_data())
    return _process(
        "bitpay",
        providers.bitpay_event_id(invoice),
        f"invoice.{invoice.get('status')}",
        providers.handle_bitpay,
        invoice,
    )


# ------------------ Wyre ------------------

@bp.route("/wyre", methods=["POST"])
def wyre_webhook():
    if not get_cfg("WYRE_WEBHOOK_SECRET"):
        current_app.logger.error("[Wyre] WYRE_WEBHOOK_SECRET not configured")
        return jsonify({"error": "Webhook secret not configured"}), 500

    payload = providers.verify_wyre(request.get_data(), request.headers.get("X-Wyre-Signature"))
    transfer_id, status = providers.wyre_transfer(payload)
    return _process("wyre", f"{transfer_id}:{status}", f"transfer.{status}", providers.handle_wyre, payload)
