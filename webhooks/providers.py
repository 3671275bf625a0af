# webhooks/providers.py
"""
PayPal, BitPay and Wyre notifications.

Each provider has a `verify_*` step that returns the trusted event dict
(or raises ValidationFailed for a forged/unknown payload) and a `handle_*`
step that updates payments/invoices without committing.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
from flask import current_app

from app import db
from models import Invoice
from services.errors import ProviderError, ValidationFailed
from services.money import half_up, to_decimal
from services.payments import record_provider_payment
from services.settings import get_cfg, require_cfg

HTTP_TIMEOUT = 15

PAYPAL_HEADERS = (
    "PAYPAL-AUTH-ALGO",
    "PAYPAL-CERT-URL",
    "PAYPAL-TRANSMISSION-ID",
    "PAYPAL-TRANSMISSION-SIG",
    "PAYPAL-TRANSMISSION-TIME",
)

BITPAY_STATUS = {
    "confirmed": "succeeded",
    "complete": "succeeded",
    "expired": "failed",
    "invalid": "failed",
}

WYRE_STATUS = {
    "COMPLETE": "succeeded",
    "COMPLETED": "succeeded",
    "FAILED": "failed",
}


def _cents(value: Any) -> Optional[int]:
    """'12.34' (major units) -> 1234."""
    if value in (None, ""):
        return None
    try:
        return half_up(to_decimal(value) * 100)
    except ArithmeticError:
        return None


def _invoice(local_id: Any) -> Optional[Invoice]:
    try:
        return db.session.get(Invoice, int(local_id))
    except (TypeError, ValueError):
        return None


def _json(raw: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationFailed("Invalid JSON payload.")
    if not isinstance(body, dict):
        raise ValidationFailed("Invalid JSON payload.")
    return body


# ------------------------- PayPal -------------------------

def _paypal_token() -> str:
    base = require_cfg("PAYPAL_API_BASE").rstrip("/")
    try:
        r = requests.post(
            f"{base}/v1/oauth2/token",
            auth=(require_cfg("PAYPAL_CLIENT_ID"), require_cfg("PAYPAL_CLIENT_SECRET")),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
            timeout=HTTP_TIMEOUT,
        )
        r.raise_for_status()
        return r.json()["access_token"]
    except (requests.RequestException, KeyError, ValueError) as e:
        current_app.logger.error("[PayPal] token request failed: %s", e)
        raise ProviderError("PayPal authentication failed.")


def verify_paypal(raw: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
    event = _json(raw)
    missing = [h for h in PAYPAL_HEADERS if not headers.get(h)]
    if missing:
        raise ValidationFailed("Missing PayPal signature headers.")

    webhook_id = require_cfg("PAYPAL_WEBHOOK_ID")
    base = require_cfg("PAYPAL_API_BASE").rstrip("/")
    body = {
        "auth_algo": headers["PAYPAL-AUTH-ALGO"],
        "cert_url": headers["PAYPAL-CERT-URL"],
        "transmission_id": headers["PAYPAL-TRANSMISSION-ID"],
        "transmission_sig": headers["PAYPAL-TRANSMISSION-SIG"],
        "transmission_time": headers["PAYPAL-TRANSMISSION-TIME"],
        "webhook_id": webhook_id,
        "webhook_event": event,
    }
    try:
        r = requests.post(
            f"{base}/v1/notifications/verify-webhook-signature",
            json=body,
            headers={"Authorization": f"Bearer {_paypal_token()}"},
            timeout=HTTP_TIMEOUT,
        )
        r.raise_for_status()
        status = (r.json() or {}).get("verification_status")
    except (requests.RequestException, ValueError) as e:
        current_app.logger.error("[PayPal] signature verification call failed: %s", e)
        raise ProviderError("PayPal verification failed.")

    if status != "SUCCESS":
        current_app.logger.warning("[PayPal] rejected event %s (status=%s)", event.get("id"), status)
        raise ValidationFailed("Invalid signature")
    return event


def _paypal_external_id(resource: Dict[str, Any]) -> str:
    related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}
    return related.get("order_id") or resource.get("id")


def handle_paypal(event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = event.get("event_type")
    resource = event.get("resource") or {}
    amount = resource.get("amount") or {}
    invoice = _invoice(resource.get("custom_id"))

    if event_type == "PAYMENT.CAPTURE.COMPLETED":
        p = record_provider_payment(
            "paypal", _paypal_external_id(resource), "succeeded",
            amount=_cents(amount.get("value")),
            currency=amount.get("currency_code"),
            invoice=invoice,
            metadata={"capture_id": resource.get("id")},
        )
    elif event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
        reason = (resource.get("status_details") or {}).get("reason") or "Payment capture failed"
        p = record_provider_payment(
            "paypal", _paypal_external_id(resource), "failed",
            amount=_cents(amount.get("value")),
            currency=amount.get("currency_code"),
            invoice=invoice,
            failure_reason=reason,
        )
    elif event_type == "PAYMENT.CAPTURE.REFUNDED":
        # resource is the captured payment after the refund
        p = record_provider_payment(
            "paypal", _paypal_external_id(resource), "refunded",
            amount=_cents(amount.get("value")),
            invoice=invoice,
        )
    else:
        return {"ignored": event_type}
    return {"payment_id": p.id if p else None}


# ------------------------- BitPay -------------------------

def verify_bitpay(raw: bytes) -> Dict[str, Any]:
    """
    BitPay IPNs are unsigned; the invoice is re-fetched from the API and
    only that copy is trusted.
    """
    body = _json(raw)
    data = body.get("data") if isinstance(body.get("data"), dict) else body
    invoice_id = data.get("id")
    if not invoice_id:
        raise ValidationFailed("Missing BitPay invoice id.")

    base = require_cfg("BITPAY_API_BASE").rstrip("/")
    params = {"token": get_cfg("BITPAY_TOKEN")} if get_cfg("BITPAY_TOKEN") else None
    try:
        r = requests.get(
            f"{base}/invoices/{invoice_id}",
            params=params,
            headers={"Accept": "application/json", "X-Accept-Version": "2.0.0"},
            timeout=HTTP_TIMEOUT,
        )
    except requests.RequestException as e:
        current_app.logger.error("[BitPay] invoice fetch failed: %s", e)
        raise ProviderError("BitPay lookup failed.")
    if r.status_code == 404:
        raise ValidationFailed("Unknown BitPay invoice.")
    if not r.ok:
        current_app.logger.error("[BitPay] invoice fetch HTTP %s", r.status_code)
        raise ProviderError("BitPay lookup failed.")
    try:
        fetched = (r.json() or {}).get("data") or {}
    except ValueError:
        raise ProviderError("BitPay lookup failed.")
    if fetched.get("id") != invoice_id:
        raise ValidationFailed("BitPay invoice mismatch.")
    return fetched


def bitpay_event_id(invoice: Dict[str, Any]) -> str:
    # one invoice notifies several times as its status moves
    return f"{invoice.get('id')}:{invoice.get('status')}"


def handle_bitpay(invoice: Dict[str, Any]) -> Dict[str, Any]:
    status = BITPAY_STATUS.get((invoice.get("status") or "").lower())
    if status is None:
        return {"ignored": invoice.get("status")}
    local = _invoice(invoice.get("orderId") or invoice.get("posData"))
    p = record_provider_payment(
        "bitpay", invoice["id"], status,
        amount=_cents(invoice.get("price")),
        currency=invoice.get("currency"),
        invoice=local,
        failure_reason=f"BitPay invoice {invoice.get('status')}" if status == "failed" else None,
    )
    return {"payment_id": p.id if p else None, "status": status}


# ------------------------- Wyre -------------------------

def verify_wyre(raw: bytes, signature: Optional[str]) -> Dict[str, Any]:
    secret = require_cfg("WYRE_WEBHOOK_SECRET")
    expected = hmac.new(secret.encode("utf-8"), raw or b"", hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
        current_app.logger.warning("[Wyre] bad signature")
        raise ValidationFailed("Invalid signature")
    return _json(raw)


def wyre_transfer(payload: Dict[str, Any]) -> Tuple[str, str]:
    transfer_id = payload.get("transferId") or payload.get("id")
    if not transfer_id:
        raise ValidationFailed("Missing Wyre transfer id.")
    return str(transfer_id), str(payload.get("status") or "").upper()


def handle_wyre(payload: Dict[str, Any]) -> Dict[str, Any]:
    transfer_id, raw_status = wyre_transfer(payload)
    status = WYRE_STATUS.get(raw_status)
    if status is None:
        return {"ignored": raw_status}
    meta = payload.get("metadata") or {}
    local = _invoice(meta.get("invoice_id") or payload.get("referenceId"))
    p = record_provider_payment(
        "wyre", transfer_id, status,
        amount=_cents(payload.get("sourceAmount")),
        currency=payload.get("sourceCurrency"),
        invoice=local,
        failure_reason=(payload.get("failureReason") or "Wyre transfer failed") if status == "failed" else None,
    )
    return {"payment_id": p.id if p else None, "status": status}
