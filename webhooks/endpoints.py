# webhooks/endpoints.py
"""Outbound webhook endpoints and their deliveries (/api/webhooks/*)."""
from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required

from app import db
from models import WebhookDelivery, WebhookEndpoint
from schemas import WebhookEndpointCreate, WebhookEndpointUpdate
from services.errors import NotFound
from services.guards import current_org, require_manager
from services.params import date_arg, int_arg, limit_arg
from services.webhook_service import (
    delete_endpoint,
    delivery_stats,
    get_endpoint,
    list_deliveries,
    list_endpoints,
    register_endpoint,
    retry_delivery,
    rotate_secret,
    update_endpoint,
)

endpoints_bp = Blueprint("webhook_endpoints", __name__, url_prefix="/api/webhooks")


def _endpoint(endpoint_id: int) -> WebhookEndpoint:
    return get_endpoint(current_org(), endpoint_id)


# ------------------------- endpoints -------------------------

@endpoints_bp.route("/endpoints", methods=["GET"])
@login_required
def index():
    return jsonify({"items": [ep.to_dict() for ep in list_endpoints(current_org())]})


@endpoints_bp.route("/endpoints", methods=["POST"])
@login_required
@require_manager
def create():
    body = WebhookEndpointCreate.model_validate(request.get_json(silent=True) or {})
    ep = register_endpoint(
        current_org(),
        body.url,
        body.events,
        description=body.description,
        max_attempts=body.max_attempts,
    )
    db.session.commit()
    # the secret is only ever shown here and on rotation
    return jsonify(ep.to_dict(include_secret=True)), 201


@endpoints_bp.route("/endpoints/<int:endpoint_id>", methods=["PATCH"])
@login_required
@require_manager
def patch(endpoint_id: int):
    ep = _endpoint(endpoint_id)
    body = WebhookEndpointUpdate.model_validate(request.get_json(silent=True) or {})
    update_endpoint(ep, **body.model_dump(exclude_unset=True))
    db.session.commit()
    return jsonify(ep.to_dict())


@endpoints_bp.route("/endpoints/<int:endpoint_id>", methods=["DELETE"])
@login_required
@require_manager
def delete(endpoint_id: int):
    delete_endpoint(_endpoint(endpoint_id))
    db.session.commit()
    return jsonify({"ok": True, "deleted": endpoint_id})


@endpoints_bp.route("/endpoints/<int:endpoint_id>/rotate-secret", methods=["POST"])
@login_required
@require_manager
def rotate(endpoint_id: int):
    ep = _endpoint(endpoint_id)
    secret = rotate_secret(ep)
    db.session.commit()
    return jsonify({"id": ep.id, "secret": secret})


@endpoints_bp.route("/endpoints/<int:endpoint_id>/stats", methods=["GET"])
@login_required
def stats(endpoint_id: int):
    return jsonify(delivery_stats(_endpoint(endpoint_id), start=date_arg("start"), end=date_arg("end")))


# ------------------------- deliveries -------------------------

@endpoints_bp.route("/deliveries", methods=["GET"])
@login_required
def deliveries():
    rows = list_deliveries(
        current_org(),
        endpoint_id=int_arg("endpoint_id"),
        status=request.args.get("status") or None,
        limit=limit_arg(),
    )
    return jsonify({"items": [d.to_dict() for d in rows]})


@endpoints_bp.route("/deliveries/<int:delivery_id>/retry", methods=["POST"])
@login_required
@require_manager
def retry(delivery_id: int):
    org = current_org()
    d = (
        WebhookDelivery.query.join(WebhookEndpoint)
        .filter(WebhookDelivery.id == delivery_id, WebhookEndpoint.organization_id == org.id)
        .first()
    )
    if d is None:
        raise NotFound("Delivery not found")
    ok = retry_delivery(d)
    db.session.commit()
    return jsonify({"ok": ok, "delivery": d.to_dict()})
