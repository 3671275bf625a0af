# notifications/routes.py
from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import login_required

from app import db
from models import Notification
from services.events import list_notifications, mark_read
from services.guards import current_org, get_owned
from services.params import bool_arg, limit_arg

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("", methods=["GET"])
@login_required
def index():
    rows = list_notifications(current_org(), unread_only=bool(bool_arg("unread")), limit=limit_arg(50, 200))
    return jsonify({"items": [n.to_dict() for n in rows]})


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@login_required
def read(notification_id: int):
    n = mark_read(get_owned(Notification, notification_id, "Notification"))
    db.session.commit()
    return jsonify(n.to_dict())
