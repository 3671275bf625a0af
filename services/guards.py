"""
Guards & gates for the billing API (org scoping, role checks, cron secret).

Design:
- Every /api/* handler works inside the caller's organization (current_org()).
- Decorators import Flask bits lazily so this module stays inert at import.
- Failures answer JSON (401/403/500), never redirects.
"""
from __future__ import annotations

import hmac
from functools import wraps
from typing import Any

# —————————————————————————————————————————————————————————
# Organization helpers
# —————————————————————————————————————————————————————————

def current_org() -> Any:
    """Organization of the logged-in user; 403 when the user has none."""
    from flask import abort
    from flask_login import current_user

    org = getattr(current_user, "organization", None)
    if org is None:
        abort(403, description="User is not a member of an organization.")
    return org


def get_owned(model: Any, object_id: int, label: str) -> Any:
    """Load `model` by id scoped to the current organization or raise NotFound."""
    from services.errors import NotFound

    org = current_org()
    obj = model.query.filter_by(id=object_id, organization_id=org.id).first()
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


# —————————————————————————————————————————————————————————
# Decorators: role gates
# —————————————————————————————————————————————————————————

def require_manager(fn):
    """Org owners/admins (and platform admins) only; members are read-only."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        from flask import jsonify
        from flask_login import current_user

        if not getattr(current_user, "is_authenticated", False):
            return jsonify({"error": "Unauthorized"}), 401
        if not getattr(current_user, "can_manage", False):
            return jsonify({"error": "Owner or admin role required."}), 403
        return fn(*args, **kwargs)
    return wrapper


def require_admin(fn):
    """Platform admins only (users.is_admin)."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        from flask import jsonify
        from flask_login import current_user

        if not getattr(current_user, "is_authenticated", False):
            return jsonify({"error": "Unauthorized"}), 401
        if not bool(getattr(current_user, "is_admin", False)):
            return jsonify({"error": "Admin access required."}), 403
        return fn(*args, **kwargs)
    return wrapper


# —————————————————————————————————————————————————————————
# Cron secret
# —————————————————————————————————————————————————————————

def require_cron_secret(fn):
    """
    Authorization: Bearer <CRON_SECRET>.
    500 when CRON_SECRET is unset (misconfiguration should be loud), 401 when wrong.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        from flask import current_app, jsonify, request
        from services.settings import get_cfg

        secret = get_cfg("CRON_SECRET")
        if not secret:
            current_app.logger.error("[Cron] CRON_SECRET not configured")
            return jsonify({"error": "CRON_SECRET not configured"}), 500

        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):].strip() if header.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, secret):
            current_app.logger.warning("[Cron] rejected request to %s", request.path)
            return jsonify({"error": "Unauthorized"}), 401
        return fn(*args, **kwargs)
    return wrapper
