"""
Admin blueprint: platform health, audit events and job logs (routes.py).

Every route is limited to platform admins (users.is_admin).
"""

from __future__ import annotations
from flask import Blueprint

bp = Blueprint("admin", __name__, url_prefix="/admin")

# admin/routes.py attaches its views to `bp`
from . import routes  # noqa: E402,F401
