"""
Billing blueprint: Stripe-hosted Checkout and Customer Portal (routes.py).
"""

from __future__ import annotations
from flask import Blueprint

bp = Blueprint("billing", __name__, url_prefix="/billing")

# routes register themselves on `bp`
from . import routes  # noqa: E402,F401
