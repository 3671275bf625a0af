# services/settings.py
from __future__ import annotations

import os
from typing import List, Optional

from flask import current_app, has_app_context


def get_cfg(key: str) -> Optional[str]:
    """Read from env first (safe at import), then Flask config if an app ctx exists."""
    v = os.environ.get(key)
    if v:
        return v.strip()
    if has_app_context():
        w = current_app.config.get(key)
        if w not in (None, ""):
            return str(w).strip()
    return None


def require_cfg(key: str) -> str:
    v = get_cfg(key)
    if not v:
        raise RuntimeError(f"{key} not configured")
    return v


def cfg_int(key: str, default: int) -> int:
    try:
        return int(get_cfg(key) or default)
    except (TypeError, ValueError):
        return default


def cfg_bool(key: str, default: bool) -> bool:
    raw = get_cfg(key)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def cfg_int_list(key: str, default: List[int]) -> List[int]:
    """'1,6,24,72' -> [1, 6, 24, 72]; falls back to default on bad input."""
    raw = get_cfg(key)
    if not raw:
        return list(default)
    try:
        values = [int(p) for p in raw.split(",") if p.strip()]
    except ValueError:
        return list(default)
    return values or list(default)


def stripe_enabled() -> bool:
    return bool(get_cfg("STRIPE_SECRET_KEY"))


def ensure_stripe():
    import stripe
    stripe.api_key = require_cfg("STRIPE_SECRET_KEY")
    return stripe
