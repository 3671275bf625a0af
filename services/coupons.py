# services/coupons.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from app import db
from models import Coupon, Organization
from services.dates import utcnow
from services.errors import Conflict, ValidationFailed
from services.money import half_up, percent_of

DISCOUNT_TYPES = ("percentage", "fixed")


def create_coupon(
    organization: Organization,
    code: str,
    discount_type: str,
    amount: float,
    max_redemptions: Optional[int] = None,
    valid_until: Optional[datetime] = None,
    plan_id: Optional[int] = None,
) -> Coupon:
    code = (code or "").strip().upper()
    if not code:
        raise ValidationFailed("Coupon code is required.")
    discount_type = (discount_type or "").strip().lower()
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationFailed("discount_type must be 'percentage' or 'fixed'.")
    amount = float(amount)
    if discount_type == "percentage" and not (0 < amount <= 100):
        raise ValidationFailed("Percentage discount must be in (0, 100].")
    if discount_type == "fixed" and amount <= 0:
        raise ValidationFailed("Fixed discount must be greater than zero.")
    if max_redemptions is not None and int(max_redemptions) < 1:
        raise ValidationFailed("max_redemptions must be at least 1.")

    if Coupon.query.filter_by(organization_id=organization.id, code=code).first():
        raise Conflict(f"Coupon {code} already exists.")

    c = Coupon(
        organization_id=organization.id,
        code=code,
        discount_type=discount_type,
        amount=amount,
        max_redemptions=max_redemptions,
        valid_until=valid_until,
        plan_id=plan_id,
        active=True,
    )
    db.session.add(c)
    db.session.flush()
    return c


def list_coupons(organization: Organization) -> List[Coupon]:
    return Coupon.query.filter_by(organization_id=organization.id).order_by(Coupon.id.desc()).all()


def validate_coupon(organization_id: int, code: str, plan_id: Optional[int] = None,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
    """{valid, reason, coupon}. reason is None when valid."""
    now = now or utcnow()
    code = (code or "").strip().upper()
    c = Coupon.query.filter_by(organization_id=organization_id, code=code).first()

    reason = None
    if not c:
        reason = "Coupon not found"
    elif not c.active:
        reason = "Coupon is inactive"
    elif c.valid_until and c.valid_until < now:
        reason = "Coupon has expired"
    elif c.max_redemptions is not None and int(c.times_redeemed or 0) >= int(c.max_redemptions):
        reason = "Coupon has reached its maximum redemptions"
    elif c.plan_id and plan_id and c.plan_id != plan_id:
        reason = "Coupon is not valid for this plan"

    return {"valid": reason is None, "reason": reason, "coupon": c if reason is None else None}


def compute_discount(subtotal: int, coupon: Optional[Coupon]) -> int:
    """Discount in cents, never more than the subtotal."""
    subtotal = int(subtotal or 0)
    if not coupon or subtotal <= 0:
        return 0
    if coupon.discount_type == "percentage":
        discount = percent_of(subtotal, coupon.amount)
    else:
        discount = half_up(coupon.amount)
    return max(0, min(discount, subtotal))


def redeem_coupon(coupon: Coupon) -> Coupon:
    coupon.times_redeemed = int(coupon.times_redeemed or 0) + 1
    return coupon
