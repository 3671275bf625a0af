# services/tax.py
"""
Tax rates: resolution (state -> country fallback, cached 24h), calculation,
exemptions, EU reverse charge, and the collected-tax report.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import func

from app import db
from models import Customer, Invoice, Organization, TaxExemption, TaxRate
from services.dates import utcnow
from services.errors import NotFound, ValidationFailed
from services.events import record_event
from services.money import percent_of
from services.settings import ensure_stripe, stripe_enabled
from services.tax_cache import cache_key, get_tax_cache

EU_COUNTRIES = frozenset({
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR",
    "DE", "GR", "HU", "IE", "IT", "LV", "LT", "LU", "MT", "NL",
    "PL", "PT", "RO", "SK", "SI", "ES", "SE",
})

TAX_TYPES = ("VAT", "GST", "HST", "PST", "SALES_TAX")


@dataclass
class TaxCalculation:
    tax_rate: float
    tax_amount: int
    total_amount: int
    currency: str
    breakdown: List[Dict[str, Any]] = field(default_factory=list)
    exempt: bool = False
    reverse_charge: bool = False
    jurisdiction: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_eu_country(country: Optional[str]) -> bool:
    return (country or "").upper() in EU_COUNTRIES


def _norm(country: Optional[str], state: Optional[str]):
    c = (country or "").strip().upper()
    s = (state or "").strip().upper() or None
    return c, s


def _snapshot(rate: TaxRate) -> Dict[str, Any]:
    return {
        "id": rate.id,
        "name": rate.name,
        "country": rate.country,
        "state": rate.state,
        "percentage": rate.percentage,
        "tax_type": rate.tax_type,
        "jurisdiction": rate.jurisdiction,
        "stripe_tax_rate_id": rate.stripe_tax_rate_id,
    }


# ------------------------- lookup -------------------------

def _lookup(country: str, state: Optional[str]) -> Optional[Dict[str, Any]]:
    key = cache_key(country, state)
    cache = get_tax_cache()
    hit = cache.get(key)
    if hit is not None:
        return hit

    q = TaxRate.query.filter_by(country=country, active=True)
    q = q.filter(TaxRate.state == state) if state else q.filter(TaxRate.state.is_(None))
    rate = q.first()
    if not rate:
        return None

    snap = _snapshot(rate)
    cache.set(key, snap)
    return snap


def get_tax_rate(country: Optional[str], state: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Active rate for (country, state), else the country-level rate, else None."""
    country, state = _norm(country, state)
    if not country:
        return None
    if state:
        exact = _lookup(country, state)
        if exact:
            return exact
    return _lookup(country, None)


def calculate_tax_amount(amount_cents: int, percentage: Optional[float]) -> int:
    return percent_of(int(amount_cents), percentage or 0)


# ------------------------- calculation -------------------------

def calculate_tax(
    amount: int,
    currency: str,
    country: Optional[str],
    state: Optional[str] = None,
    tax_exempt: bool = False,
    organization_id: Optional[int] = None,
) -> TaxCalculation:
    amount = int(amount)
    currency = (currency or "usd").lower()
    if amount < 0:
        raise ValidationFailed("Amount must not be negative.")

    if tax_exempt:
        return TaxCalculation(0.0, 0, amount, currency, exempt=True)

    rate = get_tax_rate(country, state)
    if not rate:
        record_event(
            "MISSING_TAX_RATE",
            "tax_rate",
            None,
            organization_id=organization_id,
            severity="WARNING",
            metadata={"country": (country or "").upper(), "state": (state or "").upper() or None,
                      "message": f"No tax rate configured for {cache_key(country or '', state)}"},
        )
        return TaxCalculation(0.0, 0, amount, currency)

    tax = calculate_tax_amount(amount, rate["percentage"])
    return TaxCalculation(
        tax_rate=float(rate["percentage"]),
        tax_amount=tax,
        total_amount=amount + tax,
        currency=currency,
        breakdown=[{
            "type": rate["tax_type"],
            "rate": float(rate["percentage"]),
            "amount": tax,
            "jurisdiction": rate["jurisdiction"],
        }],
        jurisdiction=rate["jurisdiction"],
    )


def calculate_tax_for_customer(amount: int, currency: str, customer: Customer,
                               now: Optional[datetime] = None) -> TaxCalculation:
    if is_customer_tax_exempt(customer, now=now):
        return TaxCalculation(0.0, 0, int(amount), (currency or "usd").lower(), exempt=True)

    if customer.is_business and customer.tax_id_validated and is_eu_country(customer.country):
        # EU B2B: customer self-assesses VAT
        rate = get_tax_rate(customer.country, customer.state)
        jurisdiction = rate["jurisdiction"] if rate else (customer.country or "").upper()
        return TaxCalculation(
            tax_rate=0.0,
            tax_amount=0,
            total_amount=int(amount),
            currency=(currency or "usd").lower(),
            breakdown=[{"type": "VAT", "rate": 0.0, "amount": 0, "jurisdiction": jurisdiction,
                        "note": "reverse charge"}],
            reverse_charge=True,
            jurisdiction=jurisdiction,
        )

    return calculate_tax(
        amount, currency, customer.country, customer.state,
        organization_id=customer.organization_id,
    )


# ------------------------- rate management -------------------------

def _sync_stripe_rate(rate: TaxRate) -> None:
    """Best effort: the local rate is the source of truth."""
    if not stripe_enabled():
        return
    stripe = ensure_stripe()
    try:
        if rate.stripe_tax_rate_id:
            # Stripe tax rates are immutable apart from metadata/active/display fields
            stripe.TaxRate.modify(
                rate.stripe_tax_rate_id,
                active=bool(rate.active),
                display_name=rate.name,
                description=rate.description or "",
            )
        else:
            params: Dict[str, Any] = {
                "display_name": rate.name,
                "description": rate.description or "",
                "percentage": rate.percentage,
                "inclusive": False,
                "country": rate.country,
                "jurisdiction": rate.jurisdiction,
            }
            if rate.state:
                params["state"] = rate.state
            created = stripe.TaxRate.create(**params)
            rate.stripe_tax_rate_id = created["id"]
    except stripe.StripeError as e:
        current_app.logger.warning("[Tax] Stripe sync failed for %s: %s", rate.jurisdiction, e)


def create_or_update_tax_rate(
    name: str,
    country: str,
    percentage: float,
    state: Optional[str] = None,
    tax_type: str = "SALES_TAX",
    description: Optional[str] = None,
    active: bool = True,
    actor_id: Optional[int] = None,
) -> TaxRate:
    country, state = _norm(country, state)
    if len(country) != 2:
        raise ValidationFailed("country must be an ISO 3166-1 alpha-2 code.")
    if percentage is None or not (0 <= float(percentage) <= 100):
        raise ValidationFailed("percentage must be between 0 and 100.")
    tax_type = (tax_type or "SALES_TAX").upper()
    if tax_type not in TAX_TYPES:
        raise ValidationFailed(f"tax_type must be one of {', '.join(TAX_TYPES)}.")

    q = TaxRate.query.filter_by(country=country)
    q = q.filter(TaxRate.state == state) if state else q.filter(TaxRate.state.is_(None))
    rate = q.first()
    created = rate is None
    if created:
        rate = TaxRate(country=country, state=state)
        db.session.add(rate)

    # percentage changes need a new Stripe rate (they are immutable there)
    if not created and rate.percentage != float(percentage):
        rate.stripe_tax_rate_id = None
    rate.name = name
    rate.description = description
    rate.percentage = float(percentage)
    rate.tax_type = tax_type
    rate.active = bool(active)
    rate.updated_at = utcnow()
    db.session.flush()

    _sync_stripe_rate(rate)
    get_tax_cache().invalidate(cache_key(country, state))

    record_event(
        "TAX_RATE_CREATED" if created else "TAX_RATE_UPDATED",
        "tax_rate",
        rate.id,
        metadata={"jurisdiction": rate.jurisdiction, "percentage": rate.percentage, "tax_type": tax_type},
        actor_id=actor_id,
    )
    current_app.logger.info("[Tax] rate %s %s=%s%%", "created" if created else "updated",
                            rate.jurisdiction, rate.percentage)
    return rate


def update_tax_rate(rate: TaxRate, actor_id: Optional[int] = None, **changes: Any) -> TaxRate:
    return create_or_update_tax_rate(
        name=changes.get("name") or rate.name,
        country=rate.country,
        state=rate.state,
        percentage=changes["percentage"] if changes.get("percentage") is not None else rate.percentage,
        tax_type=changes.get("tax_type") or rate.tax_type,
        description=changes["description"] if "description" in changes else rate.description,
        active=changes["active"] if changes.get("active") is not None else rate.active,
        actor_id=actor_id,
    )


def list_tax_rates(active: Optional[bool] = None, country: Optional[str] = None) -> List[TaxRate]:
    q = TaxRate.query
    if active is not None:
        q = q.filter_by(active=bool(active))
    if country:
        q = q.filter_by(country=country.strip().upper())
    return q.order_by(TaxRate.country.asc(), TaxRate.state.asc()).all()


def get_tax_rate_by_id(rate_id: int) -> TaxRate:
    rate = db.session.get(TaxRate, rate_id)
    if not rate:
        raise NotFound("Tax rate not found")
    return rate


def deactivate_tax_rate(rate: TaxRate, actor_id: Optional[int] = None) -> TaxRate:
    rate.active = False
    rate.updated_at = utcnow()
    _sync_stripe_rate(rate)
    get_tax_cache().invalidate(cache_key(rate.country, rate.state))
    record_event(
        "TAX_RATE_DELETED",
        "tax_rate",
        rate.id,
        metadata={"jurisdiction": rate.jurisdiction},
        actor_id=actor_id,
    )
    return rate


# ------------------------- exemptions -------------------------

def set_tax_exemption(
    customer: Customer,
    exempt: bool,
    tax_type: str = "ALL",
    certificate_url: Optional[str] = None,
    valid_until: Optional[datetime] = None,
) -> Optional[TaxExemption]:
    tax_type = (tax_type or "ALL").upper()
    if tax_type != "ALL" and tax_type not in TAX_TYPES:
        raise ValidationFailed(f"tax_type must be ALL or one of {', '.join(TAX_TYPES)}.")

    row = TaxExemption.query.filter_by(customer_id=customer.id, tax_type=tax_type).first()
    if not exempt:
        if row:
            row.active = False
        return row

    if row is None:
        row = TaxExemption(customer_id=customer.id, tax_type=tax_type)
        db.session.add(row)
    row.active = True
    row.certificate_url = certificate_url
    row.valid_until = valid_until
    db.session.flush()
    return row


def is_customer_tax_exempt(customer: Customer, tax_type: Optional[str] = None,
                           now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    types = ["ALL"] + ([tax_type.upper()] if tax_type else list(TAX_TYPES))
    q = TaxExemption.query.filter(
        TaxExemption.customer_id == customer.id,
        TaxExemption.active.is_(True),
        TaxExemption.tax_type.in_(types),
        db.or_(TaxExemption.valid_until.is_(None), TaxExemption.valid_until >= now),
    )
    return db.session.query(q.exists()).scalar()


# ------------------------- reporting -------------------------

def tax_report(organization: Organization, start: datetime, end: datetime) -> Dict[str, Any]:
    """Tax collected on paid invoices, grouped by jurisdiction."""
    rows = (
        db.session.query(
            Invoice.tax_jurisdiction,
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.subtotal - Invoice.discount), 0),
            func.coalesce(func.sum(Invoice.tax_amount), 0),
        )
        .filter(
            Invoice.organization_id == organization.id,
            Invoice.status == "paid",
            Invoice.paid_at >= start,
            Invoice.paid_at < end,
        )
        .group_by(Invoice.tax_jurisdiction)
        .all()
    )
    items = [
        {
            "jurisdiction": j or "UNKNOWN",
            "invoice_count": int(n),
            "taxable_amount": int(taxable),
            "tax_amount": int(tax),
        }
        for j, n, taxable, tax in rows
    ]
    items.sort(key=lambda r: r["jurisdiction"])
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "jurisdictions": items,
        "total_tax": sum(r["tax_amount"] for r in items),
        "total_taxable": sum(r["taxable_amount"] for r in items),
    }
