# services/tax_validation.py
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import requests
from flask import current_app

from app import db
from models import Customer, TaxIdValidation
from services.dates import utcnow
from services.events import record_event
from services.settings import cfg_int, get_cfg
from services.tax import is_eu_country

DEFAULT_TIMEOUT = 10  # seconds


@dataclass
class ValidationResult:
    tax_id: str
    country: str
    is_valid: bool
    business_name: Optional[str] = None
    business_address: Optional[str] = None
    validated_at: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    cached: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tax_id": self.tax_id,
            "country": self.country,
            "is_valid": self.is_valid,
            "business_name": self.business_name,
            "business_address": self.business_address,
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "cached": self.cached,
            "error": self.error,
        }


def _clean(tax_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", tax_id or "").upper()


def _strip_country_prefix(tax_id: str, country: str) -> str:
    return tax_id[len(country):] if tax_id.startswith(country) else tax_id


def _from_row(row: TaxIdValidation) -> ValidationResult:
    return ValidationResult(
        tax_id=row.tax_id,
        country=row.country,
        is_valid=bool(row.is_valid),
        business_name=row.business_name,
        business_address=row.business_address,
        validated_at=row.validated_at,
        valid_until=row.valid_until,
        cached=True,
    )


def _check_vies(tax_id: str, country: str) -> Dict[str, Any]:
    url = get_cfg("VIES_API_URL")
    resp = requests.post(
        url,
        json={"countryCode": country, "vatNumber": _strip_country_prefix(tax_id, country)},
        timeout=DEFAULT_TIMEOUT,
    )
    resp.raise_for_status()
    data = resp.json() or {}
    return {
        # REST API answers "valid"; older proxies used "isValid"
        "is_valid": bool(data.get("valid", data.get("isValid", False))),
        "business_name": (data.get("name") or "").strip() or None,
        "business_address": (data.get("address") or "").strip() or None,
    }


def _check_format(tax_id: str) -> Dict[str, Any]:
    return {"is_valid": tax_id.isalnum() and len(tax_id) > 5}


def validate_tax_id(tax_id: str, country: str, tax_type: str = "VAT",
                    now: Optional[datetime] = None) -> ValidationResult:
    now = now or utcnow()
    country = (country or "").strip().upper()
    tax_type = (tax_type or "VAT").upper()
    cleaned = _clean(tax_id)

    row = (
        TaxIdValidation.query.filter(
            TaxIdValidation.tax_id == cleaned,
            TaxIdValidation.country == country,
            TaxIdValidation.tax_type == tax_type,
            TaxIdValidation.valid_until > now,
        )
        .order_by(TaxIdValidation.validated_at.desc())
        .first()
    )
    if row:
        return _from_row(row)

    try:
        if tax_type == "VAT" and is_eu_country(country):
            found = _check_vies(cleaned, country)
        else:
            found = _check_format(cleaned)
    except (requests.RequestException, ValueError) as e:
        # not cached: the next call tries VIES again
        current_app.logger.warning("[Tax] VIES lookup failed for %s: %s", country, e)
        return ValidationResult(cleaned, country, False, validated_at=now, error="validation service unavailable")

    valid_until = now + timedelta(days=cfg_int("TAX_ID_VALIDATION_DAYS", 30))
    row = TaxIdValidation(
        tax_id=cleaned,
        country=country,
        tax_type=tax_type,
        is_valid=found["is_valid"],
        business_name=found.get("business_name"),
        business_address=found.get("business_address"),
        validated_at=now,
        valid_until=valid_until,
    )
    db.session.add(row)

    record_event(
        "TAX_ID_VALIDATION",
        "tax_id",
        cleaned,
        metadata={"country": country, "tax_type": tax_type, "is_valid": found["is_valid"]},
        deliver=False,
    )
    result = _from_row(row)
    result.cached = False
    return result


def apply_validation(customer: Customer, result: ValidationResult) -> Customer:
    customer.tax_id = result.tax_id
    customer.tax_id_validated = bool(result.is_valid)
    return customer
