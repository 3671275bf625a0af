from datetime import timedelta

import pytest
import responses

from app import db
from models import Customer, Event, Notification, TaxIdValidation
from services.dates import utcnow
from services.errors import ValidationFailed
from services.tax import (
    calculate_tax,
    calculate_tax_for_customer,
    create_or_update_tax_rate,
    get_tax_rate,
    set_tax_exemption,
)
from services.tax_cache import get_tax_cache
from services.tax_validation import validate_tax_id


@pytest.fixture
def us_rates(ctx):
    create_or_update_tax_rate("US federal placeholder", "US", 5.0)
    create_or_update_tax_rate("California", "us", 7.25, state="ca")
    db.session.commit()


def test_state_rate_wins(us_rates):
    result = calculate_tax(10000, "USD", "US", "CA")
    assert result.tax_amount == 725
    assert result.total_amount == 10725
    assert result.jurisdiction == "US-CA"
    assert result.currency == "usd"
    assert result.breakdown[0]["type"] == "SALES_TAX"


def test_falls_back_to_country_rate(us_rates):
    result = calculate_tax(10000, "usd", "US", "NY")
    assert result.tax_rate == 5.0
    assert result.tax_amount == 500
    assert result.jurisdiction == "US"


def test_missing_rate_is_zero_and_warns(org):
    result = calculate_tax(10000, "usd", "FR", organization_id=org.id)
    assert result.tax_amount == 0
    assert result.total_amount == 10000

    ev = Event.query.filter_by(event_type="MISSING_TAX_RATE").one()
    assert ev.severity == "WARNING"
    assert ev.meta["country"] == "FR"
    assert Notification.query.filter_by(organization_id=org.id, type="MISSING_TAX_RATE").count() == 1


def test_negative_amount_rejected(ctx):
    with pytest.raises(ValidationFailed):
        calculate_tax(-1, "usd", "US")


def test_exempt_flag_skips_lookup(ctx):
    result = calculate_tax(5000, "usd", "US", tax_exempt=True)
    assert result.exempt is True
    assert result.tax_amount == 0
    assert Event.query.count() == 0


def test_rate_lookups_are_cached_and_invalidated(us_rates):
    cache = get_tax_cache()
    assert get_tax_rate("US", "CA")["percentage"] == 7.25
    assert get_tax_rate("us", "ca")["percentage"] == 7.25
    assert cache.stats()["hits"] >= 1

    create_or_update_tax_rate("California", "US", 8.0, state="CA")
    db.session.commit()
    assert calculate_tax(10000, "usd", "US", "CA").tax_amount == 800


@pytest.mark.parametrize("country,percentage", [("USA", 5), ("US", 150), ("US", -1)])
def test_rate_validation(ctx, country, percentage):
    with pytest.raises(ValidationFailed):
        create_or_update_tax_rate("Bad", country, percentage)


def test_customer_exemption(customer, us_rates):
    set_tax_exemption(customer, True)
    assert calculate_tax_for_customer(10000, "usd", customer).exempt is True

    set_tax_exemption(customer, False)
    assert calculate_tax_for_customer(10000, "usd", customer).tax_amount == 725


def test_expired_exemption_is_ignored(customer, us_rates):
    set_tax_exemption(customer, True, valid_until=utcnow() - timedelta(days=1))
    assert calculate_tax_for_customer(10000, "usd", customer).exempt is False


def test_eu_b2b_reverse_charge(org):
    create_or_update_tax_rate("Germany VAT", "DE", 19, tax_type="VAT")
    business = Customer(organization_id=org.id, name="GmbH", country="DE",
                        is_business=True, tax_id="DE123456789", tax_id_validated=True)
    consumer = Customer(organization_id=org.id, name="Hans", country="DE")
    db.session.add_all([business, consumer])
    db.session.commit()

    b2b = calculate_tax_for_customer(10000, "eur", business)
    assert b2b.reverse_charge is True
    assert b2b.tax_amount == 0
    assert b2b.jurisdiction == "DE"

    b2c = calculate_tax_for_customer(10000, "eur", consumer)
    assert b2c.tax_amount == 1900
    assert b2c.reverse_charge is False


def test_vies_validation_is_cached(ctx, app):
    url = app.config["VIES_API_URL"]
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, url, json={"valid": True, "name": "Example GmbH", "address": "Berlin"})
        first = validate_tax_id("DE 123-456-789", "de")
        db.session.commit()

        assert first.is_valid is True
        assert first.tax_id == "DE123456789"
        assert first.business_name == "Example GmbH"
        assert first.cached is False
        assert len(rsps.calls) == 1
        assert b'"vatNumber": "123456789"' in rsps.calls[0].request.body

    # second lookup is served from the stored validation, no HTTP call
    with responses.RequestsMock():
        again = validate_tax_id("DE123456789", "DE")
    assert again.cached is True
    assert TaxIdValidation.query.count() == 1


def test_vies_outage_is_not_cached(ctx, app):
    with responses.RequestsMock() as rsps:
        rsps.add(responses.POST, app.config["VIES_API_URL"], status=503)
        result = validate_tax_id("FR12345678901", "FR")
    assert result.is_valid is False
    assert result.error == "validation service unavailable"
    assert TaxIdValidation.query.count() == 0


def test_non_eu_ids_get_a_format_check(ctx):
    assert validate_tax_id("123456789", "US", tax_type="EIN").is_valid is True
    assert validate_tax_id("12", "US", tax_type="EIN").is_valid is False
