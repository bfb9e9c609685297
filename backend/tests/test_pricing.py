from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from marketplace import models
from marketplace.services.pricing import (
    PricingConfig,
    compute_pricing,
    load_pricing_config,
    quote_for_professional,
)
from marketplace.utils.errors import NotFoundError, ValidationError

from payment_fakes import make_professional, make_user

DEFAULTS = PricingConfig(tax_percentage=Decimal("8"), platform_fee_percentage=Decimal("10"))


def test_two_hours_at_twenty_dollars():
    result = compute_pricing(Decimal("20"), Decimal("2"), DEFAULTS)

    assert result.base_price == Decimal("40.00")
    assert result.platform_fee == Decimal("4.00")
    assert result.tax_amount == Decimal("3.20")
    assert result.total_price == Decimal("47.20")
    assert result.professional_earnings == Decimal("36.00")


def test_payload_uses_camel_case_numbers():
    payload = compute_pricing(20, 2, DEFAULTS).as_payload()

    assert payload == {
        "hourlyRate": 20.0,
        "duration": 2.0,
        "basePrice": 40.0,
        "taxPercentage": 8.0,
        "taxAmount": 3.2,
        "platformFeePercentage": 10.0,
        "platformFee": 4.0,
        "totalPrice": 47.2,
        "professionalEarnings": 36.0,
    }


@pytest.mark.parametrize(
    "rate,hours,tax,fee",
    [
        ("33.33", "1.5", "8", "10"),
        ("19.99", "0.25", "7.5", "12.5"),
        ("120", "3.75", "0", "15"),
        ("0.01", "1", "8", "10"),
        ("47.15", "2.33", "13", "9.99"),
    ],
)
def test_components_add_up_to_the_cent(rate, hours, tax, fee):
    config = PricingConfig(tax_percentage=Decimal(tax), platform_fee_percentage=Decimal(fee))
    result = compute_pricing(Decimal(rate), Decimal(hours), config)

    assert result.total_price == result.base_price + result.platform_fee + result.tax_amount
    assert result.professional_earnings + result.platform_fee == result.base_price
    for value in (result.base_price, result.platform_fee, result.tax_amount, result.total_price):
        assert value == value.quantize(Decimal("0.01"))


def test_rounds_half_up_once_per_component():
    result = compute_pricing(Decimal("33.33"), Decimal("1.5"), DEFAULTS)

    # 49.995 -> 50.00, 4.9995 -> 5.00, 3.9996 -> 4.00
    assert result.base_price == Decimal("50.00")
    assert result.platform_fee == Decimal("5.00")
    assert result.tax_amount == Decimal("4.00")
    assert result.total_price == Decimal("59.00")


def test_same_inputs_same_result():
    assert compute_pricing("20", "2", DEFAULTS) == compute_pricing(Decimal("20.0"), 2, DEFAULTS)


@pytest.mark.parametrize(
    "rate,hours",
    [(None, 2), (0, 2), (-5, 2), (20, 0), (20, -1), ("abc", 2), (20, "NaN")],
)
def test_rejects_invalid_inputs(rate, hours):
    with pytest.raises(ValidationError):
        compute_pricing(rate, hours, DEFAULTS)


def test_defaults_when_no_configuration(db):
    config = load_pricing_config(db)

    assert config.tax_percentage == Decimal("8")
    assert config.platform_fee_percentage == Decimal("10")
    assert config.source_id is None


def test_latest_configuration_wins(db):
    now = datetime.utcnow()
    older = models.TaxConfig(
        tax_percentage=Decimal("5"),
        platform_fee_percentage=Decimal("5"),
        created_at=now - timedelta(days=1),
    )
    newer = models.TaxConfig(
        tax_percentage=Decimal("15"),
        platform_fee_percentage=Decimal("20"),
        created_at=now,
    )
    db.add_all([newer, older])
    db.commit()

    config = load_pricing_config(db)

    assert config.tax_percentage == Decimal("15")
    assert config.platform_fee_percentage == Decimal("20")
    assert config.source_id == newer.id


def test_quote_for_professional_uses_their_rate(db):
    professional = make_professional(db, hourly_rate=Decimal("20"))

    result = quote_for_professional(db, professional.id, Decimal("2"))

    assert result.total_price == Decimal("47.20")


def test_quote_requires_a_professional(db):
    client = make_user(db, "client@test.com")

    with pytest.raises(NotFoundError):
        quote_for_professional(db, client.id, 2)
    with pytest.raises(NotFoundError):
        quote_for_professional(db, 9999, 2)


def test_quote_requires_an_hourly_rate(db):
    professional = make_professional(db, hourly_rate=None)

    with pytest.raises(ValidationError, match="hourly rate"):
        quote_for_professional(db, professional.id, 2)
