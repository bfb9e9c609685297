from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Optional

from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..utils.errors import NotFoundError, ValidationError

_CENT = Decimal("0.01")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PricingConfig:
    """Snapshot of the tax/fee configuration used for one pricing run."""

    tax_percentage: Decimal
    platform_fee_percentage: Decimal
    source_id: Optional[int] = None
    effective_at: Optional[datetime] = None

    @classmethod
    def defaults(cls) -> "PricingConfig":
        return cls(
            tax_percentage=_to_decimal(settings.DEFAULT_TAX_PERCENTAGE),
            platform_fee_percentage=_to_decimal(settings.DEFAULT_PLATFORM_FEE_PERCENTAGE),
        )


@dataclass(frozen=True)
class PricingBreakdown:
    hourly_rate: Decimal
    duration: Decimal
    base_price: Decimal
    tax_percentage: Decimal
    tax_amount: Decimal
    platform_fee_percentage: Decimal
    platform_fee: Decimal
    total_price: Decimal
    professional_earnings: Decimal

    def as_payload(self) -> dict[str, float]:
        return {
            "hourlyRate": float(self.hourly_rate),
            "duration": float(self.duration),
            "basePrice": float(self.base_price),
            "taxPercentage": float(self.tax_percentage),
            "taxAmount": float(self.tax_amount),
            "platformFeePercentage": float(self.platform_fee_percentage),
            "platformFee": float(self.platform_fee),
            "totalPrice": float(self.total_price),
            "professionalEarnings": float(self.professional_earnings),
        }


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid numeric value: {value!r}")


def _cents(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def compute_pricing(hourly_rate: Any, duration: Any, config: PricingConfig) -> PricingBreakdown:
    """Price ``duration`` hours at ``hourly_rate`` under ``config``.

    Intermediate values stay unrounded; each component is quantized to cents
    once, and the total and earnings are derived from the rounded components
    so ``total == base + fee + tax`` and ``earnings + fee == base`` hold to
    the cent.
    """
    if hourly_rate is None:
        raise ValidationError("Professional has no hourly rate set")
    rate = _to_decimal(hourly_rate)
    hours = _to_decimal(duration)
    if not rate.is_finite() or rate <= 0:
        raise ValidationError("Professional hourly rate must be greater than zero")
    if not hours.is_finite() or hours <= 0:
        raise ValidationError("Duration must be a positive number of hours")

    base_raw = rate * hours
    base_price = _cents(base_raw)
    platform_fee = _cents(base_raw * config.platform_fee_percentage / _HUNDRED)
    tax_amount = _cents(base_raw * config.tax_percentage / _HUNDRED)

    return PricingBreakdown(
        hourly_rate=rate,
        duration=hours,
        base_price=base_price,
        tax_percentage=config.tax_percentage,
        tax_amount=tax_amount,
        platform_fee_percentage=config.platform_fee_percentage,
        platform_fee=platform_fee,
        total_price=base_price + platform_fee + tax_amount,
        professional_earnings=base_price - platform_fee,
    )


def load_pricing_config(db: Session) -> PricingConfig:
    """Return the most recently created tax configuration, else the defaults."""
    row = (
        db.query(models.TaxConfig)
        .order_by(models.TaxConfig.created_at.desc(), models.TaxConfig.id.desc())
        .first()
    )
    if row is None:
        return PricingConfig.defaults()
    return PricingConfig(
        tax_percentage=_to_decimal(row.tax_percentage),
        platform_fee_percentage=_to_decimal(row.platform_fee_percentage),
        source_id=row.id,
        effective_at=row.created_at,
    )


def get_professional(db: Session, professional_id: int) -> models.User:
    professional = db.query(models.User).filter(models.User.id == professional_id).first()
    if professional is None or professional.role != models.UserRole.PROFESSIONAL:
        raise NotFoundError("Professional not found")
    return professional


def quote_for_professional(
    db: Session,
    professional_id: int,
    duration: Any,
    config: Optional[PricingConfig] = None,
) -> PricingBreakdown:
    """Price an appointment with ``professional_id`` for ``duration`` hours."""
    professional = get_professional(db, professional_id)
    if config is None:
        config = load_pricing_config(db)
    return compute_pricing(professional.hourly_rate, duration, config)
