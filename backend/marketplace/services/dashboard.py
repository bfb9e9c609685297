from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from .. import models
from ..models import PaymentStatus

_EARNING = (PaymentStatus.PAID, PaymentStatus.RELEASED)


def _money(value) -> float:
    return float(Decimal(value or 0).quantize(Decimal("0.01")))


def build_dashboard(db: Session, days: int = 30, now: Optional[datetime] = None) -> dict:
    """Aggregate payment figures for the admin dashboard."""
    now = now or datetime.utcnow()
    since = now - timedelta(days=days)

    revenue = (
        db.query(func.coalesce(func.sum(models.Payment.amount), 0))
        .filter(models.Payment.status.in_(_EARNING))
        .scalar()
    )
    platform_fees = (
        db.query(func.coalesce(func.sum(models.Payment.platform_fee), 0))
        .filter(models.Payment.status.in_(_EARNING))
        .scalar()
    )
    counts = {status.value: 0 for status in PaymentStatus}
    for status, count in (
        db.query(models.Payment.status, func.count(models.Payment.id))
        .group_by(models.Payment.status)
        .all()
    ):
        counts[PaymentStatus(status).value] = count

    day = func.date(models.Payment.created_at)
    per_day = [
        {"date": str(d), "count": c, "amount": _money(a)}
        for d, c, a in (
            db.query(day, func.count(models.Payment.id), func.coalesce(func.sum(models.Payment.amount), 0))
            .filter(models.Payment.created_at >= since)
            .group_by(day)
            .order_by(day)
            .all()
        )
    ]

    recent = (
        db.query(models.Payment)
        .options(selectinload(models.Payment.client), selectinload(models.Payment.professional))
        .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
        .limit(10)
        .all()
    )
    return {
        "totalRevenue": _money(revenue),
        "platformFees": _money(platform_fees),
        "totalPayments": sum(counts.values()),
        "pendingPayments": counts[PaymentStatus.PENDING_PAYMENT.value],
        "releasedPayments": counts[PaymentStatus.RELEASED.value],
        "cancelledPayments": counts[PaymentStatus.CANCELLED.value],
        "statusCounts": counts,
        "paymentsPerDay": per_day,
        "recentPayments": [
            {
                "id": p.id,
                "appointmentId": p.appointment_id,
                "amount": _money(p.amount),
                "status": PaymentStatus(p.status).value,
                "client": p.client.full_name if p.client else None,
                "professional": p.professional.full_name if p.professional else None,
                "createdAt": p.created_at.isoformat() if p.created_at else None,
            }
            for p in recent
        ],
    }
