import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session, selectinload

from .. import models
from ..core.config import settings
from ..models import AppointmentStatus, PaymentStatus
from ..utils.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from ..utils.notifications import notify_users
from . import escrow
from .payment_gateway import PaymentGateway
from .pricing import get_professional, load_pricing_config, compute_pricing
from .user_metrics import recompute_for_users

logger = logging.getLogger(__name__)

# Listing views accepted alongside the raw status values
STATUS_VIEWS = {
    "requests": (AppointmentStatus.PENDING,),
    "active": (AppointmentStatus.CONFIRMED,),
    "completed": (AppointmentStatus.COMPLETED,),
    "cancelled": (AppointmentStatus.CANCELLED,),
}


def scheduled_start_for(appointment_date: date, appointment_time: str, tz: Optional[str] = None) -> datetime:
    """Combine the booking date with an ``HH:MM`` 24h time.

    The wall-clock time is read in ``tz`` (``settings.TIMEZONE`` by default)
    and returned as naive UTC, the same clock the auto-complete sweep uses.
    """
    try:
        parsed = datetime.strptime(appointment_time.strip(), "%H:%M").time()
    except (AttributeError, ValueError):
        raise ValidationError("appointmentTime must be in HH:MM format")
    local = datetime.combine(appointment_date, parsed, tzinfo=ZoneInfo(tz or settings.TIMEZONE))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def _get_appointment(db: Session, appointment_id: int) -> models.Appointment:
    appointment = db.get(models.Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    return appointment


def _set_status(
    db: Session,
    appointment_id: int,
    expected: Iterable[AppointmentStatus],
    target: AppointmentStatus,
) -> bool:
    expected = tuple(expected)
    updated = (
        db.query(models.Appointment)
        .filter(models.Appointment.id == appointment_id, models.Appointment.status.in_(expected))
        .update({"status": target, "updated_at": datetime.utcnow()}, synchronize_session=False)
    )
    if updated:
        logger.info("Appointment id=%s status changed to %s", appointment_id, target.value)
    return bool(updated)


def _load_services(db: Session, professional_id: int, service_ids: Sequence[int]) -> list[models.Service]:
    ids = list(dict.fromkeys(service_ids or []))
    if not ids:
        return []
    services = db.query(models.Service).filter(models.Service.id.in_(ids)).all()
    if len(services) != len(ids):
        raise ValidationError("One or more services do not exist")
    if any(s.professional_id != professional_id for s in services):
        raise ValidationError("Services must belong to the selected professional")
    return services


def create_appointment(db: Session, gateway: PaymentGateway, client: models.User, payload):
    """Book ``payload`` for ``client`` and open its payment intent.

    The appointment and its payment are committed together; if the processor
    call or the insert fails nothing is persisted. Returns
    ``(appointment, payment, client_secret)``.
    """
    professional = get_professional(db, payload.professional_id)
    services = _load_services(db, professional.id, payload.service_ids)
    pricing = compute_pricing(professional.hourly_rate, payload.duration, load_pricing_config(db))
    start = scheduled_start_for(payload.appointment_date, payload.appointment_time)

    try:
        appointment = models.Appointment(
            client_id=client.id,
            professional_id=professional.id,
            booking_ref=uuid.uuid4().hex,
            appointment_date=payload.appointment_date,
            appointment_time=payload.appointment_time.strip(),
            scheduled_start=start,
            duration=pricing.duration,
            issue=payload.issue,
            location=payload.location,
            total_price=pricing.total_price,
            tax_amount=pricing.tax_amount,
            platform_fee=pricing.platform_fee,
            professional_earnings=pricing.professional_earnings,
            status=AppointmentStatus.PENDING,
        )
        appointment.services = services
        db.add(appointment)
        db.flush()
        payment = escrow.create_intent(db, gateway, appointment)
        recompute_for_users(db, (client.id, professional.id))
        db.commit()
    except Exception:
        db.rollback()
        logger.warning("Appointment creation for client %s rolled back", client.id, exc_info=True)
        raise

    db.refresh(appointment)
    db.refresh(payment)
    client_secret = payment.client_secret
    logger.info(
        "Appointment id=%s created for client %s with professional %s (payment %s)",
        appointment.id,
        client.id,
        professional.id,
        payment.id,
    )
    notify_users(
        db,
        [professional.id],
        models.NotificationType.APPOINTMENT_CREATED,
        related_id=appointment.id,
        appointment_id=appointment.id,
    )
    notify_users(
        db,
        [professional.id],
        models.NotificationType.PAYMENT_INITIATED,
        related_id=payment.id,
        appointment_id=appointment.id,
    )
    return appointment, payment, client_secret


def confirm(db: Session, appointment_id: int, professional: models.User) -> models.Appointment:
    appointment = _get_appointment(db, appointment_id)
    if appointment.professional_id != professional.id:
        raise ForbiddenError("Only the assigned professional can confirm this appointment")
    if appointment.status == AppointmentStatus.CONFIRMED:
        return appointment
    if appointment.status != AppointmentStatus.PENDING:
        raise ConflictError(f"Cannot confirm an appointment that is {AppointmentStatus(appointment.status).value}")

    if not _set_status(db, appointment.id, (AppointmentStatus.PENDING,), AppointmentStatus.CONFIRMED):
        db.rollback()
        db.refresh(appointment)
        if appointment.status == AppointmentStatus.CONFIRMED:
            return appointment
        raise ConflictError("Appointment was modified concurrently; please retry")
    db.commit()
    db.refresh(appointment)
    _notify_status(db, appointment)
    return appointment


def _settle_payment(db: Session, gateway: PaymentGateway, appointment: models.Appointment) -> None:
    """Unwind the payment of an appointment being cancelled. Does not commit."""
    payment = appointment.payment
    if payment is None:
        return
    current = PaymentStatus(payment.status)
    if current == PaymentStatus.PENDING_PAYMENT:
        escrow.apply_cancel(db, gateway, payment)
    elif current == PaymentStatus.PAID:
        escrow.apply_refund(db, gateway, payment, PaymentStatus.PAID)
    elif current == PaymentStatus.DISPUTED:
        raise ConflictError("Appointment has an open payment dispute")


def _cancel(
    db: Session,
    gateway: PaymentGateway,
    appointment: models.Appointment,
    allowed: tuple[AppointmentStatus, ...],
) -> models.Appointment:
    if appointment.status not in allowed:
        raise ConflictError(f"Cannot cancel an appointment that is {AppointmentStatus(appointment.status).value}")
    if appointment.payment is not None and appointment.payment.status == PaymentStatus.DISPUTED:
        raise ConflictError("Appointment has an open payment dispute")
    try:
        if not _set_status(db, appointment.id, allowed, AppointmentStatus.CANCELLED):
            raise ConflictError("Appointment was modified concurrently; please retry")
        _settle_payment(db, gateway, appointment)
        recompute_for_users(db, (appointment.client_id, appointment.professional_id))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(appointment)
    _notify_status(db, appointment)
    return appointment


def reject(
    db: Session,
    gateway: PaymentGateway,
    appointment_id: int,
    professional: models.User,
) -> models.Appointment:
    appointment = _get_appointment(db, appointment_id)
    if appointment.professional_id != professional.id:
        raise ForbiddenError("Only the assigned professional can reject this appointment")
    return _cancel(db, gateway, appointment, (AppointmentStatus.PENDING,))


def cancel(
    db: Session,
    gateway: PaymentGateway,
    appointment_id: int,
    client: models.User,
) -> models.Appointment:
    appointment = _get_appointment(db, appointment_id)
    if appointment.client_id != client.id:
        raise ForbiddenError("Only the client who booked can cancel this appointment")
    return _cancel(
        db,
        gateway,
        appointment,
        (AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED),
    )


def auto_complete(db: Session, now: Optional[datetime] = None) -> list[int]:
    """Complete every confirmed appointment whose scheduled end is in the past.
    ``now`` is naive UTC, matching ``scheduled_start``.

    Safe to run repeatedly and concurrently: each row flips with a
    conditional update, so a second sweep finds nothing to do.
    """
    now = now or datetime.utcnow()
    candidates = (
        db.query(models.Appointment)
        .filter(
            models.Appointment.status == AppointmentStatus.CONFIRMED,
            models.Appointment.scheduled_start < now,
        )
        .all()
    )
    completed: list[int] = []
    parties: list[int] = []
    for appointment in candidates:
        end = appointment.scheduled_start + timedelta(hours=float(appointment.duration))
        if end >= now:
            continue
        if _set_status(db, appointment.id, (AppointmentStatus.CONFIRMED,), AppointmentStatus.COMPLETED):
            completed.append(appointment.id)
            parties.extend((appointment.client_id, appointment.professional_id))
    if not completed:
        db.rollback()
        return completed
    recompute_for_users(db, parties)
    db.commit()
    logger.info("Auto-completed %d appointment(s): %s", len(completed), completed)
    for appointment_id in completed:
        appointment = db.get(models.Appointment, appointment_id)
        _notify_status(db, appointment)
    return completed


def _notify_status(db: Session, appointment: models.Appointment) -> None:
    notify_users(
        db,
        (appointment.client_id, appointment.professional_id),
        models.NotificationType.APPOINTMENT_STATUS_UPDATED,
        related_id=appointment.id,
        appointment_id=appointment.id,
        status=AppointmentStatus(appointment.status).value,
    )


def _resolve_statuses(status: Optional[str]) -> Optional[tuple[AppointmentStatus, ...]]:
    if not status:
        return None
    key = status.strip().lower()
    if key in STATUS_VIEWS:
        return STATUS_VIEWS[key]
    for member in AppointmentStatus:
        if member.value.lower() == key:
            return (member,)
    raise ValidationError(f"Unknown appointment status filter: {status}")


def list_for_user(
    db: Session,
    user: models.User,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[models.Appointment], int]:
    """Return one page of the user's appointments, newest first, and the total count."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")
    query = db.query(models.Appointment)
    role = models.UserRole(user.role)
    if role == models.UserRole.PROFESSIONAL:
        query = query.filter(models.Appointment.professional_id == user.id)
    elif not role.is_admin:
        query = query.filter(models.Appointment.client_id == user.id)
    statuses = _resolve_statuses(status)
    if statuses:
        query = query.filter(models.Appointment.status.in_(statuses))
    total = query.count()
    items = (
        query.options(selectinload(models.Appointment.services), selectinload(models.Appointment.payment))
        .order_by(models.Appointment.scheduled_start.desc(), models.Appointment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def get_for_user(db: Session, appointment_id: int, user: models.User) -> models.Appointment:
    appointment = _get_appointment(db, appointment_id)
    if not models.UserRole(user.role).is_admin and user.id not in (
        appointment.client_id,
        appointment.professional_id,
    ):
        raise ForbiddenError("You do not have access to this appointment")
    return appointment
