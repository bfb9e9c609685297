"""Payment escrow state machine.

Funds move ``pending_payment -> paid`` when the processor confirms the
charge, then leave escrow exactly once: released to the professional or
refunded to the client. Every status write is a compare-and-swap on the
current status so concurrent callers cannot both win a transition.
"""

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..models import PaymentStatus
from ..utils.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from ..utils.notifications import notify_users
from .payment_gateway import PaymentGateway
from .user_metrics import recompute_for_users

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING_PAYMENT: frozenset(
        {PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PAID: frozenset(
        {PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.DISPUTED}
    ),
    PaymentStatus.DISPUTED: frozenset({PaymentStatus.RELEASED, PaymentStatus.REFUNDED}),
    PaymentStatus.RELEASED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def transition(
    db: Session,
    payment_id: int,
    expected: PaymentStatus,
    target: PaymentStatus,
    **values: Any,
) -> bool:
    """Move ``payment_id`` from ``expected`` to ``target`` if it is still ``expected``.

    Returns ``False`` when another writer changed the row first. Raises
    ``ConflictError`` for an edge missing from ``ALLOWED_TRANSITIONS``.
    Does not commit.
    """
    if not can_transition(expected, target):
        raise ConflictError(
            f"Payment cannot move from {expected.value} to {target.value}"
        )
    changes = {"status": target, "updated_at": datetime.utcnow()}
    changes.update(values)
    updated = (
        db.query(models.Payment)
        .filter(models.Payment.id == payment_id, models.Payment.status == expected)
        .update(changes, synchronize_session=False)
    )
    if updated:
        # Bulk updates bypass the attribute listeners
        logger.info(
            "Payment id=%s status changed from %s to %s",
            payment_id,
            expected.value,
            target.value,
        )
    return bool(updated)


def _require(db: Session, payment_id: int, expected: PaymentStatus, target: PaymentStatus, **values: Any) -> None:
    if not transition(db, payment_id, expected, target, **values):
        db.rollback()
        raise ConflictError("Payment was modified concurrently; please retry")


def _get_payment(db: Session, payment_id: int) -> models.Payment:
    payment = db.get(models.Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def _is_admin(user: Optional[models.User]) -> bool:
    return user is not None and models.UserRole(user.role).is_admin


def _require_admin(user: Optional[models.User]) -> None:
    if not _is_admin(user):
        raise ForbiddenError("Only admins can perform this action")


def _expect_status(payment: models.Payment, *allowed: PaymentStatus, action: str) -> PaymentStatus:
    current = PaymentStatus(payment.status)
    if current not in allowed:
        raise ConflictError(f"Cannot {action} a payment in status {current.value}")
    return current


def _parties(payment: models.Payment) -> Iterable[int]:
    return (payment.client_id, payment.professional_id)


def _complete_appointment(db: Session, appointment_id: int) -> None:
    updated = (
        db.query(models.Appointment)
        .filter(
            models.Appointment.id == appointment_id,
            models.Appointment.status.in_(
                (models.AppointmentStatus.PENDING, models.AppointmentStatus.CONFIRMED)
            ),
        )
        .update(
            {"status": models.AppointmentStatus.COMPLETED, "updated_at": datetime.utcnow()},
            synchronize_session=False,
        )
    )
    if updated:
        logger.info("Appointment id=%s completed on payment release", appointment_id)


def create_intent(db: Session, gateway: PaymentGateway, appointment: models.Appointment) -> models.Payment:
    """Open the processor payment intent for ``appointment`` and persist it.

    The processor is called first; the local row is only flushed once the
    intent exists. The caller commits.
    """
    existing = (
        db.query(models.Payment.id)
        .filter(models.Payment.appointment_id == appointment.id)
        .first()
    )
    if existing is not None:
        raise ConflictError("A payment already exists for this appointment")

    professional = appointment.professional or db.get(models.User, appointment.professional_id)
    if professional is None or not professional.stripe_account_id:
        raise UpstreamError("Professional has not set up a payout account")

    currency = settings.DEFAULT_CURRENCY
    intent = gateway.create_payment_intent(
        amount=appointment.total_price,
        currency=currency,
        metadata={
            "appointment_id": appointment.id,
            "client_id": appointment.client_id,
            "professional_id": appointment.professional_id,
            "booking_ref": appointment.booking_ref,
        },
        idempotency_key=f"intent-appointment-{appointment.booking_ref}",
        description=f"Appointment #{appointment.id}",
    )
    if not intent.get("id"):
        raise UpstreamError("Payment processor returned no intent id")

    payment = models.Payment(
        client_id=appointment.client_id,
        professional_id=appointment.professional_id,
        appointment_id=appointment.id,
        amount=appointment.total_price,
        platform_fee=appointment.platform_fee,
        tax_amount=appointment.tax_amount,
        professional_earnings=appointment.professional_earnings,
        currency=currency,
        payment_intent_id=intent["id"],
        client_secret=intent.get("client_secret"),
        status=PaymentStatus.PENDING_PAYMENT,
    )
    db.add(payment)
    try:
        db.flush()
    except IntegrityError:
        raise ConflictError("A payment already exists for this appointment")
    logger.info(
        "Payment id=%s created for appointment %s (intent %s)",
        payment.id,
        appointment.id,
        payment.payment_intent_id,
    )
    return payment


def intent_for_client(
    db: Session,
    gateway: PaymentGateway,
    appointment_id: int,
    client: models.User,
) -> models.Payment:
    """Return the open intent for the client's appointment, creating it if needed."""
    appointment = db.get(models.Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Appointment not found")
    if appointment.client_id != client.id:
        raise ForbiddenError("You can only pay for your own appointments")
    payment = appointment.payment
    if payment is not None:
        if payment.status != PaymentStatus.PENDING_PAYMENT:
            raise ConflictError(f"Payment is already {PaymentStatus(payment.status).value}")
        return payment
    if appointment.status in (models.AppointmentStatus.CANCELLED, models.AppointmentStatus.COMPLETED):
        raise ConflictError("Appointment is no longer payable")
    try:
        payment = create_intent(db, gateway, appointment)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    notify_users(
        db,
        [payment.professional_id],
        models.NotificationType.PAYMENT_INITIATED,
        related_id=payment.id,
        appointment_id=appointment.id,
    )
    return payment


def approve(db: Session, payment_id: int, client: models.User) -> models.Payment:
    """Record the client's approval of the work. Advisory only."""
    payment = _get_payment(db, payment_id)
    if payment.client_id != client.id:
        raise ForbiddenError("Only the client of this payment can approve it")
    _expect_status(payment, PaymentStatus.PAID, action="approve")
    updated = (
        db.query(models.Payment)
        .filter(models.Payment.id == payment.id, models.Payment.status == PaymentStatus.PAID)
        .update({"client_approval": True}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        raise ConflictError("Payment was modified concurrently; please retry")
    db.commit()
    db.refresh(payment)
    notify_users(
        db,
        [payment.professional_id],
        models.NotificationType.WORK_APPROVED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return payment


def apply_release(
    db: Session,
    gateway: PaymentGateway,
    payment: models.Payment,
    expected: PaymentStatus,
) -> str:
    """Transfer the professional's earnings and mark the payment released.

    On any processor failure the payment keeps ``expected``. Does not commit.
    """
    professional = payment.professional or db.get(models.User, payment.professional_id)
    if professional is None or not professional.stripe_account_id:
        raise UpstreamError("Professional has no payout account to release funds to")
    transfer = gateway.create_transfer(
        amount=payment.professional_earnings,
        currency=payment.currency,
        destination=professional.stripe_account_id,
        metadata={"payment_id": payment.id, "appointment_id": payment.appointment_id},
        idempotency_key=f"release-{payment.id}",
    )
    transfer_id = transfer.get("id")
    if not transfer_id:
        raise UpstreamError("Payment processor returned no transfer id")
    if not transition(db, payment.id, expected, PaymentStatus.RELEASED, transfer_id=transfer_id):
        db.rollback()
        logger.error(
            "Transfer %s issued for payment %s but the payment left %s concurrently",
            transfer_id,
            payment.id,
            expected.value,
        )
        raise ConflictError("Payment was modified concurrently; please retry")
    _complete_appointment(db, payment.appointment_id)
    recompute_for_users(db, _parties(payment))
    return transfer_id


def apply_refund(
    db: Session,
    gateway: PaymentGateway,
    payment: models.Payment,
    expected: PaymentStatus,
    reason: str = "requested_by_customer",
) -> str:
    """Refund the client's charge and mark the payment refunded. Does not commit."""
    refund = gateway.create_refund(
        payment_intent_id=payment.payment_intent_id,
        idempotency_key=f"refund-{payment.id}",
        reason=reason,
        metadata={"payment_id": payment.id},
    )
    refund_id = refund.get("id")
    if not refund_id:
        raise UpstreamError("Payment processor returned no refund id")
    if not transition(db, payment.id, expected, PaymentStatus.REFUNDED, refund_id=refund_id):
        db.rollback()
        logger.error(
            "Refund %s issued for payment %s but the payment left %s concurrently",
            refund_id,
            payment.id,
            expected.value,
        )
        raise ConflictError("Payment was modified concurrently; please retry")
    return refund_id


def apply_cancel(db: Session, gateway: PaymentGateway, payment: models.Payment) -> None:
    """Cancel an unpaid intent. The upstream cancel is best-effort. Does not commit."""
    try:
        gateway.cancel_payment_intent(payment.payment_intent_id)
    except UpstreamError as exc:
        logger.warning(
            "Could not cancel intent %s upstream for payment %s: %s",
            payment.payment_intent_id,
            payment.id,
            exc.message,
        )
    _require(db, payment.id, PaymentStatus.PENDING_PAYMENT, PaymentStatus.CANCELLED)


def release(db: Session, gateway: PaymentGateway, payment_id: int, admin: models.User) -> models.Payment:
    _require_admin(admin)
    payment = _get_payment(db, payment_id)
    _expect_status(payment, PaymentStatus.PAID, action="release")
    try:
        apply_release(db, gateway, payment, PaymentStatus.PAID)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    notify_users(
        db,
        _parties(payment),
        models.NotificationType.PAYMENT_RELEASED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return payment


def refund(
    db: Session,
    gateway: PaymentGateway,
    payment_id: int,
    actor: Optional[models.User],
    reason: Optional[str] = None,
) -> models.Payment:
    """Refund a ``paid`` payment. ``actor=None`` is a system refund."""
    if actor is not None:
        _require_admin(actor)
    payment = _get_payment(db, payment_id)
    _expect_status(payment, PaymentStatus.PAID, action="refund")
    try:
        apply_refund(db, gateway, payment, PaymentStatus.PAID)
        db.commit()
    except Exception:
        db.rollback()
        raise
    if reason:
        logger.info("Payment id=%s refunded: %s", payment.id, reason)
    db.refresh(payment)
    notify_users(
        db,
        _parties(payment),
        models.NotificationType.PAYMENT_REFUNDED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return payment


def cancel(
    db: Session,
    gateway: PaymentGateway,
    payment_id: int,
    actor: Optional[models.User],
) -> models.Payment:
    payment = _get_payment(db, payment_id)
    if actor is not None and not _is_admin(actor) and actor.id != payment.client_id:
        raise ForbiddenError("Only the client or an admin can cancel this payment")
    _expect_status(payment, PaymentStatus.PENDING_PAYMENT, action="cancel")
    try:
        apply_cancel(db, gateway, payment)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(payment)
    notify_users(
        db,
        _parties(payment),
        models.NotificationType.PAYMENT_CANCELLED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return payment


def create_dispute(
    db: Session,
    payment_id: int,
    raiser: models.User,
    message: str,
    evidence: Optional[list[str]] = None,
) -> models.Dispute:
    payment = _get_payment(db, payment_id)
    if raiser.id not in (payment.client_id, payment.professional_id):
        raise ForbiddenError("Only the client or the professional can dispute this payment")
    if not message or not message.strip():
        raise ValidationError("Dispute message is required")
    _expect_status(payment, PaymentStatus.PAID, action="dispute")
    if payment.dispute is not None:
        raise ConflictError("A dispute already exists for this payment")

    dispute = models.Dispute(
        payment_id=payment.id,
        raised_by_id=raiser.id,
        message=message.strip(),
        evidence=list(evidence or []),
        status=models.DisputeStatus.PENDING,
    )
    try:
        db.add(dispute)
        db.flush()
        _require(db, payment.id, PaymentStatus.PAID, PaymentStatus.DISPUTED)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("A dispute already exists for this payment")
    except Exception:
        db.rollback()
        raise
    db.refresh(dispute)
    other = payment.professional_id if raiser.id == payment.client_id else payment.client_id
    admin_ids = [
        uid
        for (uid,) in db.query(models.User.id).filter(
            models.User.role.in_((models.UserRole.ADMIN, models.UserRole.SUPER_ADMIN))
        )
    ]
    notify_users(
        db,
        [other, *admin_ids],
        models.NotificationType.DISPUTE_RAISED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return dispute


def resolve_dispute(
    db: Session,
    gateway: PaymentGateway,
    payment_id: int,
    admin: models.User,
    resolution: str,
    refund_client: bool,
) -> models.Payment:
    """Close the dispute on ``payment_id`` by refunding the client or paying out.

    Either branch is terminal; resolving an already resolved payment raises
    ``ConflictError``.
    """
    _require_admin(admin)
    payment = _get_payment(db, payment_id)
    _expect_status(payment, PaymentStatus.DISPUTED, action="resolve")
    dispute = payment.dispute
    try:
        if refund_client:
            apply_refund(db, gateway, payment, PaymentStatus.DISPUTED)
            dispute_status = models.DisputeStatus.REFUNDED
        else:
            apply_release(db, gateway, payment, PaymentStatus.DISPUTED)
            dispute_status = models.DisputeStatus.RESOLVED
        if dispute is not None:
            (
                db.query(models.Dispute)
                .filter(models.Dispute.id == dispute.id)
                .update(
                    {
                        "status": dispute_status,
                        "resolution": resolution,
                        "resolved_at": datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(
        "Dispute on payment %s resolved by admin %s (%s)",
        payment.id,
        admin.id,
        "refund" if refund_client else "release",
    )
    db.refresh(payment)
    notify_users(
        db,
        _parties(payment),
        models.NotificationType.DISPUTE_RESOLVED,
        related_id=payment.id,
        payment_id=payment.id,
        resolution=resolution,
    )
    return payment


def get_payment_for_user(db: Session, payment_id: int, user: models.User) -> models.Payment:
    payment = _get_payment(db, payment_id)
    if not _is_admin(user) and user.id not in (payment.client_id, payment.professional_id):
        raise ForbiddenError("You do not have access to this payment")
    return payment


def list_disputes(
    db: Session,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[models.Dispute], int]:
    """Admin view of disputes, newest first, with the total count."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")
    query = db.query(models.Dispute)
    if status:
        key = status.strip().lower()
        matches = [member for member in models.DisputeStatus if member.value == key]
        if not matches:
            raise ValidationError(f"Unknown dispute status filter: {status}")
        query = query.filter(models.Dispute.status == matches[0])
    total = query.count()
    items = (
        query.order_by(models.Dispute.created_at.desc(), models.Dispute.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total
