import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ..models import Notification, NotificationType

logger = logging.getLogger(__name__)


def alert_scheduler_failure(exc: Exception) -> None:
    """Emit an error log when a background scheduler run fails."""
    logger.exception("Scheduler run failed: %s", exc)


def format_notification_message(ntype: NotificationType, **kwargs: str | int | None) -> str:
    """Return a human friendly notification message."""
    if ntype == NotificationType.APPOINTMENT_CREATED:
        return f"New appointment request #{kwargs.get('appointment_id')}"
    if ntype == NotificationType.APPOINTMENT_STATUS_UPDATED:
        return f"Appointment #{kwargs.get('appointment_id')} is now {kwargs.get('status')}"
    if ntype == NotificationType.PAYMENT_INITIATED:
        return f"New payment initiated for appointment #{kwargs.get('appointment_id')}"
    if ntype == NotificationType.PAYMENT_RECEIVED:
        return f"Payment #{kwargs.get('payment_id')} received and held in escrow"
    if ntype == NotificationType.PAYMENT_FAILED:
        return f"Payment #{kwargs.get('payment_id')} failed"
    if ntype == NotificationType.PAYMENT_CANCELLED:
        return f"Payment #{kwargs.get('payment_id')} was cancelled"
    if ntype == NotificationType.WORK_APPROVED:
        return f"Client approved work completion for payment #{kwargs.get('payment_id')}"
    if ntype == NotificationType.PAYMENT_RELEASED:
        return f"Payment #{kwargs.get('payment_id')} released to the professional"
    if ntype == NotificationType.PAYMENT_REFUNDED:
        return f"Payment #{kwargs.get('payment_id')} refunded to the client"
    if ntype == NotificationType.DISPUTE_RAISED:
        return f"New dispute raised for payment #{kwargs.get('payment_id')}"
    if ntype == NotificationType.DISPUTE_RESOLVED:
        return f"Dispute resolved for payment #{kwargs.get('payment_id')}: {kwargs.get('resolution')}"
    return str(ntype.value)


def notify_users(
    db: Session,
    user_ids: Iterable[Optional[int]],
    ntype: NotificationType,
    related_id: Optional[int] = None,
    **kwargs: str | int | None,
) -> None:
    """Persist one notification per recipient.

    Best-effort: notifications are not part of the consistency contract of the
    transition that fired them, so failures are logged and rolled back only.
    """
    message = format_notification_message(ntype, **kwargs)
    try:
        for user_id in dict.fromkeys(uid for uid in user_ids if uid):
            db.add(Notification(user_id=user_id, type=ntype, message=message, related_id=related_id))
        db.commit()
    except Exception:
        logger.warning("Failed to persist %s notification", ntype.value, exc_info=True)
        db.rollback()
