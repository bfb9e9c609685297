import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models

logger = logging.getLogger(__name__)

_ACTIVE = (models.AppointmentStatus.PENDING, models.AppointmentStatus.CONFIRMED)


def recompute_user_metrics(db: Session, user_id: int) -> Optional[dict]:
    """Refresh the denormalized appointment counters stored on ``users.metrics``.

    Does not commit; the caller owns the transaction.
    """
    user = db.get(models.User, user_id)
    if user is None:
        return None
    if user.role == models.UserRole.PROFESSIONAL:
        owner = models.Appointment.professional_id
    else:
        owner = models.Appointment.client_id

    base = db.query(models.Appointment).filter(owner == user_id)
    metrics = {
        "completedAppointments": base.filter(
            models.Appointment.status == models.AppointmentStatus.COMPLETED
        ).count(),
        "activeAppointments": base.filter(models.Appointment.status.in_(_ACTIVE)).count(),
        "allAppointments": base.count(),
    }
    if user.role == models.UserRole.PROFESSIONAL:
        metrics["totalClients"] = (
            db.query(func.count(func.distinct(models.Appointment.client_id)))
            .filter(owner == user_id)
            .scalar()
            or 0
        )
    user.metrics = metrics
    logger.debug("Recomputed metrics for user %s: %s", user_id, metrics)
    return metrics


def recompute_for_users(db: Session, user_ids: Iterable[Optional[int]]) -> None:
    for user_id in dict.fromkeys(uid for uid in user_ids if uid):
        recompute_user_metrics(db, user_id)
