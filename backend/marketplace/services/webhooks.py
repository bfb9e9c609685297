"""Reconcile local payment state with processor webhook events.

Events may arrive more than once and in any order. Every handler is a
conditional transition, so a replayed event finds the row already moved
and becomes a no-op. Business-level mismatches are logged, never raised.
"""

import logging
from typing import Any, Mapping

from sqlalchemy.orm import Session

from .. import models
from ..models import PaymentStatus
from ..utils.notifications import notify_users
from . import escrow

logger = logging.getLogger(__name__)


def _payment_for_intent(db: Session, intent_id: Any) -> models.Payment | None:
    if not intent_id:
        return None
    return (
        db.query(models.Payment)
        .filter(models.Payment.payment_intent_id == str(intent_id))
        .first()
    )


def _on_intent_succeeded(db: Session, intent: Mapping[str, Any]) -> str:
    payment = _payment_for_intent(db, intent.get("id"))
    if payment is None:
        logger.warning("payment_intent.succeeded for unknown intent %s", intent.get("id"))
        return "unknown_intent"
    if payment.status != PaymentStatus.PENDING_PAYMENT:
        if payment.status == PaymentStatus.CANCELLED:
            logger.error(
                "Intent %s succeeded but payment %s is cancelled; manual refund required",
                payment.payment_intent_id,
                payment.id,
            )
        return "duplicate"

    method_types = intent.get("payment_method_types") or []
    updated = escrow.transition(
        db,
        payment.id,
        PaymentStatus.PENDING_PAYMENT,
        PaymentStatus.PAID,
        payment_method=method_types[0] if method_types else None,
        transaction_id=intent.get("latest_charge") or intent.get("id"),
    )
    if not updated:
        db.rollback()
        return "duplicate"
    db.commit()
    notify_users(
        db,
        (payment.client_id, payment.professional_id),
        models.NotificationType.PAYMENT_RECEIVED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return "paid"


def _on_intent_failed(db: Session, intent: Mapping[str, Any]) -> str:
    payment = _payment_for_intent(db, intent.get("id"))
    if payment is None:
        logger.warning("payment_intent.payment_failed for unknown intent %s", intent.get("id"))
        return "unknown_intent"
    if not escrow.transition(db, payment.id, PaymentStatus.PENDING_PAYMENT, PaymentStatus.FAILED):
        db.rollback()
        return "duplicate"
    db.commit()
    error = intent.get("last_payment_error") or {}
    logger.info("Payment id=%s failed upstream: %s", payment.id, error.get("message", "unknown"))
    notify_users(
        db,
        [payment.client_id],
        models.NotificationType.PAYMENT_FAILED,
        related_id=payment.id,
        payment_id=payment.id,
    )
    return "failed"


def _on_account_updated(db: Session, account: Mapping[str, Any]) -> str:
    account_id = account.get("id")
    user = (
        db.query(models.User)
        .filter(models.User.stripe_account_id == account_id)
        .first()
        if account_id
        else None
    )
    if user is None:
        logger.warning("account.updated for unknown account %s", account_id)
        return "unknown_account"
    requirements = account.get("requirements") or {}
    user.payout_status = (
        models.PayoutStatus.ENABLED if account.get("charges_enabled") else models.PayoutStatus.PENDING
    )
    user.identity_verified = not requirements.get("disabled_reason")
    db.commit()
    logger.info(
        "Payout account %s for user %s: payout_status=%s identity_verified=%s",
        account_id,
        user.id,
        user.payout_status.value,
        user.identity_verified,
    )
    return "account_updated"


_HANDLERS = {
    "payment_intent.succeeded": _on_intent_succeeded,
    "payment_intent.payment_failed": _on_intent_failed,
    "account.updated": _on_account_updated,
}


def handle_processor_event(db: Session, event: Mapping[str, Any]) -> str:
    """Apply one verified processor event and return an outcome tag."""
    event_type = event.get("type")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring processor event %s (%s)", event.get("id"), event_type)
        return "ignored"
    obj = (event.get("data") or {}).get("object") or {}
    outcome = handler(db, obj)
    logger.info("Processor event %s (%s) -> %s", event.get("id"), event_type, outcome)
    return outcome
