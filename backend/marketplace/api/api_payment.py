import asyncio
import logging

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .. import models
from ..core.config import settings
from ..database import get_db
from ..schemas import (
    DisputeCreate,
    DisputeResolve,
    DisputeResponse,
    PaymentIntentRequest,
    PaymentResponse,
    RefundRequest,
)
from ..services import escrow
from ..services.payment_gateway import (
    PaymentGateway,
    WebhookSignatureError,
    construct_event,
    get_payment_gateway,
)
from ..services.webhooks import handle_processor_event
from .dependencies import get_current_admin, get_current_client, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def _serialize(payment: models.Payment) -> dict:
    return PaymentResponse.model_validate(payment).model_dump(by_alias=True, mode="json")


@router.post("/webhook")
async def processor_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_signature: str | None = Header(default=None),
):
    """Receive processor events.

    - Verifies the ``Stripe-Signature`` HMAC of the raw body.
    - Applies the event through the idempotent reconciliation handler.
    - Always answers 200 once authenticated, so the processor stops retrying
      events that do not match local state.
    """
    raw = await request.body()
    try:
        event = construct_event(
            raw,
            stripe_signature,
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
        )
    except WebhookSignatureError as exc:
        logger.warning("Processor webhook rejected: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": f"Webhook Error: {exc}"},
        )
    outcome = await asyncio.to_thread(handle_processor_event, db, event)
    logger.debug("Webhook %s handled: %s", event.get("id"), outcome)
    return {"received": True}


@router.post("/intent")
def create_payment_intent(
    payload: PaymentIntentRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_client),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = escrow.intent_for_client(db, gateway, payload.appointment_id, current_user)
    return {
        "success": True,
        "clientSecret": payment.client_secret,
        "paymentId": payment.id,
    }


@router.get("/{payment_id}")
def get_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    payment = escrow.get_payment_for_user(db, payment_id, current_user)
    return {"success": True, "data": _serialize(payment)}


@router.post("/{payment_id}/approve")
def approve_work(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_client),
):
    payment = escrow.approve(db, payment_id, current_user)
    return {"success": True, "message": "Work approved", "data": _serialize(payment)}


@router.post("/{payment_id}/dispute", status_code=status.HTTP_201_CREATED)
def create_dispute(
    payment_id: int,
    payload: DisputeCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    dispute = escrow.create_dispute(db, payment_id, current_user, payload.message, payload.evidence)
    return {
        "success": True,
        "message": "Dispute created",
        "data": DisputeResponse.model_validate(dispute).model_dump(by_alias=True, mode="json"),
    }


@router.post("/{payment_id}/release")
def release_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = escrow.release(db, gateway, payment_id, current_user)
    return {"success": True, "message": "Payment released", "data": _serialize(payment)}


@router.post("/{payment_id}/refund")
def refund_payment(
    payment_id: int,
    payload: RefundRequest | None = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    reason = payload.reason if payload else None
    payment = escrow.refund(db, gateway, payment_id, current_user, reason)
    return {"success": True, "message": "Payment refunded", "data": _serialize(payment)}


@router.post("/{payment_id}/resolve")
def resolve_dispute(
    payment_id: int,
    payload: DisputeResolve,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_admin),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = escrow.resolve_dispute(
        db, gateway, payment_id, current_user, payload.resolution, payload.refund_client
    )
    return {"success": True, "message": "Dispute resolved", "data": _serialize(payment)}


@router.post("/{payment_id}/cancel")
def cancel_payment(
    payment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    payment = escrow.cancel(db, gateway, payment_id, current_user)
    return {"success": True, "message": "Payment cancelled", "data": _serialize(payment)}
