import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import models
from ..database import get_db
from ..schemas import AppointmentCostRequest, AppointmentCreate, AppointmentResponse
from ..services import appointments as appointment_service
from ..services.payment_gateway import PaymentGateway, get_payment_gateway
from ..services.pricing import quote_for_professional
from .dependencies import (
    get_current_client,
    get_current_professional,
    get_current_user,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["appointments"])


def _serialize(appointment: models.Appointment) -> dict:
    return AppointmentResponse.from_model(appointment).model_dump(by_alias=True, mode="json")


@router.post("", status_code=status.HTTP_201_CREATED)
def create_appointment(
    payload: AppointmentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_client),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """Book an appointment and open its payment intent.

    The response carries the processor client secret the frontend needs to
    collect the card payment.
    """
    appointment, payment, client_secret = appointment_service.create_appointment(
        db, gateway, current_user, payload
    )
    return {
        "success": True,
        "message": "Appointment created successfully",
        "appointment": _serialize(appointment),
        "payment_id": payment.id,
        "clientSecret": client_secret,
    }


@router.post("/cost")
def calculate_cost(
    payload: AppointmentCostRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    breakdown = quote_for_professional(db, payload.professional_id, payload.duration)
    return {
        "success": True,
        "message": "Appointment cost calculated successfully",
        "data": breakdown.as_payload(),
    }


@router.get("")
def list_appointments(
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    items, total = appointment_service.list_for_user(db, current_user, status_filter, page, limit)
    return {
        "success": True,
        "data": [_serialize(a) for a in items],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    appointment = appointment_service.get_for_user(db, appointment_id, current_user)
    return {"success": True, "data": _serialize(appointment)}


@router.put("/{appointment_id}/confirm")
def confirm_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_professional),
):
    appointment = appointment_service.confirm(db, appointment_id, current_user)
    return {"success": True, "message": "Appointment confirmed", "data": _serialize(appointment)}


@router.put("/{appointment_id}/reject")
def reject_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_professional),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    appointment = appointment_service.reject(db, gateway, appointment_id, current_user)
    return {"success": True, "message": "Appointment rejected", "data": _serialize(appointment)}


@router.put("/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_client),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    appointment = appointment_service.cancel(db, gateway, appointment_id, current_user)
    return {"success": True, "message": "Appointment cancelled", "data": _serialize(appointment)}
