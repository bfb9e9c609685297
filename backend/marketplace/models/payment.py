# backend/marketplace/models/payment.py

import enum

from sqlalchemy import Boolean, Column, Integer, Numeric, ForeignKey, String
from sqlalchemy.orm import relationship

from .base import BaseModel
from .types import CaseInsensitiveEnum


class PaymentStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"  # client still has to pay
    PAID = "paid"                        # funds held in escrow
    RELEASED = "released"                # transferred to the professional
    REFUNDED = "refunded"                # returned to the client
    DISPUTED = "disputed"                # frozen until an admin resolves it
    CANCELLED = "cancelled"
    FAILED = "failed"


class Payment(BaseModel):
    __tablename__ = "payments"

    id              = Column(Integer, primary_key=True, index=True)
    client_id       = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    appointment_id  = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)

    amount                = Column(Numeric(10, 2), nullable=False)
    platform_fee          = Column(Numeric(10, 2), nullable=False)
    tax_amount            = Column(Numeric(10, 2), nullable=False, default=0)
    professional_earnings = Column(Numeric(10, 2), nullable=False)
    currency              = Column(String(3), nullable=False, default="USD")

    payment_intent_id = Column(String, nullable=False, unique=True, index=True)
    client_secret     = Column(String, nullable=True)
    transfer_id       = Column(String, nullable=True)
    refund_id         = Column(String, nullable=True)
    payment_method    = Column(String, nullable=True)
    transaction_id    = Column(String, nullable=True)

    status = Column(
        CaseInsensitiveEnum(PaymentStatus, name="paymentstatus"),
        nullable=False,
        default=PaymentStatus.PENDING_PAYMENT,
        index=True,
    )
    client_approval = Column(Boolean, nullable=False, default=False)

    client       = relationship("User", foreign_keys=[client_id])
    professional = relationship("User", foreign_keys=[professional_id])
    appointment  = relationship("Appointment", back_populates="payment")
    dispute      = relationship("Dispute", back_populates="payment", uselist=False)
