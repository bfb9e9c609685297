# backend/marketplace/models/appointment.py

import enum
import uuid

from sqlalchemy import Column, Integer, Date, DateTime, Numeric, ForeignKey, String, Table, Text
from sqlalchemy.orm import relationship

from .base import BaseModel
from ..database import Base
from .types import CaseInsensitiveEnum


class AppointmentStatus(str, enum.Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


appointment_services = Table(
    "appointment_services",
    Base.metadata,
    Column("appointment_id", Integer, ForeignKey("appointments.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", Integer, ForeignKey("services.id", ondelete="CASCADE"), primary_key=True),
)


class Appointment(BaseModel):
    __tablename__ = "appointments"

    id              = Column(Integer, primary_key=True, index=True)
    client_id       = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    professional_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # Opaque per-booking reference, also the intent idempotency key
    booking_ref     = Column(String(32), nullable=False, unique=True, default=lambda: uuid.uuid4().hex)

    appointment_date = Column(Date, nullable=False)
    appointment_time = Column(String(5), nullable=False)  # HH:MM, 24h
    scheduled_start  = Column(DateTime, nullable=False, index=True)
    duration         = Column(Numeric(6, 2), nullable=False)  # hours
    issue            = Column(Text, nullable=False)
    location         = Column(String, nullable=True)

    # Pricing snapshot, written once at creation
    total_price           = Column(Numeric(10, 2), nullable=False)
    tax_amount            = Column(Numeric(10, 2), nullable=False)
    platform_fee          = Column(Numeric(10, 2), nullable=False)
    professional_earnings = Column(Numeric(10, 2), nullable=False)

    status = Column(
        CaseInsensitiveEnum(AppointmentStatus, name="appointmentstatus"),
        nullable=False,
        default=AppointmentStatus.PENDING,
        index=True,
    )

    client       = relationship("User", foreign_keys=[client_id])
    professional = relationship("User", foreign_keys=[professional_id])
    services     = relationship("Service", secondary=appointment_services)
    payment      = relationship("Payment", back_populates="appointment", uselist=False)

    @property
    def base_price(self):
        return self.professional_earnings + self.platform_fee
