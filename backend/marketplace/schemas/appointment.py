from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models.appointment import AppointmentStatus


# Properties to receive on creation (from a client)
class AppointmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    professional_id: int = Field(alias="professionalId")
    service_ids: List[int] = Field(default_factory=list, alias="serviceIds")
    service_id: Optional[int] = Field(default=None, alias="serviceId")
    duration: Decimal = Field(gt=0)
    appointment_date: date = Field(alias="appointmentDate")
    appointment_time: str = Field(alias="appointmentTime", pattern=r"^\s*\d{1,2}:\d{2}\s*$")
    issue: str = Field(min_length=1)
    location: Optional[str] = None

    @model_validator(mode="after")
    def merge_single_service(self):
        # Accept either a single serviceId or a serviceIds list
        if self.service_id is not None and self.service_id not in self.service_ids:
            self.service_ids = [self.service_id, *self.service_ids]
        return self


class AppointmentCostRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    professional_id: int = Field(alias="professionalId")
    duration: Decimal = Field(gt=0)


class ServiceSummary(BaseModel):
    id: int
    name: str

    model_config = {"from_attributes": True}


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    client_id: int = Field(serialization_alias="clientId")
    professional_id: int = Field(serialization_alias="professionalId")
    appointment_date: date = Field(serialization_alias="appointmentDate")
    appointment_time: str = Field(serialization_alias="appointmentTime")
    scheduled_start: datetime = Field(serialization_alias="scheduledStart")
    duration: float
    issue: str
    location: Optional[str] = None
    status: AppointmentStatus
    total_price: float = Field(serialization_alias="totalPrice")
    tax_amount: float = Field(serialization_alias="taxAmount")
    platform_fee: float = Field(serialization_alias="platformFee")
    professional_earnings: float = Field(serialization_alias="professionalEarnings")
    services: List[ServiceSummary] = Field(default_factory=list)
    payment_id: Optional[int] = Field(default=None, serialization_alias="paymentId")
    payment_status: Optional[str] = Field(default=None, serialization_alias="paymentStatus")
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")

    @field_validator("duration", "total_price", "tax_amount", "platform_fee", "professional_earnings")
    @classmethod
    def two_places(cls, value: float) -> float:
        return round(value, 2)

    @classmethod
    def from_model(cls, appointment) -> "AppointmentResponse":
        data = cls.model_validate(appointment)
        payment = appointment.payment
        if payment is not None:
            data.payment_id = payment.id
            data.payment_status = getattr(payment.status, "value", payment.status)
        return data
