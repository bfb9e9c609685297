from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.dispute import DisputeStatus
from ..models.payment import PaymentStatus


class PaymentIntentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    appointment_id: int = Field(alias="appointmentId")


class DisputeCreate(BaseModel):
    message: str = Field(min_length=1)
    evidence: List[str] = Field(default_factory=list)


class DisputeResolve(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    resolution: str = Field(min_length=1)
    refund_client: bool = Field(alias="refundClient")


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: int = Field(serialization_alias="paymentId")
    raised_by_id: int = Field(serialization_alias="raisedBy")
    message: str
    evidence: Optional[List[str]] = None
    status: DisputeStatus
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = Field(default=None, serialization_alias="resolvedAt")
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    appointment_id: int = Field(serialization_alias="appointmentId")
    client_id: int = Field(serialization_alias="clientId")
    professional_id: int = Field(serialization_alias="professionalId")
    amount: float
    platform_fee: float = Field(serialization_alias="platformFee")
    tax_amount: float = Field(serialization_alias="taxAmount")
    professional_earnings: float = Field(serialization_alias="professionalEarnings")
    currency: str
    status: PaymentStatus
    payment_intent_id: str = Field(serialization_alias="paymentIntentId")
    transfer_id: Optional[str] = Field(default=None, serialization_alias="transferId")
    refund_id: Optional[str] = Field(default=None, serialization_alias="refundId")
    payment_method: Optional[str] = Field(default=None, serialization_alias="paymentMethod")
    transaction_id: Optional[str] = Field(default=None, serialization_alias="transactionId")
    client_approval: bool = Field(serialization_alias="clientApproval")
    dispute: Optional[DisputeResponse] = None
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, serialization_alias="updatedAt")
