import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Text
from sqlalchemy.orm import relationship

from .base import BaseModel
from .types import CaseInsensitiveEnum


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REFUNDED = "refunded"


class Dispute(BaseModel):
    __tablename__ = "disputes"

    id = Column(Integer, primary_key=True, index=True)
    # One dispute per payment
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, unique=True, index=True)
    raised_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    message = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=True)  # list of image references
    status = Column(
        CaseInsensitiveEnum(DisputeStatus, name="disputestatus"),
        nullable=False,
        default=DisputeStatus.PENDING,
    )
    resolution = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    payment = relationship("Payment", back_populates="dispute")
    raised_by = relationship("User")
