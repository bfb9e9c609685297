# backend/marketplace/models/user.py

from sqlalchemy import Boolean, Column, Integer, String, Numeric, JSON
from sqlalchemy.orm import relationship
from .base import BaseModel
from .types import CaseInsensitiveEnum
import enum


class UserRole(str, enum.Enum):
    """Enumeration of all supported user roles."""

    CLIENT = "Client"
    PROFESSIONAL = "Professional"
    ADMIN = "Admin"
    SUPER_ADMIN = "SuperAdmin"

    @property
    def is_admin(self) -> bool:
        return self in (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class PayoutStatus(str, enum.Enum):
    PENDING = "Pending"
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class User(BaseModel):
    __tablename__ = "users"

    id           = Column(Integer, primary_key=True, index=True)
    email        = Column(String, unique=True, index=True, nullable=False)
    password     = Column(String, nullable=False)
    first_name   = Column(String, nullable=False)
    last_name    = Column(String, nullable=False)
    role         = Column(CaseInsensitiveEnum(UserRole, name="userrole"), nullable=False, default=UserRole.CLIENT)
    is_active    = Column(Boolean, default=True)

    # Professional-only pricing and payout fields
    hourly_rate       = Column(Numeric(10, 2), nullable=True)
    stripe_account_id = Column(String, nullable=True, unique=True, index=True)
    payout_status     = Column(
        CaseInsensitiveEnum(PayoutStatus, name="payoutstatus"),
        nullable=False,
        default=PayoutStatus.PENDING,
    )
    identity_verified = Column(Boolean, default=False, nullable=False)

    # Denormalized counters refreshed by services.user_metrics
    metrics = Column(JSON, nullable=True)

    services = relationship("Service", back_populates="professional")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
