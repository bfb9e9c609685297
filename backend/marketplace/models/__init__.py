from .user import User, UserRole, PayoutStatus
from .service import Service
from .appointment import Appointment, AppointmentStatus, appointment_services
from .payment import Payment, PaymentStatus
from .dispute import Dispute, DisputeStatus
from .tax_config import TaxConfig
from .notification import Notification, NotificationType

__all__ = [
    "User",
    "UserRole",
    "PayoutStatus",
    "Service",
    "Appointment",
    "AppointmentStatus",
    "appointment_services",
    "Payment",
    "PaymentStatus",
    "Dispute",
    "DisputeStatus",
    "TaxConfig",
    "Notification",
    "NotificationType",
]
