from .appointment import (
    AppointmentCreate,
    AppointmentCostRequest,
    AppointmentResponse,
    ServiceSummary,
)
from .payment import (
    PaymentIntentRequest,
    PaymentResponse,
    DisputeCreate,
    DisputeResolve,
    DisputeResponse,
    RefundRequest,
)
from .tax import TaxConfigCreate, TaxConfigResponse
from .token import Token
