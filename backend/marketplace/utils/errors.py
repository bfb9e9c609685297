from typing import Optional
from fastapi import status


class DomainError(Exception):
    """Base class for failures raised by the pricing/appointment/escrow services.

    Each subclass maps to one HTTP status; routers let these propagate and the
    handler registered in ``main`` renders ``{"success": false, "message": ...}``.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(DomainError):
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT


class UpstreamError(DomainError):
    """The payment processor call failed or timed out.

    ``retryable`` is set for timeouts: the charge may have gone through
    upstream, so local state is left untouched and the caller should retry.
    """

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, correlation_id: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.correlation_id = correlation_id
        self.retryable = retryable
        if retryable:
            self.status_code = status.HTTP_504_GATEWAY_TIMEOUT

