from .errors import (
    DomainError,
    ValidationError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    UpstreamError,
)
from .auth import normalize_email
