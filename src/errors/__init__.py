"""Error handling framework for Dreamie Exchange.

This package provides:
- Error code registry with E-XXXX format codes
- Typed domain exceptions carrying registry codes

Error categories:
- E-1xxx: Trade state conflicts
- E-2xxx: Validation errors
- E-3xxx: Messaging errors
- E-4xxx: System/internal errors
- E-5xxx: Authorization errors
"""

from src.errors.domain import (
    AuthorizationError,
    ConflictError,
    DomainError,
    NotFoundError,
    ValidationError,
)
from src.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    get_error,
    get_errors_by_category,
    render_error,
)

__all__ = [
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "render_error",
    # Domain exceptions
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "AuthorizationError",
]
