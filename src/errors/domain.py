"""Typed domain exceptions for API error mapping.

These exceptions provide stronger API contract guarantees than
string-based error message matching. Each carries an E-XXXX registry
code; routes and the application exception handler map the type to an
HTTP status.

Usage:
    # In service layer
    raise ConflictError.from_code("E-1001", trade_id=trade_id, action="accepted")

    # In route handler / exception handler
    except ConflictError as e:
        -> 409 with e.code and str(e)
"""

from src.errors.registry import render_error


class DomainError(Exception):
    """Base exception for all domain errors."""

    default_code = "E-4001"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code

    @classmethod
    def from_code(cls, code: str, **context: object) -> "DomainError":
        """Build the exception from a registry template."""
        return cls(render_error(code, **context), code=code)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    default_code = "E-4004"

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Guard violation: the row is not in the state the caller assumed. Maps to HTTP 409.

    Callers should refetch current state rather than assume their
    intent succeeded.
    """

    default_code = "E-1001"


class ValidationError(DomainError):
    """Validation failure on caller input. Maps to HTTP 400."""

    default_code = "E-2002"


class AuthorizationError(DomainError):
    """Actor may not perform the operation. Maps to HTTP 403.

    Raised before any mutation is attempted.
    """

    default_code = "E-5001"
