from __future__ import annotations

from typing import Any, Optional

from sockauth.logging import sanitize_error_message


class ServiceError(Exception):
    """Base class for authentication errors delivered to socket clients.

    Each subclass carries a ``status_code``, a stable ``error_code`` and the
    ``error_type`` name clients see in the normalized error payload.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    error_type: str = "BadRequest"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail if detail is not None else {}


class ValidationError(ServiceError):
    """Request is missing or malformed (400)."""
    status_code = 400
    error_code = "validation_error"
    error_type = "BadRequest"


class ConfigurationError(ServiceError):
    """Requested strategy or collaborator is not configured (500)."""
    status_code = 500
    error_code = "configuration_error"
    error_type = "ConfigurationError"


class NotAuthenticated(ServiceError):
    """Credentials rejected or the strategy flow cannot complete (401)."""
    status_code = 401
    error_code = "unauthorized"
    error_type = "NotAuthenticated"


class CollaboratorError(ServiceError):
    """Token service or strategy registry failed unexpectedly (502)."""
    status_code = 502
    error_code = "collaborator_error"
    error_type = "CollaboratorError"


class TokenStoreError(CollaboratorError):
    """Token persistence backend could not complete an operation."""


class ConstraintViolation(ServiceError):
    """A user record would break a uniqueness or reference rule (409)."""
    status_code = 409
    error_code = "conflict"
    error_type = "Conflict"


def normalize_error(exc: BaseException) -> dict[str, Any]:
    """Convert any exception into the stable ``{type, message, code, data}`` shape.

    Service errors keep their own type, status code and detail. Anything else
    is reported as a ``GeneralError`` with a sanitized message so clients never
    see implementation-specific exception objects.
    """
    if isinstance(exc, ServiceError):
        return {
            "type": exc.error_type,
            "message": exc.message,
            "code": exc.status_code,
            "data": exc.detail or None,
        }
    return {
        "type": "GeneralError",
        "message": sanitize_error_message(str(exc)),
        "code": 500,
        "data": None,
    }


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConfigurationError",
    "NotAuthenticated",
    "CollaboratorError",
    "TokenStoreError",
    "ConstraintViolation",
    "normalize_error",
]
