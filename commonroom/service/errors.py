from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines both an HTTP ``status_code`` and a stable
    ``error_code``. Identity and permission failures keep distinct codes so
    operators can tell bad data apart from legitimate denials:

    - unauthenticated (401): missing, malformed or expired credential
    - identity_not_found (401): valid credential, no corroborated user
    - permission_denied (403): authenticated, role not allowed
    - channel_not_found (404)
    - invalid_channel_type (400): stored channel carries an unknown type
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class Unauthenticated(ServiceError):
    """Bearer credential missing, malformed, tampered or expired (401)."""
    status_code = 401
    error_code = "unauthenticated"


class IdentityNotFound(ServiceError):
    """Credential verified but no durable user corroborates it (401)."""
    status_code = 401
    error_code = "identity_not_found"


class PermissionDenied(ServiceError):
    """Well-formed request, insufficient role (403)."""
    status_code = 403
    error_code = "permission_denied"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ChannelNotFound(NotFoundError):
    error_code = "channel_not_found"


class InvalidChannelType(ServiceError):
    """A channel carries a type outside the closed enumeration (400).

    This is a data-integrity problem, not a permission decision.
    """
    status_code = 400
    error_code = "invalid_channel_type"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "Unauthenticated",
    "IdentityNotFound",
    "PermissionDenied",
    "NotFoundError",
    "ChannelNotFound",
    "InvalidChannelType",
    "ConflictError",
    "ServerError",
]
