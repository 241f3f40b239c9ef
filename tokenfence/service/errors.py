from __future__ import annotations

from typing import Optional

# Every credential failure reaches the caller with this one message
UNIFORM_AUTH_MESSAGE = "invalid or expired token"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredential(AuthenticationError):
    """A credential failed signature, structure or expiry checks.

    ``reason`` names the failing check for server-side logs only; the message
    and detail exposed to callers are identical for every subclass.
    """

    reason = "invalid"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(UNIFORM_AUTH_MESSAGE)
        if reason:
            self.reason = reason


class TokenMalformed(InvalidCredential):
    reason = "malformed"


class TokenSignatureInvalid(InvalidCredential):
    reason = "bad_signature"


class TokenExpired(InvalidCredential):
    reason = "expired"


class Revoked(AuthenticationError):
    """Credential was blacklisted or issued before the subject's fence (401)."""

    def __init__(self, reason: str = "revoked") -> None:
        super().__init__(UNIFORM_AUTH_MESSAGE)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate unique field (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "UNIFORM_AUTH_MESSAGE",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredential",
    "TokenMalformed",
    "TokenSignatureInvalid",
    "TokenExpired",
    "Revoked",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
