from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class InvalidAuthTokenError(AuthenticationError):
    # Same message for absent, expired and wrong-scope tokens
    default_message = "invalid or missing authentication token"


class AuthenticationRequiredError(AuthenticationError):
    default_message = "you must be authenticated to access this resource"


class InactiveAccountError(AuthenticationError):
    default_message = "your user account must be activated to access this resource"


class NotPermittedError(AuthenticationError):
    default_message = (
        "your user account doesn't have the necessary permissions to access this resource"
    )


class InvalidCredentialsError(AuthenticationError):
    default_message = "invalid credentials"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "the requested resource could not be found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "resource already exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "an internal error occurred"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidAuthTokenError",
    "AuthenticationRequiredError",
    "InactiveAccountError",
    "NotPermittedError",
    "InvalidCredentialsError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
