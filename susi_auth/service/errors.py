from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error carries a stable ``error_code`` that clients switch on:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - unavailable (503)

    ``kind`` narrows the code for callers that need it (``Expired`` versus
    ``Invalid`` tokens) and ``retryable`` marks transient failures.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: str = "Validation"
    retryable: bool = False

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


class InvalidOrExpiredTokenError(ValidationError):
    """Password reset token is unknown, used or past its expiry."""
    kind = "InvalidOrExpiredToken"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = "Unauthenticated"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two cases are indistinguishable."""
    kind = "InvalidCredentials"


class InvalidTOTPError(AuthenticationError):
    kind = "InvalidTOTP"


class InvalidTokenError(AuthenticationError):
    """Access token is malformed, forged or names an unknown subject."""
    kind = "InvalidToken"


class TokenExpiredError(InvalidTokenError):
    kind = "Expired"


class InvalidRefreshTokenError(AuthenticationError):
    kind = "InvalidRefreshToken"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = "Forbidden"


class AccountNotActiveError(ForbiddenError):
    kind = "AccountNotActive"


class InsufficientPrivilegeError(ForbiddenError):
    kind = "InsufficientPrivilege"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = "NotFound"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    kind = "Conflict"


class DuplicateEmailError(ConflictError):
    kind = "DuplicateEmail"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = "RateLimited"
    retryable = True


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    kind = "Internal"


class InternalError(ServerError):
    """Unexpected failure in hashing, signing or the store."""


class UnavailableError(ServiceError):
    """A dependency did not answer within its time bound (503)."""
    status_code = 503
    error_code = "unavailable"
    kind = "Unavailable"
    retryable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTOTPError",
    "InvalidTokenError",
    "TokenExpiredError",
    "InvalidRefreshTokenError",
    "ForbiddenError",
    "AccountNotActiveError",
    "InsufficientPrivilegeError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "RateLimitedError",
    "ServerError",
    "InternalError",
    "UnavailableError",
]
