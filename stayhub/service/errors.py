from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins a stable ``error_code`` that clients can switch on,
    together with the HTTP ``status_code`` used at the response boundary.
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


class MissingFieldsError(ValidationError):
    error_code = "missing_fields"


class InvalidEmailError(ValidationError):
    error_code = "invalid_email"


class InvalidPhoneError(ValidationError):
    error_code = "invalid_phone"


class InvalidPasswordError(ValidationError):
    """Password is too short or mixes too few character classes."""
    error_code = "invalid_password"


class InvalidTokenError(ValidationError):
    """A token passed as an argument (verification link, revoke body) is unusable."""
    error_code = "invalid_token"


class InvalidRefreshTokenError(ValidationError):
    error_code = "invalid_refresh_token"


class InvalidResetTokenError(ValidationError):
    """Reset token is forged, expired or already used."""
    error_code = "invalid_reset_token"


class EmailAlreadyVerifiedError(ValidationError):
    error_code = "email_verified"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthorizedError(AuthenticationError):
    """No caller could be resolved for the request."""


class InvalidCredentialsError(AuthenticationError):
    """Unknown identity or wrong password; both report the same message."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRejectedError(AuthenticationError):
    """Presented bearer token was refused.

    ``reason`` keeps the precise cause for logs; every subclass answers with
    the same 401 ``unauthorized`` code.
    """
    reason: str = "invalid"


class TokenInvalidError(TokenRejectedError):
    reason = "invalid"


class TokenExpiredError(TokenRejectedError):
    reason = "expired"


class TokenRevokedError(TokenRejectedError):
    reason = "revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBannedError(ForbiddenError):
    error_code = "account_banned"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UserExistsError(ConflictError):
    error_code = "user_exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EmailDeliveryError(ServerError):
    """Outbound mail could not be handed to the SMTP relay."""
    status_code = 502
    error_code = "email_delivery_failed"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingFieldsError",
    "InvalidEmailError",
    "InvalidPhoneError",
    "InvalidPasswordError",
    "InvalidTokenError",
    "InvalidRefreshTokenError",
    "InvalidResetTokenError",
    "EmailAlreadyVerifiedError",
    "AuthenticationError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "TokenRejectedError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "AccountBannedError",
    "NotFoundError",
    "UserNotFoundError",
    "ConflictError",
    "UserExistsError",
    "RateLimitedError",
    "ServerError",
    "EmailDeliveryError",
]
