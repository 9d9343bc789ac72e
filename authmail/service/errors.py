from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    ``reason`` is a finer-grained machine key (``auth.login.accountLocked``)
    so clients can tell a bad password from a locked or pending account.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: Optional[str] = None
    default_message: str = "request failed"

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
        self.detail = dict(detail or {})
        if self.reason and "reason" not in self.detail:
            self.detail["reason"] = self.reason


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is well-formed but cannot be applied in the current state."""
    pass


class InvalidFormat(ValidationError):
    """A duration or other structured value does not match its format."""
    reason = "format.invalid"
    default_message = "invalid format"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class InvalidCredentials(AuthenticationError):
    reason = "auth.login.invalidCredentials"
    default_message = "invalid credentials"


class AccountLocked(AuthenticationError):
    """Account is temporarily locked after repeated failed logins."""

    reason = "auth.login.accountLocked"
    default_message = "account locked"

    def __init__(self, minutes_left: int, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail["minutes_left"] = minutes_left
        super().__init__(
            f"account locked, try again in {minutes_left} minutes",
            detail=detail,
            **kwargs,
        )
        self.minutes_left = minutes_left


class AccountPending(AuthenticationError):
    reason = "auth.login.accountPending"
    default_message = "account pending verification"


class AccountSuspended(AuthenticationError):
    reason = "auth.login.accountSuspended"
    default_message = "account suspended"


class AccountInactive(AuthenticationError):
    reason = "auth.login.accountInactive"
    default_message = "account inactive"


class TokenInvalid(AuthenticationError):
    reason = "auth.token.invalid"
    default_message = "invalid token"


class TokenExpired(AuthenticationError):
    reason = "auth.token.expired"
    default_message = "token expired"


class TokenRevoked(AuthenticationError):
    reason = "auth.token.revoked"
    default_message = "token revoked"


class TokenReuseDetected(TokenRevoked):
    """A rotated-away refresh token was replayed; its descendants are revoked."""

    reason = "auth.token.reuseDetected"
    default_message = "token revoked, possible reuse detected"


class InvalidResetCode(AuthenticationError):
    reason = "password.invalidCode"
    default_message = "invalid or expired reset code"


class VerificationCodeInvalid(BadRequestError):
    reason = "verification.codeInvalid"
    default_message = "verification code missing or expired"


class VerificationCodeIncorrect(BadRequestError):
    reason = "verification.codeIncorrect"
    default_message = "verification code incorrect"


class AlreadyVerified(BadRequestError):
    reason = "verification.alreadyVerified"
    default_message = "email already verified"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class UserNotFound(NotFoundError):
    reason = "user.notFound"
    default_message = "user not found"


class SessionNotFound(NotFoundError):
    reason = "session.notFound"
    default_message = "session not found"


class TokenNotFound(NotFoundError):
    reason = "token.notFound"
    default_message = "token not found"


class TemplateNotFound(NotFoundError):
    reason = "email.templateNotFound"
    default_message = "email template not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class EmailExists(ConflictError):
    reason = "user.emailExists"
    default_message = "email already registered"


class UsernameExists(ConflictError):
    reason = "user.usernameExists"
    default_message = "username already taken"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "rate limit exceeded"


class DeliveryError(ServiceError):
    """Outbound transport rejected or failed a send; retried by the mail worker."""
    status_code = 502
    error_code = "server_error"
    default_message = "delivery failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidFormat",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountPending",
    "AccountSuspended",
    "AccountInactive",
    "TokenInvalid",
    "TokenExpired",
    "TokenRevoked",
    "TokenReuseDetected",
    "InvalidResetCode",
    "VerificationCodeInvalid",
    "VerificationCodeIncorrect",
    "AlreadyVerified",
    "ForbiddenError",
    "NotFoundError",
    "UserNotFound",
    "SessionNotFound",
    "TokenNotFound",
    "TemplateNotFound",
    "ConflictError",
    "EmailExists",
    "UsernameExists",
    "RateLimitedError",
    "DeliveryError",
    "ServerError",
]
