from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on.
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


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; the two are never distinguished (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidTokenError(ServiceError):
    """Malformed, expired, wrongly signed or consumed token (401)."""
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountSuspendedError(ServiceError):
    status_code = 403
    error_code = "account_suspended"


class AccountInactiveError(ServiceError):
    status_code = 403
    error_code = "account_inactive"


class EmailVerificationRequiredError(ServiceError):
    status_code = 403
    error_code = "email_verification_required"


class TwoFactorRequiredError(ServiceError):
    status_code = 400
    error_code = "two_factor_required"


class InvalidTwoFactorError(ServiceError):
    status_code = 400
    error_code = "invalid_two_factor"


class ForbiddenError(ServiceError):
    """Access denied by role, permission, condition or organization scope (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str = "forbidden", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class TooManyAttemptsError(ServiceError):
    """Rate limit or challenge attempt budget exhausted (429)."""
    status_code = 429
    error_code = "too_many_attempts"

    def __init__(
        self, message: str = "too many attempts", *, retry_after: Optional[int] = None, **kwargs
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.detail.setdefault("retry_after", retry_after)


class UpstreamUnavailableError(ServiceError):
    """Credential store or dispatch gateway timed out or failed (500)."""
    status_code = 500
    error_code = "upstream_unavailable"

    def __init__(self, message: str = "temporarily unavailable, retry later", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


ERROR_CODES = frozenset(
    cls.error_code
    for cls in (
        ServiceError,
        ValidationError,
        InvalidCredentialsError,
        InvalidTokenError,
        AccountSuspendedError,
        AccountInactiveError,
        EmailVerificationRequiredError,
        TwoFactorRequiredError,
        InvalidTwoFactorError,
        ForbiddenError,
        NotFoundError,
        ConflictError,
        TooManyAttemptsError,
        UpstreamUnavailableError,
        ServerError,
    )
) | {"unauthorized"}


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "AccountSuspendedError",
    "AccountInactiveError",
    "EmailVerificationRequiredError",
    "TwoFactorRequiredError",
    "InvalidTwoFactorError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "TooManyAttemptsError",
    "UpstreamUnavailableError",
    "ServerError",
    "ERROR_CODES",
]
