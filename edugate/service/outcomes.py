from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from edugate.service.errors import (
    AccountInactiveError,
    AccountSuspendedError,
    ConflictError,
    EmailVerificationRequiredError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTwoFactorError,
    NotFoundError,
    ServiceError,
    TooManyAttemptsError,
    TwoFactorRequiredError,
    UpstreamUnavailableError,
    ValidationError,
)
from edugate.service.sessions import CreatedSession
from edugate.service.tokens import TokenPair
from edugate.storage.models import Session, User


class FailureKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_VERIFICATION_REQUIRED = "email_verification_required"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    INVALID_TWO_FACTOR = "invalid_two_factor"
    INVALID_TOKEN = "invalid_token"
    RATE_LIMITED = "too_many_attempts"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation_error"
    FORBIDDEN = "forbidden"


_ERRORS = {
    FailureKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    FailureKind.ACCOUNT_SUSPENDED: AccountSuspendedError,
    FailureKind.ACCOUNT_INACTIVE: AccountInactiveError,
    FailureKind.EMAIL_VERIFICATION_REQUIRED: EmailVerificationRequiredError,
    FailureKind.TWO_FACTOR_REQUIRED: TwoFactorRequiredError,
    FailureKind.INVALID_TWO_FACTOR: InvalidTwoFactorError,
    FailureKind.INVALID_TOKEN: InvalidTokenError,
    FailureKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailableError,
    FailureKind.NOT_FOUND: NotFoundError,
    FailureKind.CONFLICT: ConflictError,
    FailureKind.VALIDATION: ValidationError,
    FailureKind.FORBIDDEN: ForbiddenError,
}

_MESSAGES = {
    FailureKind.INVALID_CREDENTIALS: "invalid email or password",
    FailureKind.ACCOUNT_SUSPENDED: "account suspended",
    FailureKind.ACCOUNT_INACTIVE: "account inactive",
    FailureKind.EMAIL_VERIFICATION_REQUIRED: "email verification required",
    FailureKind.TWO_FACTOR_REQUIRED: "two-factor code required",
    FailureKind.INVALID_TWO_FACTOR: "invalid two-factor code",
    FailureKind.INVALID_TOKEN: "invalid token",
    FailureKind.RATE_LIMITED: "too many attempts",
    FailureKind.UPSTREAM_UNAVAILABLE: "temporarily unavailable, retry later",
    FailureKind.NOT_FOUND: "not found",
    FailureKind.CONFLICT: "conflict",
    FailureKind.VALIDATION: "invalid request",
    FailureKind.FORBIDDEN: "forbidden",
}


class LoginStage(str, Enum):
    SUBMITTED = "submitted"
    CREDENTIAL_CHECKED = "credential_checked"
    MFA_REQUIRED = "mfa_required"
    MFA_CHECKED = "mfa_checked"
    TOKENS_ISSUED = "tokens_issued"


@dataclass(frozen=True)
class AuthFailure:
    """Expected flow failure; ``to_error`` turns it into the HTTP-mapped exception."""

    kind: FailureKind
    message: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def detail(self) -> str:
        return self.message or _MESSAGES[self.kind]

    def to_error(self) -> ServiceError:
        if self.kind == FailureKind.RATE_LIMITED:
            return TooManyAttemptsError(self.detail, retry_after=self.retry_after)
        return _ERRORS[self.kind](self.detail)

    @classmethod
    def from_error(cls, exc: ServiceError) -> "AuthFailure":
        if isinstance(exc, TooManyAttemptsError):
            return cls(FailureKind.RATE_LIMITED, exc.message, retry_after=exc.retry_after)
        return cls(FailureKind(exc.error_code), exc.message)


@dataclass(frozen=True)
class LoginSuccess:
    user: User
    session: Session
    tokens: TokenPair
    session_token: str

    @classmethod
    def from_created(cls, user: User, created: CreatedSession) -> "LoginSuccess":
        return cls(
            user=user,
            session=created.session,
            tokens=created.tokens,
            session_token=created.session_token,
        )


@dataclass(frozen=True)
class RegisterSuccess:
    user: User
    verification_pending: bool
    tokens: Optional[TokenPair] = None
    session: Optional[Session] = None
    session_token: Optional[str] = None


@dataclass(frozen=True)
class RefreshSuccess:
    tokens: TokenPair
    session_id: str


@dataclass(frozen=True)
class Completed:
    """Flow finished with nothing further to return."""

    message: str = "ok"


LoginOutcome = Union[LoginSuccess, AuthFailure]
RegisterOutcome = Union[RegisterSuccess, AuthFailure]
RefreshOutcome = Union[RefreshSuccess, AuthFailure]
FlowOutcome = Union[Completed, AuthFailure]


__all__ = [
    "FailureKind",
    "LoginStage",
    "AuthFailure",
    "LoginSuccess",
    "RegisterSuccess",
    "RefreshSuccess",
    "Completed",
    "LoginOutcome",
    "RegisterOutcome",
    "RefreshOutcome",
    "FlowOutcome",
]
