from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from edugate.service.errors import ERROR_CODES
from edugate.service.mfa import MFASetup, MFAStatus
from edugate.service.sessions import SecuritySummary
from edugate.service.tokens import TokenPair
from edugate.service.validation import (
    validate_email,
    validate_name,
    validate_password_strength,
)
from edugate.storage.models import MFAChallenge, MFAMethod, Session, TrustedDevice, User

_VALID_ERROR_CODES = ERROR_CODES | {"server_error"}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _Request(BaseModel):
    # camelCase and snake_case field names are both accepted
    model_config = ConfigDict(populate_by_name=True, str_max_length=4096)


class RegisterRequest(_Request):
    email: str
    password: str
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    organization_slug: Optional[str] = Field(default=None, alias="organizationSlug", max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return validate_name(value)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., min_length=1, max_length=128)
    two_factor_code: Optional[str] = Field(default=None, alias="twoFactorCode", max_length=16)
    remember_me: bool = Field(default=False, alias="rememberMe")

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return validate_email(value)


class RefreshRequest(_Request):
    refresh_token: str = Field(..., alias="refreshToken", max_length=2048)


class LogoutRequest(_Request):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=2048)


class ForgotPasswordRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return validate_email(value)


class ResetPasswordRequest(_Request):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)


class VerifyEmailRequest(_Request):
    token: str = Field(..., min_length=1, max_length=256)


class ResendVerificationRequest(ForgotPasswordRequest):
    pass


class TwoFactorCodeRequest(_Request):
    code: str = Field(..., min_length=6, max_length=16)


class TwoFactorDisableRequest(_Request):
    code: Optional[str] = Field(default=None, max_length=16)
    password: Optional[str] = Field(default=None, max_length=128)


class ChallengeRequest(_Request):
    method: MFAMethod


class VerifyChallengeRequest(_Request):
    challenge_id: str = Field(..., alias="challengeId", max_length=64)
    code: str = Field(..., min_length=6, max_length=16)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int
    remember_me: bool = False

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
            remember_me=pair.remember_me,
        )


class UserProfile(BaseModel):
    """Sanitized user: never the password hash, MFA secret or backup codes."""

    id: str
    email: str
    role: str
    status: str
    organization_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    mfa_enabled: bool = False
    email_verified: bool = False
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            email=user.email,
            role=getattr(user.role, "value", user.role),
            status=getattr(user.status, "value", user.status),
            organization_id=user.organization_id,
            first_name=user.first_name,
            last_name=user.last_name,
            mfa_enabled=user.mfa_enabled,
            email_verified=user.email_verified,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class AuthResponse(BaseModel):
    user: UserProfile
    tokens: Optional[TokenResponse] = None
    session_id: Optional[str] = None
    session_token: Optional[str] = None
    session_expires_at: Optional[datetime] = None
    verification_pending: bool = False


class MessageResponse(BaseModel):
    message: str


class TwoFactorSetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    backup_codes: List[str]

    @classmethod
    def from_setup(cls, setup: MFASetup) -> "TwoFactorSetupResponse":
        return cls(
            secret=setup.secret,
            provisioning_uri=setup.provisioning_uri,
            backup_codes=list(setup.backup_codes),
        )


class TwoFactorStatusResponse(BaseModel):
    state: str
    enabled: bool
    methods: List[str] = Field(default_factory=list)
    backup_codes_remaining: int = 0
    last_used_at: Optional[datetime] = None
    recovery_email: Optional[str] = None
    recovery_phone: Optional[str] = None

    @classmethod
    def from_status(cls, status: MFAStatus) -> "TwoFactorStatusResponse":
        return cls(
            state=status.state.value,
            enabled=status.enabled,
            methods=list(status.methods),
            backup_codes_remaining=status.backup_codes_remaining,
            last_used_at=status.last_used_at,
            recovery_email=status.recovery_email,
            recovery_phone=status.recovery_phone,
        )


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class ChallengeResponse(BaseModel):
    challenge_id: str
    method: str
    expires_at: datetime

    @classmethod
    def from_challenge(cls, challenge: MFAChallenge) -> "ChallengeResponse":
        return cls(
            challenge_id=challenge.id,
            method=challenge.method.value,
            expires_at=challenge.expires_at,
        )


class DeviceResponse(BaseModel):
    device_id: str
    platform: str
    browser: str
    os: str
    device_type: str
    trusted_at: Optional[datetime] = None

    @classmethod
    def from_trusted(cls, trusted: TrustedDevice) -> "DeviceResponse":
        return cls(
            device_id=trusted.device_id,
            platform=trusted.device.platform,
            browser=trusted.device.browser,
            os=trusted.device.os,
            device_type=trusted.device.device_type,
            trusted_at=trusted.trusted_at,
        )


class SessionResponse(BaseModel):
    id: str
    device_id: str
    platform: str
    browser: str
    os: str
    device_type: str
    ip: str
    country: Optional[str] = None
    city: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool
    is_current: bool = False
    is_trusted_device: bool = False
    login_method: str = "password"

    @classmethod
    def from_session(cls, session: Session, *, current_session_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            device_id=session.device_id,
            platform=session.device.platform,
            browser=session.device.browser,
            os=session.device.os,
            device_type=session.device.device_type,
            ip=session.location.ip,
            country=session.location.country,
            city=session.location.city,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            expires_at=session.expires_at,
            is_active=session.is_active,
            is_current=session.id == current_session_id,
            is_trusted_device=session.metadata.is_trusted_device,
            login_method=session.metadata.login_method,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class SuspiciousActivityResponse(BaseModel):
    multiple_locations: bool
    unusual_devices: bool


class SecuritySummaryResponse(BaseModel):
    active_sessions: int
    total_sessions: int
    last_login_at: Optional[datetime] = None
    unique_devices: int
    unique_locations: int
    suspicious_activity: SuspiciousActivityResponse
    failed_logins: int

    @classmethod
    def from_summary(cls, summary: SecuritySummary) -> "SecuritySummaryResponse":
        return cls(
            active_sessions=summary.active_sessions,
            total_sessions=summary.total_sessions,
            last_login_at=summary.last_login_at,
            unique_devices=summary.unique_devices,
            unique_locations=summary.unique_locations,
            suspicious_activity=SuspiciousActivityResponse(
                multiple_locations=summary.suspicious_activity.multiple_locations,
                unusual_devices=summary.suspicious_activity.unusual_devices,
            ),
            failed_logins=summary.failed_logins,
        )
