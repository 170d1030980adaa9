from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from edugate.config import Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, Enum):
    PENDING_VERIFICATION = "pending-verification"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


@dataclass
class Organization:
    id: str
    name: str
    slug: str
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class User:
    """Durable credential record."""

    id: str
    email: str
    password_hash: str
    role: Role = Role.STUDENT
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    organization_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def email_verified(self) -> bool:
        return self.email_verified_at is not None


@dataclass(frozen=True)
class DeviceInfo:
    user_agent: str = ""
    platform: str = "unknown"
    browser: str = "unknown"
    os: str = "unknown"
    device_type: str = "desktop"

    @property
    def fingerprint(self) -> str:
        """Deterministic one-way device id from platform, browser and OS."""
        raw = f"{self.platform}-{self.browser}-{self.os}"
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    @classmethod
    def from_user_agent(cls, user_agent: Optional[str]) -> "DeviceInfo":
        ua = user_agent or ""
        lowered = ua.lower()

        if "edg/" in lowered:
            browser = "edge"
        elif "firefox/" in lowered:
            browser = "firefox"
        elif "chrome/" in lowered or "crios/" in lowered:
            browser = "chrome"
        elif "safari/" in lowered:
            browser = "safari"
        else:
            browser = "unknown"

        if "windows" in lowered:
            os_name = "windows"
        elif "iphone" in lowered or "ipad" in lowered:
            os_name = "ios"
        elif "mac os" in lowered or "macintosh" in lowered:
            os_name = "macos"
        elif "android" in lowered:
            os_name = "android"
        elif "linux" in lowered:
            os_name = "linux"
        else:
            os_name = "unknown"

        if "ipad" in lowered or "tablet" in lowered:
            device_type = "tablet"
        elif "mobile" in lowered or "iphone" in lowered or "android" in lowered:
            device_type = "mobile"
        else:
            device_type = "desktop"

        platform = {"ios": "ios", "android": "android"}.get(os_name, "web")
        return cls(
            user_agent=ua,
            platform=platform,
            browser=browser,
            os=os_name,
            device_type=device_type,
        )


@dataclass(frozen=True)
class Location:
    ip: str = ""
    country: Optional[str] = None
    city: Optional[str] = None
    timezone: Optional[str] = None


@dataclass
class SessionMetadata:
    login_method: str = "password"
    is_trusted_device: bool = False
    requires_mfa: bool = False
    mfa_verified: bool = False
    remember_me: bool = False


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    device: DeviceInfo
    location: Location
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    is_active: bool = True
    deactivated_at: Optional[datetime] = None
    deactivation_reason: Optional[str] = None

    @property
    def device_id(self) -> str:
        return self.device.fingerprint

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        device: DeviceInfo,
        location: Location,
        created_at: datetime,
        expires_at: datetime,
        metadata: Optional[SessionMetadata] = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            device=device,
            location=location,
            created_at=created_at,
            expires_at=expires_at,
            last_activity_at=created_at,
            metadata=metadata or SessionMetadata(),
        )


@dataclass(frozen=True)
class SessionActivity:
    session_id: str
    user_id: str
    action: str
    ip: str
    timestamp: datetime
    resource: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict] = None


@dataclass(frozen=True)
class TrustedDevice:
    device_id: str
    user_id: str
    device: DeviceInfo
    trusted_at: datetime


class MFAState(str, Enum):
    UNCONFIGURED = "unconfigured"
    PROVISIONED = "provisioned"
    ENABLED = "enabled"
    DISABLED = "disabled"


class MFAMethod(str, Enum):
    TOTP = "totp"
    SMS = "sms"
    EMAIL = "email"


@dataclass
class MFASecret:
    id: str
    user_id: str
    secret: str
    backup_code_hashes: List[str] = field(default_factory=list)
    state: MFAState = MFAState.PROVISIONED
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    last_used_step: Optional[int] = None
    recovery_email: Optional[str] = None
    recovery_phone: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.state == MFAState.ENABLED


@dataclass
class MFAChallenge:
    id: str
    user_id: str
    method: MFAMethod
    expires_at: datetime
    max_attempts: int
    # sha256 of the dispatched code; None for totp
    code_digest: Optional[str] = None
    attempts: int = 0
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RateLimitEntry:
    key: str
    count: int
    reset_at: float
    blocked_until: Optional[float] = None
