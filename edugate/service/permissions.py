from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from edugate.config import Role
from edugate.logging import get_logger
from edugate.service.errors import ForbiddenError
from edugate.storage.models import AccountStatus, utcnow

logger = get_logger(__name__)


class Permission(str, Enum):
    COURSE_READ = "course:read"
    COURSE_ENROLL = "course:enroll"
    COURSE_COMPLETE = "course:complete"

    LEARNING_PROGRESS = "learning:progress"
    LEARNING_CERTIFICATE = "learning:certificate"
    LEARNING_REVIEW = "learning:review"
    LEARNING_BOOKMARK = "learning:bookmark"

    USER_PROFILE_UPDATE = "user:profile_update"
    USER_PASSWORD_CHANGE = "user:password_change"
    USER_SETTINGS = "user:settings"

    ASSESSMENT_TAKE = "assessment:take"
    ASSESSMENT_VIEW_RESULTS = "assessment:view_results"
    ASSESSMENT_RETRY = "assessment:retry"

    COURSE_CREATE = "course:create"
    COURSE_UPDATE = "course:update"
    COURSE_DELETE = "course:delete"
    CONTENT_CREATE = "content:create"
    CONTENT_UPDATE = "content:update"
    CONTENT_DELETE = "content:delete"
    STUDENT_PROGRESS_VIEW = "student:progress_view"

    ORG_USERS = "org:users"
    ORG_SETTINGS = "org:settings"

    ADMIN_SYSTEM = "admin:system"
    ADMIN_COURSES = "admin:courses"
    ADMIN_USERS = "admin:users"


# Coarse checks: each role holds the roles listed for it
ROLE_HIERARCHY: Dict[Role, FrozenSet[Role]] = {
    Role.SUPER_ADMIN: frozenset(Role),
    Role.ADMIN: frozenset(
        {Role.ADMIN, Role.ORG_ADMIN, Role.INSTRUCTOR, Role.STUDENT, Role.GUEST}
    ),
    Role.ORG_ADMIN: frozenset({Role.ORG_ADMIN, Role.INSTRUCTOR, Role.STUDENT, Role.GUEST}),
    Role.INSTRUCTOR: frozenset({Role.INSTRUCTOR, Role.STUDENT, Role.GUEST}),
    Role.STUDENT: frozenset({Role.STUDENT, Role.GUEST}),
    Role.GUEST: frozenset({Role.GUEST}),
}

_GUEST_PERMISSIONS = (Permission.COURSE_READ,)

_LEARNER_PERMISSIONS = (
    Permission.COURSE_READ,
    Permission.COURSE_ENROLL,
    Permission.COURSE_COMPLETE,
    Permission.LEARNING_PROGRESS,
    Permission.LEARNING_CERTIFICATE,
    Permission.LEARNING_REVIEW,
    Permission.LEARNING_BOOKMARK,
    Permission.ASSESSMENT_TAKE,
    Permission.ASSESSMENT_VIEW_RESULTS,
    Permission.ASSESSMENT_RETRY,
    Permission.USER_PROFILE_UPDATE,
    Permission.USER_PASSWORD_CHANGE,
    Permission.USER_SETTINGS,
)

_AUTHOR_PERMISSIONS = (
    Permission.COURSE_CREATE,
    Permission.COURSE_UPDATE,
    Permission.COURSE_DELETE,
    Permission.CONTENT_CREATE,
    Permission.CONTENT_UPDATE,
    Permission.CONTENT_DELETE,
    Permission.STUDENT_PROGRESS_VIEW,
)

# Fine checks: looked up directly per role, never inherited through ROLE_HIERARCHY
ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.SUPER_ADMIN: frozenset(Permission),
    Role.ADMIN: frozenset(Permission),
    Role.ORG_ADMIN: frozenset(
        _LEARNER_PERMISSIONS
        + _AUTHOR_PERMISSIONS
        + (Permission.ORG_USERS, Permission.ORG_SETTINGS)
    ),
    Role.INSTRUCTOR: frozenset(_LEARNER_PERMISSIONS + _AUTHOR_PERMISSIONS),
    Role.STUDENT: frozenset(_LEARNER_PERMISSIONS),
    Role.GUEST: frozenset(_GUEST_PERMISSIONS),
}

ORGANIZATION_BYPASS_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as resolved from an access token and its session."""

    user_id: str
    email: str
    role: Role
    status: AccountStatus = AccountStatus.ACTIVE
    organization_id: Optional[str] = None
    session_id: Optional[str] = None
    email_verified: bool = False
    created_at: Optional[datetime] = None
    subscription_expires_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass(frozen=True)
class AccessContext:
    ip: Optional[str] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class PermissionRequirement:
    permissions: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()
    organization_id: Optional[str] = None
    conditions: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    missing_roles: Tuple[str, ...] = ()
    missing_permissions: Tuple[str, ...] = ()
    failed_conditions: Tuple[str, ...] = ()
    organization_mismatch: bool = False
    inactive: bool = False


Condition = Callable[[Principal, Any, AccessContext], bool]


def _is_active(principal: Principal, value: Any, ctx: AccessContext) -> bool:
    return principal.is_active


def _email_verified(principal: Principal, value: Any, ctx: AccessContext) -> bool:
    return principal.email_verified


def _within_trial_period(principal: Principal, value: Any, ctx: AccessContext) -> bool:
    if principal.created_at is None:
        return False
    return (ctx.now or utcnow()) <= principal.created_at + timedelta(days=int(value))


def _has_subscription(principal: Principal, value: Any, ctx: AccessContext) -> bool:
    expires = principal.subscription_expires_at
    return expires is not None and expires > (ctx.now or utcnow())


def _parse_clock(raw: str) -> time:
    hours, minutes = (int(part) for part in str(raw).split(":", 1))
    return time(hour=hours, minute=minutes)


def _request_time(principal: Principal, value: Any, ctx: AccessContext) -> bool:
    """``value`` is ``{"start": "HH:MM", "end": "HH:MM"}`` in UTC; may wrap midnight."""
    try:
        start = _parse_clock(value["start"])
        end = _parse_clock(value["end"])
    except (KeyError, TypeError, ValueError):
        logger.warning("access_condition_invalid", condition="request_time")
        return False
    current = (ctx.now or utcnow()).time().replace(tzinfo=None)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def _ip_whitelist(principal: Principal, value: Any, ctx: AccessContext) -> bool:
    if not ctx.ip:
        return False
    try:
        address = ipaddress.ip_address(ctx.ip)
    except ValueError:
        return False
    entries = [value] if isinstance(value, str) else list(value or [])
    for entry in entries:
        try:
            if address in ipaddress.ip_network(str(entry), strict=False):
                return True
        except ValueError:
            continue
    return False


DEFAULT_CONDITIONS: Dict[str, Condition] = {
    "is_active": _is_active,
    "email_verified": _email_verified,
    "within_trial_period": _within_trial_period,
    "has_subscription": _has_subscription,
    "request_time": _request_time,
    "ip_whitelist": _ip_whitelist,
}


def _role(value: Any) -> Optional[Role]:
    try:
        return Role(getattr(value, "value", value))
    except ValueError:
        return None


class PermissionEvaluator:
    """Role hierarchy, permission table, organization scope and conditions.

    All checks are pure lookups; no lock is needed.
    """

    def __init__(
        self,
        *,
        role_hierarchy: Optional[Mapping[Role, FrozenSet[Role]]] = None,
        role_permissions: Optional[Mapping[Role, FrozenSet[Permission]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.role_hierarchy = dict(role_hierarchy or ROLE_HIERARCHY)
        self.role_permissions = dict(role_permissions or ROLE_PERMISSIONS)
        self.conditions: Dict[str, Condition] = dict(DEFAULT_CONDITIONS)
        self._clock = clock or utcnow

    def register_condition(self, name: str, predicate: Condition) -> None:
        self.conditions[name] = predicate

    def has_role(self, user_role: Any, required_roles: Iterable[Any]) -> bool:
        role = _role(user_role)
        if role is None:
            return False
        held = self.role_hierarchy.get(role, frozenset())
        return any(_role(r) in held for r in required_roles)

    def permissions_for(self, user_role: Any) -> FrozenSet[Permission]:
        role = _role(user_role)
        return self.role_permissions.get(role, frozenset()) if role else frozenset()

    def has_permission(self, user_role: Any, permission: Any) -> bool:
        try:
            wanted = Permission(getattr(permission, "value", permission))
        except ValueError:
            return False
        return wanted in self.permissions_for(user_role)

    def check_organization(self, principal: Principal, organization_id: Optional[str]) -> bool:
        if organization_id is None:
            return True
        if _role(principal.role) in ORGANIZATION_BYPASS_ROLES:
            return True
        return principal.organization_id is not None and principal.organization_id == organization_id

    def evaluate_condition(
        self, name: str, principal: Principal, value: Any, ctx: AccessContext
    ) -> bool:
        predicate = self.conditions.get(name)
        if predicate is None:
            logger.warning("access_condition_unknown", condition=name)
            return False
        return bool(predicate(principal, value, ctx))

    def evaluate(
        self,
        principal: Principal,
        requirement: PermissionRequirement,
        *,
        ip: Optional[str] = None,
    ) -> AccessDecision:
        """Every part of ``requirement`` must hold; the decision names what did not."""
        ctx = AccessContext(ip=ip, now=self._clock())
        inactive = not principal.is_active
        missing_roles: Tuple[str, ...] = ()
        if requirement.roles and not self.has_role(principal.role, requirement.roles):
            missing_roles = tuple(str(getattr(r, "value", r)) for r in requirement.roles)
        missing_permissions = tuple(
            str(getattr(p, "value", p))
            for p in requirement.permissions
            if not self.has_permission(principal.role, p)
        )
        org_mismatch = not self.check_organization(principal, requirement.organization_id)
        failed_conditions = tuple(
            name
            for name, value in requirement.conditions.items()
            if not self.evaluate_condition(name, principal, value, ctx)
        )
        allowed = not (
            inactive or missing_roles or missing_permissions or org_mismatch or failed_conditions
        )
        return AccessDecision(
            allowed=allowed,
            missing_roles=missing_roles,
            missing_permissions=missing_permissions,
            failed_conditions=failed_conditions,
            organization_mismatch=org_mismatch,
            inactive=inactive,
        )

    def authorize(
        self,
        principal: Principal,
        requirement: PermissionRequirement,
        *,
        ip: Optional[str] = None,
    ) -> AccessDecision:
        """Raise a generic ForbiddenError on denial after logging the specifics."""
        decision = self.evaluate(principal, requirement, ip=ip)
        if not decision.allowed:
            logger.warning(
                "access_denied",
                user_id=principal.user_id,
                role=getattr(principal.role, "value", principal.role),
                missing_roles=list(decision.missing_roles),
                missing_permissions=list(decision.missing_permissions),
                failed_conditions=list(decision.failed_conditions),
                organization_mismatch=decision.organization_mismatch,
                inactive=decision.inactive,
            )
            raise ForbiddenError()
        return decision


def requirement(
    *,
    permissions: Sequence[Any] = (),
    roles: Sequence[Any] = (),
    organization_id: Optional[str] = None,
    conditions: Optional[Mapping[str, Any]] = None,
) -> PermissionRequirement:
    return PermissionRequirement(
        permissions=tuple(permissions),
        roles=tuple(roles),
        organization_id=organization_id,
        conditions=dict(conditions or {}),
    )


__all__ = [
    "Permission",
    "ROLE_HIERARCHY",
    "ROLE_PERMISSIONS",
    "Principal",
    "AccessContext",
    "PermissionRequirement",
    "AccessDecision",
    "PermissionEvaluator",
    "requirement",
]
