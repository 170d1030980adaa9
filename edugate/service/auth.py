from __future__ import annotations

import asyncio
import hashlib
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from edugate.config import Settings
from edugate.logging import get_logger
from edugate.service.errors import (
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    UpstreamUnavailableError,
)
from edugate.service.mfa import MFAService, MFASetup, MFAStatus
from edugate.service.notifications import EmailService
from edugate.service.outcomes import (
    AuthFailure,
    Completed,
    FailureKind,
    FlowOutcome,
    LoginOutcome,
    LoginStage,
    LoginSuccess,
    RefreshOutcome,
    RefreshSuccess,
    RegisterOutcome,
    RegisterSuccess,
)
from edugate.service.permissions import Principal
from edugate.service.rate_limit import ClientIdentity, RateLimiter
from edugate.service.sessions import SessionManager
from edugate.service.tokens import RefreshTokenReuseError, TokenService, TokenSubject
from edugate.service.validation import (
    slugify,
    validate_email,
    validate_name,
    validate_password_strength,
)
from edugate.storage.errors import ConstraintViolation, StoreUnavailableError
from edugate.storage.memory import MemoryOneTimeTokenStore
from edugate.storage.models import (
    AccountStatus,
    DeviceInfo,
    Location,
    MFAChallenge,
    MFAMethod,
    Organization,
    SessionMetadata,
    User,
    utcnow,
)

logger = get_logger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET_TTL = timedelta(minutes=15)
EMAIL_VERIFICATION_TTL = timedelta(hours=24)

GENERIC_RESET_MESSAGE = "if an account exists for that email, a reset link has been sent"
GENERIC_VERIFY_MESSAGE = "if the account needs verification, a new link has been sent"


class CredentialStore(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def save(self, user: User) -> User: ...

    def update_fields(self, user_id: str, **fields: Any) -> User: ...

    def find_organization_by_slug(self, slug: str) -> Optional[Organization]: ...

    def create_organization(self, name: str, slug: str) -> Organization: ...

    def verify_connection(self) -> None: ...


class StoreGateway:
    """Async, time-bounded access to the credential store.

    Each call runs in a worker thread under ``timeout``. A timeout or
    ``StoreUnavailableError`` is retried once after ``retry_backoff`` and then
    surfaces as ``UpstreamUnavailableError``; other errors propagate untouched.
    """

    def __init__(
        self, store: CredentialStore, *, timeout: float = 5.0, retry_backoff: float = 0.2
    ) -> None:
        self.store = store
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    async def _call(self, op: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        attempts = 2
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout
                )
            except (asyncio.TimeoutError, StoreUnavailableError) as exc:
                logger.warning(
                    "store_call_failed",
                    op=op,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                if attempt == attempts:
                    raise UpstreamUnavailableError() from exc
                await asyncio.sleep(self.retry_backoff * attempt)
        raise UpstreamUnavailableError()

    async def find_by_email(self, email: str) -> Optional[User]:
        return await self._call("find_by_email", self.store.find_by_email, email)

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self._call("find_by_id", self.store.find_by_id, user_id)

    async def save(self, user: User) -> User:
        return await self._call("save", self.store.save, user)

    async def update_fields(self, user_id: str, **fields: Any) -> User:
        return await self._call("update_fields", self.store.update_fields, user_id, **fields)

    async def find_organization_by_slug(self, slug: str) -> Optional[Organization]:
        return await self._call(
            "find_organization_by_slug", self.store.find_organization_by_slug, slug
        )

    async def create_organization(self, name: str, slug: str) -> Organization:
        return await self._call("create_organization", self.store.create_organization, name, slug)

    async def verify_connection(self) -> None:
        await self._call("verify_connection", self.store.verify_connection)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _failure(kind: FailureKind, message: Optional[str] = None) -> AuthFailure:
    return AuthFailure(kind, message)


class AuthOrchestrator:
    """Register/login/refresh/logout/reset/verify-email and 2FA management flows.

    Expected failures come back as ``AuthFailure`` values rather than
    exceptions; ``authenticate`` is the one guard-style entry point and raises.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        gateway: StoreGateway,
        tokens: TokenService,
        sessions: SessionManager,
        mfa: MFAService,
        rate_limiter: RateLimiter,
        one_time_tokens: Optional[MemoryOneTimeTokenStore] = None,
        email: Optional[EmailService] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.tokens = tokens
        self.sessions = sessions
        self.mfa = mfa
        self.rate_limiter = rate_limiter
        self.one_time_tokens = one_time_tokens or MemoryOneTimeTokenStore()
        self.email = email or EmailService.from_settings(settings)
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._clock = clock or utcnow
        # verified against for unknown emails so both paths cost one argon2 check
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def _now(self) -> datetime:
        return self._clock()

    def _stage(self, stage: LoginStage, **context: Any) -> None:
        logger.info("login_stage", stage=stage.value, **context)

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        try:
            return self._hasher.verify(password_hash or self._dummy_hash, password)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    @staticmethod
    def _status_failure(user: User) -> Optional[AuthFailure]:
        if user.status == AccountStatus.SUSPENDED:
            return _failure(FailureKind.ACCOUNT_SUSPENDED)
        if user.status == AccountStatus.INACTIVE:
            return _failure(FailureKind.ACCOUNT_INACTIVE)
        return None

    # -- one-time tokens -------------------------------------------------

    def _issue_one_time_token(self, purpose: str, user_id: str, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        self.one_time_tokens.discard_for_user(purpose, user_id)
        self.one_time_tokens.put(purpose, _digest(token), user_id, self._now() + ttl)
        return token

    def _consume_one_time_token(self, purpose: str, token: str) -> Optional[str]:
        if not token:
            return None
        stored = self.one_time_tokens.pop(purpose, _digest(token))
        if stored is None:
            return None
        user_id, expires_at = stored
        if expires_at <= self._now():
            return None
        return user_id

    async def _send(self, fn: Callable[[str, str], bool], to_email: str, token: str) -> None:
        sent = await asyncio.to_thread(fn, to_email, token)
        if not sent:
            logger.warning("notification_not_sent", kind=getattr(fn, "__name__", "email"))

    async def _send_verification(self, user: User) -> None:
        token = self._issue_one_time_token(EMAIL_VERIFICATION, user.id, EMAIL_VERIFICATION_TTL)
        await self._send(self.email.send_email_verification, user.email, token)

    # -- registration ----------------------------------------------------

    async def _resolve_organization(
        self, first_name: str, last_name: str, slug: Optional[str]
    ) -> Union[Organization, AuthFailure]:
        if slug:
            org = await self.gateway.find_organization_by_slug(slug.strip().lower())
            if org is None or not org.is_active:
                return _failure(FailureKind.NOT_FOUND, "organization not found")
            return org
        stamp = int(self._now().timestamp() * 1000)
        name = f"{first_name} {last_name}'s Organization"
        generated = slugify(f"{first_name}-{last_name}-{stamp}")
        try:
            return await self.gateway.create_organization(name, generated)
        except ConstraintViolation:
            # same name registered within the same millisecond
            suffixed = f"{generated}-{secrets.token_hex(3)}"
            return await self.gateway.create_organization(name, suffixed)

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        organization_slug: Optional[str] = None,
        *,
        client: Optional[ClientIdentity] = None,
        device: Optional[DeviceInfo] = None,
        location: Optional[Location] = None,
    ) -> RegisterOutcome:
        if not self.settings.allow_signup:
            return _failure(FailureKind.FORBIDDEN, "registration is disabled")
        client = client or ClientIdentity(ip="unknown")
        decision = await self.rate_limiter.check(client, "registration")
        if not decision.allowed:
            return AuthFailure(FailureKind.RATE_LIMITED, retry_after=decision.retry_after)
        try:
            email = validate_email(email)
            validate_password_strength(password)
            first_name = validate_name(first_name, "first name")
            last_name = validate_name(last_name, "last name")
        except ValueError as exc:
            return _failure(FailureKind.VALIDATION, str(exc))

        try:
            if await self.gateway.find_by_email(email) is not None:
                return _failure(FailureKind.CONFLICT, "email already registered")
            org = await self._resolve_organization(first_name, last_name, organization_slug)
            if isinstance(org, AuthFailure):
                return org
            require_verification = self.settings.require_email_verification
            user = await self.gateway.save(
                User(
                    id=str(uuid.uuid4()),
                    email=email,
                    password_hash=self.hash_password(password),
                    role=self.settings.self_serve_default_role,
                    status=(
                        AccountStatus.PENDING_VERIFICATION
                        if require_verification
                        else AccountStatus.ACTIVE
                    ),
                    organization_id=org.id,
                    first_name=first_name,
                    last_name=last_name,
                )
            )
        except ConstraintViolation as exc:
            return _failure(FailureKind.CONFLICT, exc.message)
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)

        logger.info(
            "user_registered",
            user_id=user.id,
            organization_id=user.organization_id,
            verification_pending=require_verification,
        )
        if require_verification:
            await self._send_verification(user)
            return RegisterSuccess(user=user, verification_pending=True)
        created = self.sessions.create_session(
            user,
            device=device,
            location=location or Location(ip=client.ip),
            metadata=SessionMetadata(login_method="register"),
        )
        return RegisterSuccess(
            user=user,
            verification_pending=False,
            tokens=created.tokens,
            session=created.session,
            session_token=created.session_token,
        )

    # -- login -----------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        two_factor_code: Optional[str] = None,
        remember_me: bool = False,
        client: Optional[ClientIdentity] = None,
        device: Optional[DeviceInfo] = None,
        location: Optional[Location] = None,
    ) -> LoginOutcome:
        """Submitted -> CredentialChecked -> (MFARequired -> MFAChecked) -> TokensIssued."""
        client = client or ClientIdentity(ip="unknown")
        self._stage(LoginStage.SUBMITTED, ip=client.ip)
        decision = await self.rate_limiter.check(client, "login")
        if not decision.allowed:
            logger.info("login_failed", reason="rate_limited", ip=client.ip)
            return AuthFailure(FailureKind.RATE_LIMITED, retry_after=decision.retry_after)

        try:
            user = await self.gateway.find_by_email(email.strip().lower())
        except UpstreamUnavailableError:
            logger.info("login_failed", reason="store_unavailable")
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)

        if user is None:
            self.verify_password(None, password)
            logger.info("login_failed", reason="unknown_email", ip=client.ip)
            return _failure(FailureKind.INVALID_CREDENTIALS)
        if not self.verify_password(user.password_hash, password):
            self.sessions.record_failed_login(user.id)
            logger.info("login_failed", reason="wrong_password", user_id=user.id, ip=client.ip)
            return _failure(FailureKind.INVALID_CREDENTIALS)

        status_failure = self._status_failure(user)
        if status_failure is not None:
            logger.info("login_failed", reason=status_failure.kind.value, user_id=user.id)
            return status_failure
        if (
            user.status == AccountStatus.PENDING_VERIFICATION
            and self.settings.require_email_verification
        ):
            logger.info("login_failed", reason="email_unverified", user_id=user.id)
            return _failure(FailureKind.EMAIL_VERIFICATION_REQUIRED)
        self._stage(LoginStage.CREDENTIAL_CHECKED, user_id=user.id)

        mfa_verified = False
        if user.mfa_enabled:
            self._stage(LoginStage.MFA_REQUIRED, user_id=user.id)
            if not two_factor_code:
                return _failure(FailureKind.TWO_FACTOR_REQUIRED)
            try:
                verified = await self.mfa.verify_login_code(user, two_factor_code)
            except UpstreamUnavailableError:
                return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
            if not verified:
                self.sessions.record_failed_login(user.id)
                logger.info("login_failed", reason="invalid_two_factor", user_id=user.id)
                return _failure(FailureKind.INVALID_TWO_FACTOR)
            mfa_verified = True
            self._stage(LoginStage.MFA_CHECKED, user_id=user.id)

        created = self.sessions.create_session(
            user,
            device=device,
            location=location or Location(ip=client.ip),
            metadata=SessionMetadata(
                login_method="password",
                requires_mfa=user.mfa_enabled,
                mfa_verified=mfa_verified,
            ),
            remember_me=remember_me,
        )
        try:
            user = await self.gateway.update_fields(user.id, last_login_at=self._now())
        except UpstreamUnavailableError:
            logger.warning("last_login_update_failed", user_id=user.id)
        await self.rate_limiter.reset(client, "login")
        self._stage(LoginStage.TOKENS_ISSUED, user_id=user.id, session_id=created.session.id)
        return LoginSuccess.from_created(user, created)

    # -- tokens and sessions ---------------------------------------------

    async def refresh(self, refresh_token: str) -> RefreshOutcome:
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except InvalidTokenError:
            return _failure(FailureKind.INVALID_TOKEN)
        session = self.sessions.validate_session(claims.session_id)
        if session is None or session.user_id != claims.subject_id:
            logger.info("refresh_rejected", reason="session_inactive", session_id=claims.session_id)
            return _failure(FailureKind.INVALID_TOKEN)
        try:
            user = await self.gateway.find_by_id(claims.subject_id)
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
        if user is None or self._status_failure(user) is not None:
            logger.info("refresh_rejected", reason="account_unavailable", user_id=claims.subject_id)
            return _failure(FailureKind.INVALID_TOKEN)
        try:
            pair = await self.tokens.refresh_session(
                refresh_token,
                remember_me=session.metadata.remember_me,
                subject=TokenSubject.from_user(user),
            )
        except RefreshTokenReuseError:
            self.sessions.invalidate_session(session.id, reason="refresh_token_reuse")
            return _failure(FailureKind.INVALID_TOKEN)
        except InvalidTokenError:
            return _failure(FailureKind.INVALID_TOKEN)
        self.sessions.log_activity(session.id, "token_refresh")
        return RefreshSuccess(tokens=pair, session_id=session.id)

    async def logout(
        self, principal: Principal, *, refresh_token: Optional[str] = None
    ) -> FlowOutcome:
        if principal.session_id:
            self.sessions.log_activity(principal.session_id, "logout")
            self.sessions.invalidate_session(principal.session_id, reason="logout")
        if refresh_token:
            await self.tokens.revoke_refresh_token(refresh_token)
        return Completed("logged out")

    async def authenticate(self, access_token: str) -> Principal:
        """Resolve the caller for guards; any failure is a uniform InvalidTokenError."""
        claims = self.tokens.verify_access_token(access_token)
        session = self.sessions.validate_session(claims.session_id)
        if session is None or session.user_id != claims.subject_id:
            logger.info("token_rejected", reason="session_inactive", session_id=claims.session_id)
            raise InvalidTokenError()
        user = await self.gateway.find_by_id(claims.subject_id)
        if user is None or self._status_failure(user) is not None:
            logger.info("token_rejected", reason="account_unavailable", user_id=claims.subject_id)
            raise InvalidTokenError()
        return Principal(
            user_id=user.id,
            email=user.email,
            role=user.role,
            status=user.status,
            organization_id=user.organization_id,
            session_id=session.id,
            email_verified=user.email_verified,
            created_at=user.created_at,
            subscription_expires_at=user.subscription_expires_at,
        )

    async def get_profile(self, principal: Principal) -> Union[User, AuthFailure]:
        try:
            user = await self.gateway.find_by_id(principal.user_id)
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
        if user is None:
            return _failure(FailureKind.NOT_FOUND, "user not found")
        return user

    def revoke_session(self, principal: Principal, session_id: str) -> FlowOutcome:
        session = self.sessions.get_session(session_id)
        if session is None or session.user_id != principal.user_id:
            return _failure(FailureKind.NOT_FOUND, "session not found")
        self.sessions.invalidate_session(session_id, reason="revoked")
        return Completed("session revoked")

    # -- password reset and email verification ---------------------------

    async def forgot_password(
        self, email: str, *, client: Optional[ClientIdentity] = None
    ) -> FlowOutcome:
        """Same response whether or not the account exists."""
        client = client or ClientIdentity(ip="unknown")
        decision = await self.rate_limiter.check(client, "password_reset")
        if not decision.allowed:
            return AuthFailure(FailureKind.RATE_LIMITED, retry_after=decision.retry_after)
        try:
            user = await self.gateway.find_by_email(email.strip().lower())
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
        if user is not None and self._status_failure(user) is None:
            token = self._issue_one_time_token(PASSWORD_RESET, user.id, PASSWORD_RESET_TTL)
            logger.info("password_reset_requested", user_id=user.id)
            await self._send(self.email.send_password_reset, user.email, token)
        else:
            logger.info("password_reset_requested_unknown")
        return Completed(GENERIC_RESET_MESSAGE)

    async def reset_password(self, token: str, new_password: str) -> FlowOutcome:
        try:
            validate_password_strength(new_password)
        except ValueError as exc:
            return _failure(FailureKind.VALIDATION, str(exc))
        user_id = self._consume_one_time_token(PASSWORD_RESET, token)
        if user_id is None:
            logger.warning("password_reset_invalid_token")
            return _failure(FailureKind.VALIDATION, "invalid or expired reset token")
        try:
            await self.gateway.update_fields(user_id, password_hash=self.hash_password(new_password))
        except ConstraintViolation:
            return _failure(FailureKind.VALIDATION, "invalid or expired reset token")
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
        revoked = self.sessions.invalidate_all_user_sessions(user_id, reason="password_reset")
        logger.info("password_reset_completed", user_id=user_id, sessions_revoked=revoked)
        return Completed("password updated")

    async def verify_email(self, token: str) -> FlowOutcome:
        user_id = self._consume_one_time_token(EMAIL_VERIFICATION, token)
        if user_id is None:
            logger.warning("email_verification_invalid_token")
            return _failure(FailureKind.VALIDATION, "invalid or expired verification token")
        try:
            user = await self.gateway.find_by_id(user_id)
            if user is None:
                return _failure(FailureKind.VALIDATION, "invalid or expired verification token")
            fields: dict[str, Any] = {"email_verified_at": self._now()}
            if user.status == AccountStatus.PENDING_VERIFICATION:
                fields["status"] = AccountStatus.ACTIVE
            await self.gateway.update_fields(user_id, **fields)
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
        logger.info("email_verified", user_id=user_id)
        return Completed("email verified")

    async def resend_verification(self, email: str) -> FlowOutcome:
        try:
            user = await self.gateway.find_by_email(email.strip().lower())
        except UpstreamUnavailableError:
            return _failure(FailureKind.UPSTREAM_UNAVAILABLE)
        if user is not None and not user.email_verified and self._status_failure(user) is None:
            await self._send_verification(user)
        return Completed(GENERIC_VERIFY_MESSAGE)

    # -- two-factor management -------------------------------------------

    async def _load(self, principal: Principal) -> User:
        user = await self.gateway.find_by_id(principal.user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def setup_two_factor(self, principal: Principal) -> Union[MFASetup, AuthFailure]:
        try:
            user = await self._load(principal)
            return self.mfa.setup(user.id, user.email)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)

    async def enable_two_factor(self, principal: Principal, code: str) -> FlowOutcome:
        try:
            confirmed = await self.mfa.confirm_setup(principal.user_id, code)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)
        if not confirmed:
            return _failure(FailureKind.INVALID_TWO_FACTOR)
        if principal.session_id:
            self.sessions.mark_mfa_verified(principal.session_id)
        return Completed("two-factor authentication enabled")

    async def disable_two_factor(
        self,
        principal: Principal,
        *,
        code: Optional[str] = None,
        password: Optional[str] = None,
    ) -> FlowOutcome:
        try:
            user = await self._load(principal)
            self.mfa.ensure_loaded(user)
            reauthenticated = False
            if password is not None:
                if not self.verify_password(user.password_hash, password):
                    return _failure(FailureKind.INVALID_CREDENTIALS)
                reauthenticated = True
            await self.mfa.disable(user.id, code=code, reauthenticated=reauthenticated)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)
        self.sessions.invalidate_all_user_sessions(
            user.id, except_session_id=principal.session_id, reason="mfa_disabled"
        )
        return Completed("two-factor authentication disabled")

    async def two_factor_status(self, principal: Principal) -> Union[MFAStatus, AuthFailure]:
        try:
            user = await self._load(principal)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)
        self.mfa.ensure_loaded(user)
        return self.mfa.status(user.id)

    async def regenerate_backup_codes(self, principal: Principal) -> Union[List[str], AuthFailure]:
        try:
            user = await self._load(principal)
            self.mfa.ensure_loaded(user)
            return await self.mfa.regenerate_backup_codes(user.id)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)

    async def issue_challenge(
        self, principal: Principal, method: MFAMethod
    ) -> Union[MFAChallenge, AuthFailure]:
        try:
            user = await self._load(principal)
            return await self.mfa.issue_challenge(user, method)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)

    async def verify_challenge(
        self, principal: Principal, challenge_id: str, code: str
    ) -> FlowOutcome:
        try:
            ok = await self.mfa.verify_challenge(challenge_id, code, user_id=principal.user_id)
        except ServiceError as exc:
            return AuthFailure.from_error(exc)
        if not ok:
            return _failure(FailureKind.INVALID_TWO_FACTOR)
        if principal.session_id:
            self.sessions.mark_mfa_verified(principal.session_id)
        return Completed("challenge verified")


__all__ = ["AuthOrchestrator", "StoreGateway", "CredentialStore"]
