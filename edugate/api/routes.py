from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from edugate.api.schemas import (
    AuthResponse,
    BackupCodesResponse,
    ChallengeRequest,
    ChallengeResponse,
    DeviceResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    SecuritySummaryResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserProfile,
    VerifyChallengeRequest,
    VerifyEmailRequest,
)
from edugate.config import Role
from edugate.logging import get_logger
from edugate.service.errors import InvalidTokenError
from edugate.service.outcomes import AuthFailure
from edugate.service.permissions import Permission, Principal, requirement
from edugate.service.rate_limit import ClientIdentity
from edugate.service.runtime import get_runtime
from edugate.storage.models import DeviceInfo, Location

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(
        status_code=status_code,
        detail=payload,
        headers={"WWW-Authenticate": "Bearer"} if status_code == 401 else None,
    )


def _raise_on_failure(outcome: Any) -> None:
    if isinstance(outcome, AuthFailure):
        raise outcome.to_error()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _client(request: Request, user_id: Optional[str] = None) -> ClientIdentity:
    return ClientIdentity(
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        user_id=user_id,
    )


def _device(request: Request) -> DeviceInfo:
    return DeviceInfo.from_user_agent(request.headers.get("user-agent"))


def _location(request: Request) -> Location:
    return Location(ip=_client_ip(request))


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    token = _bearer_token(authorization)
    if token is None:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    runtime = get_runtime()
    try:
        return await runtime.auth.authenticate(token)
    except InvalidTokenError:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)


def require_roles(*roles: Role) -> Callable[..., Any]:
    """Dependency factory: the caller must hold one of ``roles`` (hierarchically)."""

    async def _dependency(
        request: Request, principal: Principal = Depends(get_principal)
    ) -> Principal:
        get_runtime().permissions.authorize(
            principal, requirement(roles=roles), ip=_client_ip(request)
        )
        return principal

    return _dependency


def require_permissions(*permissions: Permission) -> Callable[..., Any]:
    """Dependency factory: the caller's role must grant every one of ``permissions``."""

    async def _dependency(
        request: Request, principal: Principal = Depends(get_principal)
    ) -> Principal:
        get_runtime().permissions.authorize(
            principal, requirement(permissions=permissions), ip=_client_ip(request)
        )
        return principal

    return _dependency


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=text))


# -- registration and login ------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    outcome = await runtime.auth.register(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        body.organization_slug,
        client=_client(request),
        device=_device(request),
        location=_location(request),
    )
    _raise_on_failure(outcome)
    if outcome.verification_pending:
        response.status_code = 202
        return Envelope(
            status="ok",
            data=AuthResponse(user=UserProfile.from_user(outcome.user), verification_pending=True),
        )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserProfile.from_user(outcome.user),
            tokens=TokenResponse.from_pair(outcome.tokens),
            session_id=outcome.session.id,
            session_token=outcome.session_token,
            session_expires_at=outcome.session.expires_at,
        ),
    )


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    runtime = get_runtime()
    outcome = await runtime.auth.login(
        body.email,
        body.password,
        two_factor_code=body.two_factor_code,
        remember_me=body.remember_me,
        client=_client(request),
        device=_device(request),
        location=_location(request),
    )
    _raise_on_failure(outcome)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserProfile.from_user(outcome.user),
            tokens=TokenResponse.from_pair(outcome.tokens),
            session_id=outcome.session.id,
            session_token=outcome.session_token,
            session_expires_at=outcome.session.expires_at,
        ),
    )


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest):
    runtime = get_runtime()
    outcome = await runtime.auth.refresh(body.refresh_token)
    _raise_on_failure(outcome)
    return Envelope(status="ok", data=TokenResponse.from_pair(outcome.tokens))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    outcome = await runtime.auth.logout(
        principal, refresh_token=body.refresh_token if body else None
    )
    _raise_on_failure(outcome)
    return _message(outcome.message)


# -- password reset and email verification --------------------------------


@router.post("/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    outcome = await runtime.auth.forgot_password(body.email, client=_client(request))
    _raise_on_failure(outcome)
    return _message(outcome.message)


@router.post("/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    outcome = await runtime.auth.reset_password(body.token, body.password)
    _raise_on_failure(outcome)
    return _message(outcome.message)


@router.post("/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    outcome = await runtime.auth.verify_email(body.token)
    _raise_on_failure(outcome)
    return _message(outcome.message)


@router.post("/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    outcome = await runtime.auth.resend_verification(body.email)
    _raise_on_failure(outcome)
    return _message(outcome.message)


# -- profile ----------------------------------------------------------------


@router.get("/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    outcome = await runtime.auth.get_profile(principal)
    _raise_on_failure(outcome)
    return Envelope(status="ok", data=UserProfile.from_user(outcome))


# -- two-factor ---------------------------------------------------------------


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    outcome = await runtime.auth.setup_two_factor(principal)
    _raise_on_failure(outcome)
    return Envelope(status="ok", data=TwoFactorSetupResponse.from_setup(outcome))


@router.post("/2fa/enable", response_model=Envelope, tags=["2fa"])
async def enable_two_factor(
    body: TwoFactorCodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    outcome = await runtime.auth.enable_two_factor(principal, body.code)
    _raise_on_failure(outcome)
    return _message(outcome.message)


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: TwoFactorDisableRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    outcome = await runtime.auth.disable_two_factor(
        principal, code=body.code, password=body.password
    )
    _raise_on_failure(outcome)
    return _message(outcome.message)


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    outcome = await runtime.auth.two_factor_status(principal)
    _raise_on_failure(outcome)
    return Envelope(status="ok", data=TwoFactorStatusResponse.from_status(outcome))


@router.post("/2fa/backup-codes", response_model=Envelope, tags=["2fa"])
async def regenerate_backup_codes(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    outcome = await runtime.auth.regenerate_backup_codes(principal)
    _raise_on_failure(outcome)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=outcome))


@router.post("/2fa/challenge", response_model=Envelope, tags=["2fa"])
async def issue_challenge(body: ChallengeRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    outcome = await runtime.auth.issue_challenge(principal, body.method)
    _raise_on_failure(outcome)
    return Envelope(status="ok", data=ChallengeResponse.from_challenge(outcome))


@router.post("/2fa/verify-challenge", response_model=Envelope, tags=["2fa"])
async def verify_challenge(
    body: VerifyChallengeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    outcome = await runtime.auth.verify_challenge(principal, body.challenge_id, body.code)
    _raise_on_failure(outcome)
    return _message(outcome.message)


# -- sessions and devices -------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    active_only: bool = True, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    sessions = runtime.sessions.get_user_sessions(principal.user_id, active_only=active_only)
    items = [
        SessionResponse.from_session(s, current_session_id=principal.session_id) for s in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(session_id: str, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    outcome = runtime.auth.revoke_session(principal, session_id)
    _raise_on_failure(outcome)
    return _message(outcome.message)


@router.get("/security-summary", response_model=Envelope, tags=["sessions"])
async def security_summary(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    summary = runtime.sessions.get_security_summary(principal.user_id)
    return Envelope(status="ok", data=SecuritySummaryResponse.from_summary(summary))


@router.get("/devices", response_model=Envelope, tags=["sessions"])
async def list_trusted_devices(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    devices = runtime.sessions.list_trusted_devices(principal.user_id)
    return Envelope(status="ok", data=[DeviceResponse.from_trusted(d) for d in devices])


@router.post("/devices/trust", response_model=Envelope, tags=["sessions"])
async def trust_current_device(request: Request, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    trusted = runtime.sessions.mark_device_trusted(principal.user_id, _device(request))
    if principal.session_id:
        runtime.sessions.log_activity(
            principal.session_id,
            "device_trusted",
            ip=_client_ip(request),
            resource="device",
            resource_id=trusted.device_id,
        )
    return Envelope(status="ok", data=DeviceResponse.from_trusted(trusted))


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["sessions"])
async def revoke_device_trust(device_id: str, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    if not runtime.sessions.revoke_device_trust(principal.user_id, device_id):
        raise _http_error("not_found", "device not trusted", status_code=404)
    return _message("device trust revoked")


# -- administration ---------------------------------------------------------


@router.get("/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_user_sessions(
    user_id: str,
    principal: Principal = Depends(require_permissions(Permission.ADMIN_USERS)),
):
    runtime = get_runtime()
    sessions = runtime.sessions.get_user_sessions(user_id, active_only=False)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[SessionResponse.from_session(s) for s in sessions]),
    )


@router.delete("/users/{user_id}/sessions", response_model=Envelope, tags=["admin"])
async def admin_revoke_user_sessions(
    user_id: str, principal: Principal = Depends(require_roles(Role.ADMIN))
):
    runtime = get_runtime()
    revoked = runtime.sessions.invalidate_all_user_sessions(user_id, reason="admin_revoked")
    logger.info("admin_sessions_revoked", actor_id=principal.user_id, user_id=user_id, count=revoked)
    return _message(f"revoked {revoked} sessions")
