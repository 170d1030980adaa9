from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from edugate.config import Settings
from edugate.logging import get_logger
from edugate.service.errors import InvalidTokenError
from edugate.storage.memory import MemoryTokenLedger
from edugate.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenLedger(Protocol):
    async def consume(self, jti: str, expires_at: float) -> bool: ...

    async def is_consumed(self, jti: str) -> bool: ...


class RefreshTokenReuseError(InvalidTokenError):
    """A consumed refresh token was presented again."""


@dataclass(frozen=True)
class TokenSubject:
    user_id: str
    email: str
    role: str
    organization_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "TokenSubject":
        return cls(
            user_id=user.id,
            email=user.email,
            role=getattr(user.role, "value", user.role),
            organization_id=user.organization_id,
        )


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    email: str
    role: str
    organization_id: Optional[str]
    session_id: str
    jti: str
    token_type: str
    issued_at: int
    expires_at: int
    remember_me: Optional[bool] = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        rmb = payload.get("rmb")
        return cls(
            subject_id=str(payload["sub"]),
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "")),
            organization_id=payload.get("org_id"),
            session_id=str(payload["sid"]),
            jti=str(payload["jti"]),
            token_type=str(payload["typ"]),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            remember_me=bool(rmb) if rmb is not None else None,
        )

    @property
    def subject(self) -> TokenSubject:
        return TokenSubject(
            user_id=self.subject_id,
            email=self.email,
            role=self.role,
            organization_id=self.organization_id,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    remember_me: bool = False
    token_type: str = "Bearer"


class TokenService:
    """Issues and verifies access/refresh tokens (HS256, distinct secrets).

    Refresh tokens are single-use: ``refresh_session`` records the presented
    token's ``jti`` in the ledger before issuing a replacement pair.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        ledger: Optional[TokenLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if settings.access_token_secret == settings.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        self.settings = settings
        self.ledger: TokenLedger = ledger if ledger is not None else MemoryTokenLedger()
        self._clock = clock or utcnow
        self._leeway = settings.token_clock_skew_seconds

    def _now(self) -> datetime:
        return self._clock()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_ttl(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.remember_me_refresh_ttl_days
            if remember_me
            else self.settings.refresh_token_ttl_days
        )
        return timedelta(days=days)

    def _secret_for(self, token_type: str) -> bytes:
        secret = (
            self.settings.access_token_secret
            if token_type == ACCESS
            else self.settings.refresh_token_secret
        )
        return secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: bytes) -> tuple[Optional[dict[str, Any]], str]:
        """Return ``(payload, reason)``; payload is None when any check fails."""
        if not isinstance(token, str):
            return None, "malformed"
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None, "malformed"

        # Only HS256 is accepted, whatever the header claims
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return None, "malformed_header"
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return None, "bad_algorithm"

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None, "bad_signature"
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return None, "malformed_payload"
        if not isinstance(payload, dict):
            return None, "malformed_payload"
        if payload.get("iss") != self.settings.jwt_issuer:
            return None, "bad_issuer"
        if payload.get("aud") != self.settings.jwt_audience:
            return None, "bad_audience"
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None, "missing_expiry"
        if exp_ts <= self._now().timestamp() - self._leeway:
            return None, "expired"
        return payload, "ok"

    def _build_payload(
        self,
        subject: TokenSubject,
        session_id: str,
        token_type: str,
        issued_at: datetime,
        ttl: timedelta,
        remember_me: Optional[bool] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject.user_id,
            "email": subject.email,
            "role": subject.role,
            "org_id": subject.organization_id,
            "sid": session_id,
            "jti": uuid.uuid4().hex,
            "typ": token_type,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + ttl).timestamp()),
        }
        if remember_me is not None:
            payload["rmb"] = remember_me
        return payload

    def issue_token_pair(
        self, subject: TokenSubject, session_id: str, remember_me: bool = False
    ) -> TokenPair:
        now = self._now()
        refresh_ttl = self.refresh_ttl(remember_me)
        access = self._encode_jwt(
            self._build_payload(subject, session_id, ACCESS, now, self.access_ttl),
            self._secret_for(ACCESS),
        )
        refresh = self._encode_jwt(
            self._build_payload(
                subject, session_id, REFRESH, now, refresh_ttl, remember_me=remember_me
            ),
            self._secret_for(REFRESH),
        )
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(refresh_ttl.total_seconds()),
            remember_me=remember_me,
        )

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        payload, reason = self._decode_jwt(token, self._secret_for(token_type))
        if payload is None or payload.get("typ") != token_type:
            logger.info(
                "token_rejected",
                kind=token_type,
                reason=reason if payload is None else "wrong_type",
            )
            raise InvalidTokenError()
        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            logger.info("token_rejected", kind=token_type, reason="missing_claims")
            raise InvalidTokenError() from None

    def verify_access_token(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> TokenClaims:
        """Check signature, structure and expiry. Consumption is checked on refresh."""
        return self._verify(token, REFRESH)

    def infer_remember_me(self, claims: TokenClaims) -> bool:
        """Explicit ``rmb`` claim, else whichever lifetime the token's span is closer to."""
        if claims.remember_me is not None:
            return claims.remember_me
        lifetime = claims.expires_at - claims.issued_at
        standard = self.refresh_ttl(False).total_seconds()
        extended = self.refresh_ttl(True).total_seconds()
        return abs(lifetime - extended) < abs(lifetime - standard)

    async def refresh_session(
        self,
        refresh_token: str,
        *,
        remember_me: Optional[bool] = None,
        subject: Optional[TokenSubject] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one.

        ``remember_me`` and ``subject`` come from the session/user record when
        the caller has them; otherwise they are reconstructed from the token.
        """
        claims = self.verify_refresh_token(refresh_token)
        if not await self.ledger.consume(claims.jti, float(claims.expires_at)):
            logger.warning(
                "refresh_token_reuse_detected",
                user_id=claims.subject_id,
                session_id=claims.session_id,
            )
            raise RefreshTokenReuseError()
        keep = remember_me if remember_me is not None else self.infer_remember_me(claims)
        return self.issue_token_pair(subject or claims.subject, claims.session_id, keep)

    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        """Consume a refresh token without issuing a replacement (logout)."""
        try:
            claims = self.verify_refresh_token(refresh_token)
        except InvalidTokenError:
            return False
        return await self.ledger.consume(claims.jti, float(claims.expires_at))


__all__ = [
    "TokenService",
    "TokenSubject",
    "TokenClaims",
    "TokenPair",
    "TokenLedger",
    "RefreshTokenReuseError",
]
