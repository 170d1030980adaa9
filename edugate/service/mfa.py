from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import re
import secrets
import struct
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional, Protocol
from urllib.parse import quote

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from edugate.config import Settings
from edugate.logging import get_logger, mask_email, mask_phone
from edugate.service.errors import (
    ConflictError,
    InvalidTwoFactorError,
    TooManyAttemptsError,
    UpstreamUnavailableError,
    ValidationError,
)
from edugate.storage.memory import MemoryMFAStore
from edugate.storage.models import (
    MFAChallenge,
    MFAMethod,
    MFASecret,
    MFAState,
    User,
    utcnow,
)

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
OTP_CODE_DIGITS = 6

CHALLENGE_TTL = {
    MFAMethod.TOTP: timedelta(minutes=5),
    MFAMethod.SMS: timedelta(minutes=10),
    MFAMethod.EMAIL: timedelta(minutes=15),
}

_BACKUP_CODE = re.compile(r"^[0-9A-F]{8}$")


class MFAStore(Protocol):
    def get_secret(self, user_id: str) -> Optional[MFASecret]: ...

    def put_secret(self, record: MFASecret) -> None: ...

    def mutate_secret(self, user_id: str, fn: Callable[[MFASecret], Any]) -> Any: ...

    def add_challenge(self, challenge: MFAChallenge) -> None: ...

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]: ...

    def mutate_challenge(self, challenge_id: str, fn: Callable[[Optional[MFAChallenge]], Any]) -> Any: ...

    def challenge_ids(self) -> List[str]: ...

    def delete_expired_challenges(self, challenge_ids: Iterable[str], now: datetime) -> int: ...


class CredentialWriter(Protocol):
    async def update_fields(self, user_id: str, **fields: Any) -> User: ...


class CodeDispatcher(Protocol):
    async def send_code(self, method: MFAMethod, destination: str, code: str) -> None: ...


@dataclass(frozen=True)
class MFASetup:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


@dataclass(frozen=True)
class MFAStatus:
    state: MFAState
    enabled: bool
    methods: List[str] = field(default_factory=list)
    backup_codes_remaining: int = 0
    last_used_at: Optional[datetime] = None
    recovery_email: Optional[str] = None
    recovery_phone: Optional[str] = None


def generate_totp(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    """RFC 6238 code (HMAC-SHA1, 6 digits) for ``timestamp``."""
    return _totp_for_counter(secret, int(timestamp // interval))


def _totp_for_counter(secret: str, counter: int) -> str:
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (ValueError, TypeError):
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, struct.pack(">Q", counter), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def normalize_backup_code(code: str) -> Optional[str]:
    """Canonical ``XXXX-XXXX`` form, or None if ``code`` cannot be a backup code."""
    if not isinstance(code, str):
        return None
    compact = code.strip().upper().replace("-", "").replace(" ", "")
    if not _BACKUP_CODE.match(compact):
        return None
    return f"{compact[:4]}-{compact[4:]}"


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class MFAService:
    """TOTP provisioning, backup codes and SMS/email challenges.

    Per-user state moves Unconfigured -> Provisioned -> Enabled -> Disabled;
    a Disabled (or re-provisioned) user may run setup again. A TOTP code is
    accepted at most once: the matched time step is recorded and any code at
    or before it is rejected afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[MFAStore] = None,
        credentials: Optional[CredentialWriter] = None,
        dispatcher: Optional[CodeDispatcher] = None,
        hasher: Optional[PasswordHasher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.store: MFAStore = store if store is not None else MemoryMFAStore()
        self.credentials = credentials
        self.dispatcher = dispatcher
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        self._clock = clock or utcnow
        self.window = settings.totp_window

    def _now(self) -> datetime:
        return self._clock()

    async def _persist(self, user_id: str, **fields: Any) -> None:
        if self.credentials is not None:
            await self.credentials.update_fields(user_id, **fields)

    # -- TOTP primitives -------------------------------------------------

    def _match_step(self, secret: str, code: str, at: datetime) -> Optional[int]:
        """Return the time step ``code`` matches within the window, if any."""
        if not isinstance(code, str):
            return None
        code = code.strip()
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return None
        current = int(at.timestamp() // TOTP_INTERVAL)
        matched: Optional[int] = None
        # Evaluate every step so timing does not reveal which one matched
        for offset in range(-self.window, self.window + 1):
            candidate = _totp_for_counter(secret, current + offset)
            if candidate and hmac.compare_digest(candidate, code) and matched is None:
                matched = current + offset
        return matched

    def _accept_step(self, user_id: str, step: int, at: datetime, *, require: MFAState) -> bool:
        def _accept(record: MFASecret) -> bool:
            if record.state != require:
                return False
            if record.last_used_step is not None and step <= record.last_used_step:
                return False
            record.last_used_step = step
            record.last_used_at = at
            return True

        return bool(self.store.mutate_secret(user_id, _accept))

    def _new_backup_codes(self) -> tuple[List[str], List[str]]:
        plain = []
        for _ in range(self.settings.mfa_backup_code_count):
            raw = secrets.token_hex(4).upper()
            plain.append(f"{raw[:4]}-{raw[4:]}")
        return plain, [self._hasher.hash(code) for code in plain]

    def provisioning_uri(self, secret: str, account: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{account}")
        return (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )

    # -- state machine ---------------------------------------------------

    def ensure_loaded(self, user: User) -> Optional[MFASecret]:
        """Rebuild the registry entry from the durable record after a restart."""
        record = self.store.get_secret(user.id)
        if record is None and user.mfa_enabled and user.mfa_secret:
            record = MFASecret(
                id=str(uuid.uuid4()),
                user_id=user.id,
                secret=user.mfa_secret,
                backup_code_hashes=list(user.backup_codes),
                state=MFAState.ENABLED,
                recovery_email=user.email,
            )
            self.store.put_secret(record)
            logger.info("mfa_secret_rehydrated", user_id=user.id)
        return record

    def state(self, user_id: str) -> MFAState:
        record = self.store.get_secret(user_id)
        return record.state if record else MFAState.UNCONFIGURED

    def setup(self, user_id: str, account: Optional[str] = None) -> MFASetup:
        """Provision a new secret and backup codes; plaintext codes are returned once."""
        current = self.store.get_secret(user_id)
        if current and current.state == MFAState.ENABLED:
            raise ConflictError("two-factor authentication is already enabled")
        secret = base64.b32encode(secrets.token_bytes(20)).decode().rstrip("=")
        plain_codes, hashed_codes = self._new_backup_codes()
        record = MFASecret(
            id=str(uuid.uuid4()),
            user_id=user_id,
            secret=secret,
            backup_code_hashes=hashed_codes,
            state=MFAState.PROVISIONED,
            created_at=self._now(),
            recovery_email=account if account and "@" in account else None,
        )
        self.store.put_secret(record)
        logger.info("mfa_provisioned", user_id=user_id)
        return MFASetup(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, account or user_id),
            backup_codes=plain_codes,
        )

    async def confirm_setup(self, user_id: str, code: str) -> bool:
        """Verify the first code; on success persist, then Provisioned -> Enabled.

        The step is spent and the state flipped only after the durable write,
        and only on the record the code was checked against.
        """
        record = self.store.get_secret(user_id)
        if record is None or record.state != MFAState.PROVISIONED:
            logger.info("mfa_confirm_without_setup", user_id=user_id)
            return False
        now = self._now()
        step = self._match_step(record.secret, code, now)
        if step is None or (record.last_used_step is not None and step <= record.last_used_step):
            logger.info("mfa_confirm_failed", user_id=user_id)
            return False
        await self._persist(
            user_id,
            mfa_enabled=True,
            mfa_secret=record.secret,
            backup_codes=list(record.backup_code_hashes),
        )

        def _enable(rec: MFASecret) -> bool:
            if rec.id != record.id or rec.state != MFAState.PROVISIONED:
                return False
            if rec.last_used_step is not None and step <= rec.last_used_step:
                return False
            rec.last_used_step = step
            rec.last_used_at = now
            rec.state = MFAState.ENABLED
            return True

        if not self.store.mutate_secret(user_id, _enable):
            current = self.store.get_secret(user_id)
            if current is None or current.id != record.id:
                # re-provisioned while persisting; durable record must follow the registry
                await self._restore_durable(user_id, current)
            logger.warning("mfa_confirm_superseded", user_id=user_id)
            return False
        logger.info("mfa_enabled", user_id=user_id)
        return True

    async def _restore_durable(self, user_id: str, current: Optional[MFASecret]) -> None:
        if current is not None and current.state == MFAState.ENABLED:
            await self._persist(
                user_id,
                mfa_enabled=True,
                mfa_secret=current.secret,
                backup_codes=list(current.backup_code_hashes),
            )
        else:
            await self._persist(user_id, mfa_enabled=False, mfa_secret=None, backup_codes=[])

    async def disable(
        self, user_id: str, *, code: Optional[str] = None, reauthenticated: bool = False
    ) -> None:
        """Enabled -> Disabled. Requires a current code unless the caller re-checked the password."""
        if self.state(user_id) != MFAState.ENABLED:
            raise ValidationError("two-factor authentication is not enabled")
        proven = reauthenticated
        if not proven and code:
            proven = self.verify_totp(user_id, code) or await self.verify_backup_code(
                user_id, code
            )
        if not proven:
            logger.warning("mfa_disable_unproven", user_id=user_id)
            raise InvalidTwoFactorError("invalid two-factor code")
        await self._persist(user_id, mfa_enabled=False, mfa_secret=None, backup_codes=[])

        def _disable(rec: MFASecret) -> None:
            rec.state = MFAState.DISABLED
            rec.secret = ""
            rec.backup_code_hashes = []
            rec.last_used_step = None

        self.store.mutate_secret(user_id, _disable)
        logger.info("mfa_disabled", user_id=user_id)

    def verify_totp(self, user_id: str, code: str) -> bool:
        record = self.store.get_secret(user_id)
        if record is None or record.state != MFAState.ENABLED:
            return False
        now = self._now()
        step = self._match_step(record.secret, code, now)
        if step is None:
            return False
        accepted = self._accept_step(user_id, step, now, require=MFAState.ENABLED)
        if not accepted:
            logger.warning("totp_code_replayed", user_id=user_id)
        return accepted

    async def verify_backup_code(self, user_id: str, code: str) -> bool:
        """Consume a matching backup code; each code works exactly once."""
        normalized = normalize_backup_code(code)
        if normalized is None:
            return False
        record = self.store.get_secret(user_id)
        if record is None or record.state != MFAState.ENABLED:
            return False
        matched: Optional[str] = None
        for hashed in record.backup_code_hashes:
            try:
                if self._hasher.verify(hashed, normalized):
                    matched = hashed
                    break
            except (VerifyMismatchError, VerificationError, InvalidHash):
                continue
        if matched is None:
            return False

        def _consume(rec: MFASecret) -> Optional[List[str]]:
            if matched not in rec.backup_code_hashes:
                return None
            rec.backup_code_hashes.remove(matched)
            rec.last_used_at = self._now()
            return list(rec.backup_code_hashes)

        remaining = self.store.mutate_secret(user_id, _consume)
        if remaining is None:
            # consumed concurrently
            return False
        await self._persist(user_id, backup_codes=remaining)
        logger.info("backup_code_consumed", user_id=user_id, remaining=len(remaining))
        return True

    async def verify_login_code(self, user: User, code: str) -> bool:
        """Second factor at login: a TOTP code, or a backup code."""
        self.ensure_loaded(user)
        if self.verify_totp(user.id, code):
            return True
        return await self.verify_backup_code(user.id, code)

    async def regenerate_backup_codes(self, user_id: str) -> List[str]:
        if self.state(user_id) != MFAState.ENABLED:
            raise ValidationError("two-factor authentication is not enabled")
        plain_codes, hashed_codes = self._new_backup_codes()
        await self._persist(user_id, backup_codes=list(hashed_codes))

        def _replace(rec: MFASecret) -> None:
            rec.backup_code_hashes = list(hashed_codes)

        self.store.mutate_secret(user_id, _replace)
        logger.info("backup_codes_regenerated", user_id=user_id)
        return plain_codes

    def add_recovery_method(self, user_id: str, method: MFAMethod, value: str) -> None:
        method = MFAMethod(method)
        if method == MFAMethod.TOTP:
            raise ValidationError("recovery method must be sms or email")
        if not value or not value.strip():
            raise ValidationError("recovery destination is required")

        def _add(rec: MFASecret) -> bool:
            if rec.state not in (MFAState.PROVISIONED, MFAState.ENABLED):
                return False
            if method == MFAMethod.EMAIL:
                rec.recovery_email = value.strip()
            else:
                rec.recovery_phone = value.strip()
            return True

        if not self.store.mutate_secret(user_id, _add):
            raise ValidationError("two-factor authentication is not configured")
        logger.info("mfa_recovery_method_added", user_id=user_id, method=method.value)

    def status(self, user_id: str) -> MFAStatus:
        record = self.store.get_secret(user_id)
        if record is None:
            return MFAStatus(state=MFAState.UNCONFIGURED, enabled=False)
        enabled = record.state == MFAState.ENABLED
        methods: List[str] = []
        if enabled:
            methods.append(MFAMethod.TOTP.value)
            if record.recovery_phone:
                methods.append(MFAMethod.SMS.value)
            if record.recovery_email:
                methods.append(MFAMethod.EMAIL.value)
        return MFAStatus(
            state=record.state,
            enabled=enabled,
            methods=methods,
            backup_codes_remaining=len(record.backup_code_hashes) if enabled else 0,
            last_used_at=record.last_used_at,
            recovery_email=mask_email(record.recovery_email) if record.recovery_email else None,
            recovery_phone=mask_phone(record.recovery_phone) if record.recovery_phone else None,
        )

    # -- challenges ------------------------------------------------------

    async def issue_challenge(self, user: User, method: MFAMethod) -> MFAChallenge:
        """Open a challenge; sms/email codes are dispatched before it is registered."""
        method = MFAMethod(method)
        record = self.ensure_loaded(user)
        if record is None or record.state != MFAState.ENABLED:
            raise ValidationError("two-factor authentication is not enabled")
        now = self._now()
        challenge = MFAChallenge(
            id=str(uuid.uuid4()),
            user_id=user.id,
            method=method,
            expires_at=now + CHALLENGE_TTL[method],
            max_attempts=self.settings.mfa_challenge_max_attempts,
            created_at=now,
        )
        if method != MFAMethod.TOTP:
            if method == MFAMethod.SMS:
                destination = record.recovery_phone
            else:
                destination = record.recovery_email or user.email
            if not destination:
                raise ValidationError(f"no {method.value} destination on file")
            if self.dispatcher is None:
                raise UpstreamUnavailableError("code delivery is not configured")
            code = f"{secrets.randbelow(10**OTP_CODE_DIGITS):0{OTP_CODE_DIGITS}d}"
            try:
                await asyncio.wait_for(
                    self.dispatcher.send_code(method, destination, code),
                    timeout=self.settings.dispatch_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error("mfa_code_dispatch_timeout", user_id=user.id, method=method.value)
                raise UpstreamUnavailableError() from None
            challenge.code_digest = _digest(code)
        self.store.add_challenge(challenge)
        logger.info("mfa_challenge_issued", user_id=user.id, method=method.value)
        return challenge

    async def verify_challenge(
        self, challenge_id: str, code: str, *, user_id: Optional[str] = None
    ) -> bool:
        """Check ``code`` against an open challenge.

        Every attempt counts. Unknown, used, expired or foreign challenges
        return False; an exhausted attempt budget raises TooManyAttemptsError.
        """
        snapshot = self.store.get_challenge(challenge_id)
        if snapshot is None or (user_id is not None and snapshot.user_id != user_id):
            logger.info("mfa_challenge_unknown", challenge_id=challenge_id)
            return False
        now = self._now()
        step: Optional[int] = None
        if snapshot.method == MFAMethod.TOTP:
            record = self.store.get_secret(snapshot.user_id)
            if record is not None and record.state == MFAState.ENABLED:
                step = self._match_step(record.secret, code, now)
        submitted_digest = _digest(code.strip()) if isinstance(code, str) else ""

        def _attempt(challenge: Optional[MFAChallenge]) -> str:
            if challenge is None:
                return "missing"
            if challenge.used:
                return "used"
            if challenge.expires_at <= now:
                return "expired"
            if challenge.attempts >= challenge.max_attempts:
                return "exhausted"
            challenge.attempts += 1
            if challenge.method == MFAMethod.TOTP:
                # marked used only once the step is accepted
                return "matched" if step is not None else "mismatch"
            if bool(challenge.code_digest) and hmac.compare_digest(
                challenge.code_digest, submitted_digest
            ):
                challenge.used = True
                return "ok"
            return "mismatch"

        def _claim(challenge: Optional[MFAChallenge]) -> bool:
            if challenge is None or challenge.used:
                return False
            challenge.used = True
            return True

        outcome = self.store.mutate_challenge(challenge_id, _attempt)
        if outcome == "exhausted":
            logger.warning(
                "mfa_challenge_exhausted", challenge_id=challenge_id, user_id=snapshot.user_id
            )
            raise TooManyAttemptsError("too many verification attempts")
        if outcome == "matched":
            if not self._accept_step(snapshot.user_id, step, now, require=MFAState.ENABLED):
                logger.warning("totp_code_replayed", user_id=snapshot.user_id)
                return False
            if not self.store.mutate_challenge(challenge_id, _claim):
                logger.info("mfa_challenge_rejected", challenge_id=challenge_id, reason="used")
                return False
            outcome = "ok"
        if outcome != "ok":
            logger.info("mfa_challenge_rejected", challenge_id=challenge_id, reason=outcome)
            return False
        logger.info("mfa_challenge_verified", challenge_id=challenge_id, user_id=snapshot.user_id)
        return True

    def sweep_expired_challenges(self, batch_size: int = 500) -> int:
        """Delete expired challenges in chunks; enabled secrets are untouched."""
        now = self._now()
        ids = self.store.challenge_ids()
        removed = 0
        for start in range(0, len(ids), batch_size):
            removed += self.store.delete_expired_challenges(ids[start : start + batch_size], now)
        if removed:
            logger.debug("mfa_challenges_swept", removed=removed)
        return removed


__all__ = [
    "MFAService",
    "MFASetup",
    "MFAStatus",
    "CodeDispatcher",
    "CredentialWriter",
    "CHALLENGE_TTL",
    "generate_totp",
    "normalize_backup_code",
]
