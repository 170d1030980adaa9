from __future__ import annotations

import base64
import hashlib
import os
import secrets
import threading
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from cryptography.fernet import Fernet, InvalidToken

from edugate.logging import get_logger
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import (
    MFAChallenge,
    MFASecret,
    Organization,
    Session,
    SessionActivity,
    TrustedDevice,
    User,
    utcnow,
)

T = TypeVar("T")

_USER_FIELDS = frozenset(User.__dataclass_fields__) - {"id", "created_at"}


class MemoryStore:
    """In-memory credential store: users and organizations.

    TOTP secrets are Fernet-encrypted at rest and decrypted on read.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.organizations: Dict[str, Organization] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            self.logger.warning("mfa_cipher_ephemeral_key")
            material = secrets.token_urlsafe(64)
        try:
            return Fernet(self._derive_cipher_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _export(self, user: User) -> User:
        return replace(
            user,
            mfa_secret=self._decrypt_mfa_secret(user.mfa_secret),
            backup_codes=list(user.backup_codes),
        )

    def verify_connection(self) -> None:
        """Always reachable; present for parity with networked stores."""

    # users
    def find_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().casefold()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email.casefold() == normalized),
                None,
            )
            return self._export(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export(user) if user else None

    def save(self, user: User) -> User:
        with self._data_lock:
            normalized = user.email.strip().casefold()
            if any(
                existing.email.casefold() == normalized and existing.id != user.id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(
                user,
                email=normalized,
                mfa_secret=self._encrypt_mfa_secret(user.mfa_secret),
                backup_codes=list(user.backup_codes),
                updated_at=utcnow(),
            )
            self.users[stored.id] = stored
            return self._export(stored)

    def update_fields(self, user_id: str, **fields: Any) -> User:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {', '.join(sorted(unknown))}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if "email" in fields:
                fields["email"] = fields["email"].strip().casefold()
                if any(
                    u.email == fields["email"] and u.id != user_id
                    for u in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "mfa_secret" in fields:
                fields["mfa_secret"] = self._encrypt_mfa_secret(fields["mfa_secret"])
            if "backup_codes" in fields:
                fields["backup_codes"] = list(fields["backup_codes"] or [])
            updated = replace(user, **fields, updated_at=utcnow())
            self.users[user_id] = updated
            return self._export(updated)

    # organizations
    def find_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._data_lock:
            return next(
                (o for o in self.organizations.values() if o.slug == slug), None
            )

    def find_organization_by_id(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            return self.organizations.get(organization_id)

    def create_organization(self, name: str, slug: str) -> Organization:
        with self._data_lock:
            if any(o.slug == slug for o in self.organizations.values()):
                raise ConstraintViolation("organization slug already exists", {"field": "slug"})
            org = Organization(id=str(uuid.uuid4()), name=name, slug=slug)
            self.organizations[org.id] = org
            return org


class MemorySessionStore:
    """Lock-guarded session registry with activity log and device trust."""

    def __init__(self, *, activity_limit: int = 100) -> None:
        self._lock = threading.Lock()
        self.activity_limit = activity_limit
        self._sessions: Dict[str, Session] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._activity: Dict[str, Deque[SessionActivity]] = {}
        self._trusted: Dict[str, Dict[str, TrustedDevice]] = {}
        self._failed_logins: Dict[str, Deque[datetime]] = {}

    def add(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session
            self._by_user.setdefault(session.user_id, set()).add(session.id)

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def mutate(self, session_id: str, fn: Callable[[Session], T]) -> Optional[T]:
        """Apply ``fn`` to the stored session atomically; None if missing."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            return fn(session)

    def for_user(self, user_id: str) -> List[Session]:
        with self._lock:
            return [
                replace(self._sessions[sid])
                for sid in self._by_user.get(user_id, ())
                if sid in self._sessions
            ]

    def session_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def user_session_ids(self, user_id: str) -> List[str]:
        with self._lock:
            return list(self._by_user.get(user_id, ()))

    def deactivate_expired(self, session_ids: Iterable[str], now: datetime) -> int:
        count = 0
        with self._lock:
            for sid in session_ids:
                session = self._sessions.get(sid)
                if session and session.is_active and session.expires_at <= now:
                    session.is_active = False
                    session.deactivated_at = now
                    session.deactivation_reason = "expired"
                    count += 1
        return count

    def purge_inactive(self, session_ids: Iterable[str], cutoff: datetime) -> int:
        """Drop deactivated sessions that ended before ``cutoff``, with their activity."""
        count = 0
        with self._lock:
            for sid in session_ids:
                session = self._sessions.get(sid)
                if session is None or session.is_active:
                    continue
                if (session.deactivated_at or session.expires_at) > cutoff:
                    continue
                del self._sessions[sid]
                self._activity.pop(sid, None)
                owned = self._by_user.get(session.user_id)
                if owned is not None:
                    owned.discard(sid)
                    if not owned:
                        del self._by_user[session.user_id]
                count += 1
        return count

    def append_activity(self, entry: SessionActivity) -> None:
        with self._lock:
            log = self._activity.get(entry.session_id)
            if log is None:
                log = deque(maxlen=self.activity_limit)
                self._activity[entry.session_id] = log
            log.append(entry)

    def activity_for_session(self, session_id: str) -> List[SessionActivity]:
        with self._lock:
            return list(self._activity.get(session_id, ()))

    def activity_for_user(self, user_id: str) -> List[SessionActivity]:
        with self._lock:
            entries: List[SessionActivity] = []
            for sid in self._by_user.get(user_id, ()):
                entries.extend(self._activity.get(sid, ()))
            return entries

    def add_trusted_device(self, device: TrustedDevice) -> None:
        with self._lock:
            self._trusted.setdefault(device.user_id, {})[device.device_id] = device

    def remove_trusted_device(self, user_id: str, device_id: str) -> bool:
        with self._lock:
            return self._trusted.get(user_id, {}).pop(device_id, None) is not None

    def trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._lock:
            return list(self._trusted.get(user_id, {}).values())

    def record_failed_login(self, user_id: str, at: datetime) -> None:
        with self._lock:
            log = self._failed_logins.get(user_id)
            if log is None:
                log = deque(maxlen=self.activity_limit)
                self._failed_logins[user_id] = log
            log.append(at)

    def failed_logins_since(self, user_id: str, since: datetime) -> int:
        with self._lock:
            return sum(1 for at in self._failed_logins.get(user_id, ()) if at >= since)

    def failed_login_user_ids(self) -> List[str]:
        with self._lock:
            return list(self._failed_logins)

    def prune_failed_logins(self, user_ids: Iterable[str], cutoff: datetime) -> int:
        """Forget users whose most recent failed login is older than ``cutoff``."""
        count = 0
        with self._lock:
            for uid in user_ids:
                log = self._failed_logins.get(uid)
                if log is not None and (not log or log[-1] < cutoff):
                    del self._failed_logins[uid]
                    count += 1
        return count


class MemoryMFAStore:
    """Lock-guarded registry of MFA secrets and challenges."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._secrets: Dict[str, MFASecret] = {}
        self._challenges: Dict[str, MFAChallenge] = {}

    def get_secret(self, user_id: str) -> Optional[MFASecret]:
        with self._lock:
            record = self._secrets.get(user_id)
            return replace(record, backup_code_hashes=list(record.backup_code_hashes)) if record else None

    def put_secret(self, record: MFASecret) -> None:
        with self._lock:
            self._secrets[record.user_id] = record

    def mutate_secret(self, user_id: str, fn: Callable[[MFASecret], T]) -> Optional[T]:
        with self._lock:
            record = self._secrets.get(user_id)
            if record is None:
                return None
            return fn(record)

    def add_challenge(self, challenge: MFAChallenge) -> None:
        with self._lock:
            self._challenges[challenge.id] = challenge

    def get_challenge(self, challenge_id: str) -> Optional[MFAChallenge]:
        with self._lock:
            challenge = self._challenges.get(challenge_id)
            return replace(challenge) if challenge else None

    def mutate_challenge(
        self, challenge_id: str, fn: Callable[[Optional[MFAChallenge]], T]
    ) -> T:
        """Apply ``fn`` atomically; ``fn`` receives None for unknown ids."""
        with self._lock:
            return fn(self._challenges.get(challenge_id))

    def challenge_ids(self) -> List[str]:
        with self._lock:
            return list(self._challenges)

    def delete_expired_challenges(self, challenge_ids: Iterable[str], now: datetime) -> int:
        count = 0
        with self._lock:
            for cid in challenge_ids:
                challenge = self._challenges.get(cid)
                if challenge and challenge.expires_at <= now:
                    del self._challenges[cid]
                    count += 1
        return count


class MemoryTokenLedger:
    """Consumed refresh-token ids, kept until the token would have expired."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._consumed: Dict[str, float] = {}

    async def consume(self, jti: str, expires_at: float) -> bool:
        """Mark ``jti`` consumed; False if it already was."""
        with self._lock:
            if jti in self._consumed:
                return False
            self._consumed[jti] = expires_at
            return True

    async def is_consumed(self, jti: str) -> bool:
        with self._lock:
            return jti in self._consumed

    def prune(self, now: float, batch_size: int = 500) -> int:
        """Forget ids past their token's expiry, one chunk per lock hold."""
        with self._lock:
            jtis = list(self._consumed)
        removed = 0
        for start in range(0, len(jtis), batch_size):
            with self._lock:
                for jti in jtis[start : start + batch_size]:
                    exp = self._consumed.get(jti)
                    if exp is not None and exp <= now:
                        del self._consumed[jti]
                        removed += 1
        return removed


class MemoryOneTimeTokenStore:
    """Single-use tokens (password reset, email verification) keyed by digest."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[Tuple[str, str], Tuple[str, datetime]] = {}

    def put(self, purpose: str, digest: str, user_id: str, expires_at: datetime) -> None:
        with self._lock:
            self._tokens[(purpose, digest)] = (user_id, expires_at)

    def pop(self, purpose: str, digest: str) -> Optional[Tuple[str, datetime]]:
        with self._lock:
            return self._tokens.pop((purpose, digest), None)

    def discard_for_user(self, purpose: str, user_id: str) -> int:
        with self._lock:
            stale = [k for k, (uid, _) in self._tokens.items() if k[0] == purpose and uid == user_id]
            for key in stale:
                del self._tokens[key]
        return len(stale)

    def prune(self, now: datetime, batch_size: int = 500) -> int:
        with self._lock:
            keys = list(self._tokens)
        removed = 0
        for start in range(0, len(keys), batch_size):
            with self._lock:
                for key in keys[start : start + batch_size]:
                    entry = self._tokens.get(key)
                    if entry is not None and entry[1] <= now:
                        del self._tokens[key]
                        removed += 1
        return removed


__all__ = [
    "MemoryStore",
    "MemorySessionStore",
    "MemoryMFAStore",
    "MemoryTokenLedger",
    "MemoryOneTimeTokenStore",
]
