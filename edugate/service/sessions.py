from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from edugate.config import Settings
from edugate.logging import get_logger
from edugate.service.tokens import TokenPair, TokenService, TokenSubject
from edugate.storage.memory import MemorySessionStore
from edugate.storage.models import (
    DeviceInfo,
    Location,
    Session,
    SessionActivity,
    SessionMetadata,
    TrustedDevice,
    User,
    utcnow,
)

logger = get_logger(__name__)

RECENT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class CreatedSession:
    session: Session
    tokens: TokenPair
    # opaque token returned to the client once; only its hash is stored
    session_token: str


@dataclass(frozen=True)
class SuspiciousActivity:
    multiple_locations: bool = False
    unusual_devices: bool = False


@dataclass(frozen=True)
class SecuritySummary:
    active_sessions: int
    total_sessions: int
    last_login_at: Optional[datetime]
    unique_devices: int
    unique_locations: int
    suspicious_activity: SuspiciousActivity = field(default_factory=SuspiciousActivity)
    failed_logins: int = 0


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class SessionManager:
    """Tracks sessions per user and device.

    Sessions are deactivated in place, never deleted, so activity history and
    the security summary stay queryable. Expiry is fixed at creation;
    ``last_activity_at`` is informational.
    """

    def __init__(
        self,
        settings: Settings,
        tokens: TokenService,
        *,
        store: Optional[MemorySessionStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.store = store or MemorySessionStore(activity_limit=settings.session_activity_limit)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    def session_lifetime(self, remember_me: bool) -> timedelta:
        if remember_me:
            return self.tokens.refresh_ttl(True)
        return timedelta(hours=self.settings.session_ttl_hours)

    def create_session(
        self,
        user: Union[User, TokenSubject],
        *,
        device: Optional[DeviceInfo] = None,
        location: Optional[Location] = None,
        metadata: Optional[SessionMetadata] = None,
        remember_me: bool = False,
    ) -> CreatedSession:
        """Always creates a new session and a token pair bound to it."""
        subject = user if isinstance(user, TokenSubject) else TokenSubject.from_user(user)
        device = device or DeviceInfo()
        location = location or Location()
        metadata = replace(metadata) if metadata else SessionMetadata()
        metadata.remember_me = remember_me
        metadata.is_trusted_device = self.is_trusted_device(subject.user_id, device)

        now = self._now()
        session_token = secrets.token_urlsafe(32)
        session = Session.new(
            subject.user_id,
            hash_session_token(session_token),
            device=device,
            location=location,
            created_at=now,
            expires_at=now + self.session_lifetime(remember_me),
            metadata=metadata,
        )
        self.store.add(session)
        pair = self.tokens.issue_token_pair(subject, session.id, remember_me=remember_me)
        self.log_activity(session.id, "login", ip=location.ip)
        logger.info(
            "session_created",
            user_id=subject.user_id,
            session_id=session.id,
            device_id=session.device_id,
            login_method=metadata.login_method,
            remember_me=remember_me,
        )
        return CreatedSession(session=replace(session), tokens=pair, session_token=session_token)

    def validate_session(
        self, session_id: str, session_token: Optional[str] = None
    ) -> Optional[Session]:
        """Return the session if active, unexpired and matching; bumps last activity."""
        now = self._now()
        presented = hash_session_token(session_token) if session_token is not None else None

        def _check(session: Session) -> Optional[Session]:
            if not session.is_active or session.expires_at <= now:
                return None
            if presented is not None and not hmac.compare_digest(presented, session.token_hash):
                return None
            session.last_activity_at = now
            return replace(session)

        return self.store.mutate(session_id, _check)

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def mark_mfa_verified(self, session_id: str) -> bool:
        def _mark(session: Session) -> bool:
            if not session.is_active:
                return False
            session.metadata.mfa_verified = True
            return True

        return bool(self.store.mutate(session_id, _mark))

    def _deactivate(self, session: Session, now: datetime, reason: str) -> bool:
        if not session.is_active:
            return False
        session.is_active = False
        session.deactivated_at = now
        session.deactivation_reason = reason
        return True

    def invalidate_session(self, session_id: str, *, reason: str = "logout") -> bool:
        now = self._now()
        changed = bool(self.store.mutate(session_id, lambda s: self._deactivate(s, now, reason)))
        if changed:
            logger.info("session_invalidated", session_id=session_id, reason=reason)
        return changed

    def invalidate_all_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        reason: str = "revoked",
    ) -> int:
        now = self._now()
        count = 0
        for session_id in self.store.user_session_ids(user_id):
            if session_id == except_session_id:
                continue
            if self.store.mutate(session_id, lambda s: self._deactivate(s, now, reason)):
                count += 1
        if count:
            logger.info(
                "session_invalidated",
                user_id=user_id,
                count=count,
                kept_session_id=except_session_id,
                reason=reason,
            )
        return count

    def sweep_expired(self, batch_size: Optional[int] = None) -> int:
        """Deactivate sessions past ``expires_at``, one chunk per lock hold."""
        batch_size = batch_size or self.settings.sweep_batch_size
        now = self._now()
        ids = self.store.session_ids()
        count = 0
        for start in range(0, len(ids), batch_size):
            count += self.store.deactivate_expired(ids[start : start + batch_size], now)
        if count:
            logger.info("sessions_expired", count=count)
        return count

    def purge_retained(self, batch_size: Optional[int] = None) -> int:
        """Delete sessions deactivated longer ago than the retention window.

        Their activity log and index entries go with them; stale failed-login
        records are dropped in the same pass. Returns the number of sessions purged.
        """
        batch_size = batch_size or self.settings.sweep_batch_size
        cutoff = self._now() - timedelta(days=self.settings.session_retention_days)
        ids = self.store.session_ids()
        purged = 0
        for start in range(0, len(ids), batch_size):
            purged += self.store.purge_inactive(ids[start : start + batch_size], cutoff)
        users = self.store.failed_login_user_ids()
        for start in range(0, len(users), batch_size):
            self.store.prune_failed_logins(users[start : start + batch_size], cutoff)
        if purged:
            logger.info("sessions_purged", count=purged)
        return purged

    # activity

    def log_activity(
        self,
        session_id: str,
        action: str,
        *,
        ip: str = "",
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SessionActivity]:
        session = self.store.get(session_id)
        if session is None:
            return None
        entry = SessionActivity(
            session_id=session_id,
            user_id=session.user_id,
            action=action,
            ip=ip,
            timestamp=self._now(),
            resource=resource,
            resource_id=resource_id,
            metadata=metadata,
        )
        self.store.append_activity(entry)
        return entry

    def get_session_activity(self, session_id: str, limit: int = 50) -> List[SessionActivity]:
        entries = self.store.activity_for_session(session_id)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def get_user_activity(self, user_id: str, limit: int = 100) -> List[SessionActivity]:
        entries = self.store.activity_for_user(user_id)
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def get_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        now = self._now()
        sessions = self.store.for_user(user_id)
        if active_only:
            sessions = [s for s in sessions if s.is_active and s.expires_at > now]
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return sessions

    def record_failed_login(self, user_id: str) -> None:
        self.store.record_failed_login(user_id, self._now())

    # device trust

    def is_trusted_device(self, user_id: str, device: DeviceInfo) -> bool:
        fingerprint = device.fingerprint
        return any(d.device_id == fingerprint for d in self.store.trusted_devices(user_id))

    def _set_trust_flag(self, user_id: str, device_id: str, trusted: bool) -> None:
        for session_id in self.store.user_session_ids(user_id):

            def _flag(session: Session) -> None:
                if session.is_active and session.device_id == device_id:
                    session.metadata.is_trusted_device = trusted

            self.store.mutate(session_id, _flag)

    def mark_device_trusted(self, user_id: str, device: DeviceInfo) -> TrustedDevice:
        trusted = TrustedDevice(
            device_id=device.fingerprint,
            user_id=user_id,
            device=device,
            trusted_at=self._now(),
        )
        self.store.add_trusted_device(trusted)
        self._set_trust_flag(user_id, trusted.device_id, True)
        logger.info("device_trusted", user_id=user_id, device_id=trusted.device_id)
        return trusted

    def revoke_device_trust(self, user_id: str, device_id: str) -> bool:
        removed = self.store.remove_trusted_device(user_id, device_id)
        if removed:
            self._set_trust_flag(user_id, device_id, False)
            logger.info("device_trust_revoked", user_id=user_id, device_id=device_id)
        return removed

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        devices = self.store.trusted_devices(user_id)
        devices.sort(key=lambda d: d.trusted_at, reverse=True)
        return devices

    def get_security_summary(self, user_id: str) -> SecuritySummary:
        """Counts plus suspicious-activity heuristics; surfaced for alerting, never enforced."""
        now = self._now()
        sessions = self.store.for_user(user_id)
        active = [s for s in sessions if s.is_active and s.expires_at > now]
        recent = [s for s in sessions if s.created_at >= now - RECENT_WINDOW]
        recent_countries = {s.location.country for s in recent if s.location.country}
        trusted_ids = {d.device_id for d in self.store.trusted_devices(user_id)}
        locations = {s.location.country or s.location.ip for s in sessions if s.location.country or s.location.ip}

        return SecuritySummary(
            active_sessions=len(active),
            total_sessions=len(sessions),
            last_login_at=max((s.created_at for s in sessions), default=None),
            unique_devices=len({s.device_id for s in sessions}),
            unique_locations=len(locations),
            suspicious_activity=SuspiciousActivity(
                multiple_locations=len(recent_countries) > 1,
                unusual_devices=any(s.device_id not in trusted_ids for s in recent),
            ),
            failed_logins=self.store.failed_logins_since(user_id, now - RECENT_WINDOW),
        )


__all__ = [
    "SessionManager",
    "CreatedSession",
    "SecuritySummary",
    "SuspiciousActivity",
    "hash_session_token",
]
