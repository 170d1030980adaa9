"""Tests for session lifecycle, activity, device trust and the security summary."""

import pytest

from edugate.service.sessions import SessionManager, hash_session_token
from edugate.service.tokens import TokenService
from edugate.storage.memory import MemorySessionStore
from edugate.storage.models import (
    AccountStatus,
    DeviceInfo,
    Location,
    SessionMetadata,
    User,
)

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_2) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def manager(settings, tokens, clock):
    return SessionManager(settings, tokens, clock=clock)


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="ada@example.com",
        password_hash="unused",
        status=AccountStatus.ACTIVE,
        organization_id="org-1",
    )


@pytest.fixture
def laptop():
    return DeviceInfo.from_user_agent(CHROME_MAC)


@pytest.fixture
def phone():
    return DeviceInfo.from_user_agent(SAFARI_IPHONE)


class TestDeviceInfo:
    def test_parses_desktop_chrome(self, laptop):
        assert (laptop.platform, laptop.browser, laptop.os, laptop.device_type) == (
            "web",
            "chrome",
            "macos",
            "desktop",
        )

    def test_parses_iphone_safari(self, phone):
        assert (phone.platform, phone.browser, phone.os, phone.device_type) == (
            "ios",
            "safari",
            "ios",
            "mobile",
        )

    def test_fingerprint_is_stable_and_opaque(self, laptop):
        again = DeviceInfo.from_user_agent(CHROME_MAC)
        assert laptop.fingerprint == again.fingerprint
        assert len(laptop.fingerprint) == 16
        assert "chrome" not in laptop.fingerprint

    def test_missing_user_agent(self):
        device = DeviceInfo.from_user_agent(None)
        assert device.browser == "unknown"
        assert device.os == "unknown"


class TestLifecycle:
    def test_create_binds_tokens_to_session(self, manager, tokens, user, laptop):
        created = manager.create_session(user, device=laptop, location=Location(ip="10.0.0.1"))
        claims = tokens.verify_access_token(created.tokens.access_token)
        assert claims.session_id == created.session.id
        assert created.session.token_hash == hash_session_token(created.session_token)
        assert created.session.device_id == laptop.fingerprint

    def test_every_login_creates_new_session(self, manager, user, laptop):
        first = manager.create_session(user, device=laptop)
        second = manager.create_session(user, device=laptop)
        assert first.session.id != second.session.id
        assert len(manager.get_user_sessions("user-1")) == 2

    def test_standard_expiry(self, manager, user, clock, settings):
        created = manager.create_session(user)
        assert created.session.expires_at == clock() + manager.session_lifetime(False)
        assert manager.session_lifetime(False).total_seconds() == settings.session_ttl_hours * 3600

    def test_remember_me_expiry_matches_extended_refresh(self, manager, tokens, user, clock):
        created = manager.create_session(user, remember_me=True)
        assert created.session.expires_at == clock() + tokens.refresh_ttl(True)
        assert created.session.metadata.remember_me is True
        assert created.tokens.remember_me is True

    def test_validate_checks_token_and_bumps_activity(self, manager, user, clock):
        created = manager.create_session(user)
        clock.advance(minutes=5)
        session = manager.validate_session(created.session.id, created.session_token)
        assert session is not None
        assert session.last_activity_at == clock()
        assert manager.validate_session(created.session.id, "wrong-token") is None

    def test_expired_session_invalid_then_swept(self, manager, user, clock):
        created = manager.create_session(user)
        clock.advance(hours=25)
        assert manager.validate_session(created.session.id) is None
        assert manager.get_session(created.session.id).is_active is True
        assert manager.sweep_expired() == 1
        stored = manager.get_session(created.session.id)
        assert stored.is_active is False
        assert stored.deactivation_reason == "expired"

    def test_sweep_respects_batches(self, manager, user, clock):
        for _ in range(5):
            manager.create_session(user)
        clock.advance(hours=25)
        assert manager.sweep_expired(batch_size=2) == 5
        assert manager.get_user_sessions("user-1") == []

    def test_invalidate_session(self, manager, user):
        created = manager.create_session(user)
        assert manager.invalidate_session(created.session.id, reason="logout") is True
        assert manager.invalidate_session(created.session.id) is False
        assert manager.validate_session(created.session.id) is None
        assert manager.invalidate_session("missing") is False

    def test_invalidate_all_keeps_exception(self, manager, user):
        keep = manager.create_session(user)
        manager.create_session(user)
        manager.create_session(user)
        revoked = manager.invalidate_all_user_sessions("user-1", except_session_id=keep.session.id)
        assert revoked == 2
        active = manager.get_user_sessions("user-1")
        assert [s.id for s in active] == [keep.session.id]

    def test_mark_mfa_verified(self, manager, user):
        created = manager.create_session(user, metadata=SessionMetadata(requires_mfa=True))
        assert manager.mark_mfa_verified(created.session.id) is True
        assert manager.get_session(created.session.id).metadata.mfa_verified is True

    def test_returned_session_is_a_copy(self, manager, user):
        created = manager.create_session(user)
        created.session.is_active = False
        assert manager.get_session(created.session.id).is_active is True


class TestRetention:
    def test_purge_drops_sessions_past_retention(self, manager, user, clock, settings):
        for _ in range(50):
            created = manager.create_session(user)
            manager.log_activity(created.session.id, "login", ip="10.0.0.1")
        clock.advance(hours=25)
        assert manager.sweep_expired() == 50
        assert manager.purge_retained() == 0

        clock.advance(days=settings.session_retention_days)
        assert manager.purge_retained(batch_size=7) == 50
        assert manager.get_user_sessions("user-1", active_only=False) == []
        assert manager.get_user_activity("user-1") == []
        assert manager.store.user_session_ids("user-1") == []

    def test_purge_keeps_active_and_recently_ended(self, manager, user, clock, settings):
        old = manager.create_session(user)
        manager.invalidate_session(old.session.id, reason="logout")
        clock.advance(days=settings.session_retention_days + 1)
        recent = manager.create_session(user)
        manager.invalidate_session(recent.session.id, reason="logout")
        live = manager.create_session(user)

        assert manager.purge_retained() == 1
        assert manager.get_session(old.session.id) is None
        assert manager.get_session(recent.session.id) is not None
        assert manager.get_session(live.session.id).is_active is True

    def test_purge_forgets_stale_failed_logins(self, manager, clock, settings):
        manager.record_failed_login("user-1")
        clock.advance(days=settings.session_retention_days + 1)
        manager.record_failed_login("user-2")
        manager.purge_retained()
        assert manager.store.failed_login_user_ids() == ["user-2"]


class TestActivity:
    def test_activity_newest_first(self, manager, user, clock):
        created = manager.create_session(user, location=Location(ip="10.0.0.1"))
        clock.advance(minutes=1)
        manager.log_activity(created.session.id, "view_course", ip="10.0.0.1", resource="course", resource_id="c-1")
        clock.advance(minutes=1)
        manager.log_activity(created.session.id, "token_refresh")
        actions = [a.action for a in manager.get_session_activity(created.session.id)]
        assert actions == ["token_refresh", "view_course", "login"]
        assert manager.get_session_activity(created.session.id, limit=1)[0].action == "token_refresh"

    def test_activity_log_is_capped(self, settings, tokens, clock, user):
        manager = SessionManager(
            settings, tokens, store=MemorySessionStore(activity_limit=3), clock=clock
        )
        created = manager.create_session(user)
        for i in range(10):
            clock.advance(seconds=1)
            manager.log_activity(created.session.id, f"action-{i}")
        entries = manager.get_session_activity(created.session.id)
        assert [e.action for e in entries] == ["action-9", "action-8", "action-7"]

    def test_user_activity_spans_sessions(self, manager, user, clock):
        manager.create_session(user)
        clock.advance(seconds=1)
        manager.create_session(user)
        assert len(manager.get_user_activity("user-1")) == 2

    def test_unknown_session_activity_ignored(self, manager):
        assert manager.log_activity("missing", "noop") is None


class TestDeviceTrust:
    def test_trust_flags_existing_and_future_sessions(self, manager, user, laptop):
        existing = manager.create_session(user, device=laptop)
        trusted = manager.mark_device_trusted("user-1", laptop)
        assert trusted.device_id == laptop.fingerprint
        assert manager.get_session(existing.session.id).metadata.is_trusted_device is True
        later = manager.create_session(user, device=laptop)
        assert later.session.metadata.is_trusted_device is True
        assert manager.is_trusted_device("user-1", laptop)

    def test_revoke_clears_flag(self, manager, user, laptop):
        manager.mark_device_trusted("user-1", laptop)
        created = manager.create_session(user, device=laptop)
        assert manager.revoke_device_trust("user-1", laptop.fingerprint) is True
        assert manager.get_session(created.session.id).metadata.is_trusted_device is False
        assert manager.list_trusted_devices("user-1") == []
        assert manager.revoke_device_trust("user-1", laptop.fingerprint) is False


class TestSecuritySummary:
    def test_summary_counts(self, manager, user, laptop, phone, clock):
        manager.mark_device_trusted("user-1", laptop)
        manager.create_session(
            user, device=laptop, location=Location(ip="10.0.0.1", country="NL")
        )
        clock.advance(hours=1)
        second = manager.create_session(
            user, device=phone, location=Location(ip="10.0.0.2", country="DE")
        )
        manager.invalidate_session(second.session.id)
        manager.record_failed_login("user-1")

        summary = manager.get_security_summary("user-1")
        assert summary.active_sessions == 1
        assert summary.total_sessions == 2
        assert summary.unique_devices == 2
        assert summary.unique_locations == 2
        assert summary.last_login_at == clock()
        assert summary.failed_logins == 1
        assert summary.suspicious_activity.multiple_locations is True
        assert summary.suspicious_activity.unusual_devices is True

    def test_quiet_account(self, manager, user, laptop, clock):
        manager.mark_device_trusted("user-1", laptop)
        manager.create_session(user, device=laptop, location=Location(ip="10.0.0.1", country="NL"))
        manager.record_failed_login("user-1")
        clock.advance(hours=30)
        summary = manager.get_security_summary("user-1")
        assert summary.failed_logins == 0
        assert summary.suspicious_activity.multiple_locations is False
        assert summary.suspicious_activity.unusual_devices is False
