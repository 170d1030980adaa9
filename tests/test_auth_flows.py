"""Flow tests for AuthOrchestrator over the in-memory stores."""

import pytest

from edugate.service.auth import AuthOrchestrator, StoreGateway
from edugate.service.errors import InvalidTokenError
from edugate.service.mfa import MFAService, generate_totp
from edugate.service.notifications import EmailService
from edugate.service.outcomes import (
    AuthFailure,
    Completed,
    FailureKind,
    LoginSuccess,
    RefreshSuccess,
    RegisterSuccess,
)
from edugate.service.rate_limit import ClientIdentity, RateLimiter
from edugate.service.sessions import SessionManager
from edugate.service.tokens import TokenService
from edugate.storage.memory import MemoryStore
from edugate.storage.models import AccountStatus, MFAState

PASSWORD = "correct horse battery"


class RecordingEmail(EmailService):
    def __init__(self):
        super().__init__()
        self.resets = []
        self.verifications = []

    def send_password_reset(self, to_email, token):
        self.resets.append((to_email, token))
        return True

    def send_email_verification(self, to_email, token):
        self.verifications.append((to_email, token))
        return True


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def send_code(self, method, destination, code):
        self.sent.append((method, destination, code))


class Harness:
    def __init__(self, settings, clock, hasher):
        self.clock = clock
        self.store = MemoryStore(mfa_encryption_key="flow-test-key")
        self.gateway = StoreGateway(self.store, timeout=5, retry_backoff=0)
        self.tokens = TokenService(settings, clock=clock)
        self.sessions = SessionManager(settings, self.tokens, clock=clock)
        self.email = RecordingEmail()
        self.mfa = MFAService(
            settings,
            credentials=self.gateway,
            dispatcher=RecordingDispatcher(),
            hasher=hasher,
            clock=clock,
        )
        self.auth = AuthOrchestrator(
            settings,
            gateway=self.gateway,
            tokens=self.tokens,
            sessions=self.sessions,
            mfa=self.mfa,
            rate_limiter=RateLimiter(settings, clock=clock.timestamp),
            email=self.email,
            hasher=hasher,
            clock=clock,
        )

    async def register(self, email="ada@example.com", **kwargs):
        outcome = await self.auth.register(email, PASSWORD, "Ada", "Lovelace", **kwargs)
        assert isinstance(outcome, RegisterSuccess), outcome
        return outcome

    async def principal(self, access_token):
        return await self.auth.authenticate(access_token)


@pytest.fixture
def harness(settings, clock, fast_hasher):
    return Harness(settings, clock, fast_hasher)


@pytest.fixture
def verifying_harness(settings, clock, fast_hasher):
    return Harness(
        settings.model_copy(update={"require_email_verification": True}), clock, fast_hasher
    )


class TestRegister:
    async def test_creates_active_user_with_personal_organization(self, harness, clock):
        outcome = await harness.register()
        user = outcome.user
        assert user.status == AccountStatus.ACTIVE
        assert user.role.value == "student"
        assert outcome.verification_pending is False
        assert outcome.tokens is not None and outcome.session is not None

        org = harness.store.find_organization_by_id(user.organization_id)
        stamp = int(clock().timestamp() * 1000)
        assert org.slug == f"ada-lovelace-{stamp}"
        assert org.name == "Ada Lovelace's Organization"
        # verification is optional here, so no email goes out
        assert harness.email.verifications == []

    async def test_joins_existing_organization_by_slug(self, harness):
        org = harness.store.create_organization("Acme Academy", "acme")
        outcome = await harness.register(organization_slug=" Acme ")
        assert outcome.user.organization_id == org.id

    async def test_same_name_same_instant_gets_distinct_slug(self, harness):
        first = await harness.register()
        second = await harness.register("ada2@example.com")
        slugs = {
            harness.store.find_organization_by_id(o.user.organization_id).slug
            for o in (first, second)
        }
        assert len(slugs) == 2

    async def test_unknown_organization_slug(self, harness):
        outcome = await harness.auth.register(
            "ada@example.com", PASSWORD, "Ada", "Lovelace", organization_slug="nowhere"
        )
        assert isinstance(outcome, AuthFailure)
        assert outcome.kind == FailureKind.NOT_FOUND
        assert harness.store.find_by_email("ada@example.com") is None

    async def test_duplicate_email_conflicts(self, harness):
        await harness.register()
        outcome = await harness.auth.register("ADA@example.com", PASSWORD, "Ada", "Byron")
        assert outcome.kind == FailureKind.CONFLICT

    @pytest.mark.parametrize(
        "email, password, first",
        [
            ("not-an-email", PASSWORD, "Ada"),
            ("ada@example.com", "short", "Ada"),
            ("ada@example.com", PASSWORD, "   "),
        ],
    )
    async def test_invalid_input(self, harness, email, password, first):
        outcome = await harness.auth.register(email, password, first, "Lovelace")
        assert outcome.kind == FailureKind.VALIDATION

    async def test_registration_rate_limited(self, harness):
        client = ClientIdentity(ip="198.51.100.4")
        for i in range(3):
            await harness.auth.register(f"user{i}@example.com", PASSWORD, "A", "B", client=client)
        outcome = await harness.auth.register("late@example.com", PASSWORD, "A", "B", client=client)
        assert outcome.kind == FailureKind.RATE_LIMITED
        assert outcome.retry_after == 3600

    async def test_signup_disabled(self, settings, clock, fast_hasher):
        closed = Harness(settings.model_copy(update={"allow_signup": False}), clock, fast_hasher)
        outcome = await closed.auth.register("ada@example.com", PASSWORD, "Ada", "Lovelace")
        assert outcome.kind == FailureKind.FORBIDDEN


class TestEmailVerification:
    async def test_pending_user_cannot_log_in_until_verified(self, verifying_harness):
        h = verifying_harness
        outcome = await h.register()
        assert outcome.verification_pending is True
        assert outcome.tokens is None
        assert outcome.user.status == AccountStatus.PENDING_VERIFICATION
        assert [to for to, _ in h.email.verifications] == ["ada@example.com"]

        denied = await h.auth.login("ada@example.com", PASSWORD)
        assert denied.kind == FailureKind.EMAIL_VERIFICATION_REQUIRED

        _, token = h.email.verifications[-1]
        assert isinstance(await h.auth.verify_email(token), Completed)
        user = h.store.find_by_email("ada@example.com")
        assert user.status == AccountStatus.ACTIVE
        assert user.email_verified

        assert isinstance(await h.auth.login("ada@example.com", PASSWORD), LoginSuccess)

    async def test_token_is_single_use(self, verifying_harness):
        h = verifying_harness
        await h.register()
        _, token = h.email.verifications[-1]
        await h.auth.verify_email(token)
        assert (await h.auth.verify_email(token)).kind == FailureKind.VALIDATION

    async def test_expired_token(self, verifying_harness, clock):
        h = verifying_harness
        await h.register()
        _, token = h.email.verifications[-1]
        clock.advance(hours=25)
        assert (await h.auth.verify_email(token)).kind == FailureKind.VALIDATION

    async def test_resend_replaces_previous_token(self, verifying_harness):
        h = verifying_harness
        await h.register()
        _, first = h.email.verifications[-1]
        outcome = await h.auth.resend_verification("ada@example.com")
        assert isinstance(outcome, Completed)
        _, second = h.email.verifications[-1]
        assert first != second
        assert (await h.auth.verify_email(first)).kind == FailureKind.VALIDATION
        assert isinstance(await h.auth.verify_email(second), Completed)

    async def test_active_unverified_user_can_request_verification(self, harness):
        await harness.register()
        assert harness.email.verifications == []
        assert isinstance(await harness.auth.resend_verification("ada@example.com"), Completed)
        _, token = harness.email.verifications[-1]
        assert isinstance(await harness.auth.verify_email(token), Completed)
        assert harness.store.find_by_email("ada@example.com").email_verified

    async def test_resend_for_unknown_email_looks_the_same(self, verifying_harness):
        h = verifying_harness
        outcome = await h.auth.resend_verification("ghost@example.com")
        assert isinstance(outcome, Completed)
        assert h.email.verifications == []


class TestLogin:
    async def test_success_issues_tokens_and_session(self, harness, clock):
        await harness.register()
        outcome = await harness.auth.login("Ada@Example.com", PASSWORD, remember_me=True)
        assert isinstance(outcome, LoginSuccess)
        assert outcome.tokens.remember_me is True
        assert outcome.session.metadata.remember_me is True
        assert outcome.user.last_login_at == clock()
        claims = harness.tokens.verify_access_token(outcome.tokens.access_token)
        assert claims.session_id == outcome.session.id

    async def test_wrong_password_and_unknown_email_look_the_same(self, harness):
        await harness.register()
        wrong = await harness.auth.login("ada@example.com", "wrong password!")
        unknown = await harness.auth.login("ghost@example.com", PASSWORD)
        assert wrong.kind == unknown.kind == FailureKind.INVALID_CREDENTIALS
        assert wrong.detail == unknown.detail

    async def test_failed_login_counts_toward_summary(self, harness):
        registered = await harness.register()
        await harness.auth.login("ada@example.com", "wrong password!")
        summary = harness.sessions.get_security_summary(registered.user.id)
        assert summary.failed_logins == 1

    @pytest.mark.parametrize(
        "status, kind",
        [
            (AccountStatus.SUSPENDED, FailureKind.ACCOUNT_SUSPENDED),
            (AccountStatus.INACTIVE, FailureKind.ACCOUNT_INACTIVE),
        ],
    )
    async def test_account_status_blocks_login(self, harness, status, kind):
        registered = await harness.register()
        harness.store.update_fields(registered.user.id, status=status)
        outcome = await harness.auth.login("ada@example.com", PASSWORD)
        assert outcome.kind == kind

    async def test_rate_limited_after_repeated_failures(self, harness):
        await harness.register()
        for _ in range(5):
            await harness.auth.login("ada@example.com", "wrong password!")
        outcome = await harness.auth.login("ada@example.com", PASSWORD)
        assert outcome.kind == FailureKind.RATE_LIMITED
        assert outcome.retry_after == 1800
        assert outcome.to_error().retry_after == 1800

    async def test_success_resets_counter(self, harness):
        await harness.register()
        for _ in range(4):
            await harness.auth.login("ada@example.com", "wrong password!")
        assert isinstance(await harness.auth.login("ada@example.com", PASSWORD), LoginSuccess)
        for _ in range(4):
            await harness.auth.login("ada@example.com", "wrong password!")
        assert isinstance(await harness.auth.login("ada@example.com", PASSWORD), LoginSuccess)


class TestTwoFactorLogin:
    async def _enable(self, harness):
        registered = await harness.register()
        principal = await harness.principal(registered.tokens.access_token)
        setup = await harness.auth.setup_two_factor(principal)
        code = generate_totp(setup.secret, harness.clock.timestamp())
        assert isinstance(await harness.auth.enable_two_factor(principal, code), Completed)
        harness.clock.advance(seconds=30)
        return principal, setup

    async def test_enable_persists_to_credential_record(self, harness):
        principal, _ = await self._enable(harness)
        user = harness.store.find_by_id(principal.user_id)
        assert user.mfa_enabled is True
        assert user.mfa_secret
        assert harness.sessions.get_session(principal.session_id).metadata.mfa_verified

    async def test_code_required(self, harness):
        await self._enable(harness)
        outcome = await harness.auth.login("ada@example.com", PASSWORD)
        assert outcome.kind == FailureKind.TWO_FACTOR_REQUIRED

    async def test_wrong_code(self, harness):
        await self._enable(harness)
        outcome = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code="000000")
        assert outcome.kind == FailureKind.INVALID_TWO_FACTOR

    async def test_totp_code_completes_login(self, harness):
        _, setup = await self._enable(harness)
        code = generate_totp(setup.secret, harness.clock.timestamp())
        outcome = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code=code)
        assert isinstance(outcome, LoginSuccess)
        assert outcome.session.metadata.requires_mfa is True
        assert outcome.session.metadata.mfa_verified is True

        replay = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code=code)
        assert replay.kind == FailureKind.INVALID_TWO_FACTOR

    async def test_backup_code_works_once(self, harness):
        _, setup = await self._enable(harness)
        backup = setup.backup_codes[0]
        first = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code=backup)
        assert isinstance(first, LoginSuccess)
        second = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code=backup)
        assert second.kind == FailureKind.INVALID_TWO_FACTOR

    async def test_login_after_restart_rehydrates_secret(self, harness, settings, fast_hasher):
        _, setup = await self._enable(harness)
        harness.mfa = MFAService(
            settings, credentials=harness.gateway, hasher=fast_hasher, clock=harness.clock
        )
        harness.auth.mfa = harness.mfa
        code = generate_totp(setup.secret, harness.clock.timestamp())
        outcome = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code=code)
        assert isinstance(outcome, LoginSuccess)

    async def test_disable_with_password_revokes_other_sessions(self, harness):
        principal, setup = await self._enable(harness)
        code = generate_totp(setup.secret, harness.clock.timestamp())
        other = await harness.auth.login("ada@example.com", PASSWORD, two_factor_code=code)

        wrong = await harness.auth.disable_two_factor(principal, password="not my password")
        assert wrong.kind == FailureKind.INVALID_CREDENTIALS

        outcome = await harness.auth.disable_two_factor(principal, password=PASSWORD)
        assert isinstance(outcome, Completed)
        assert harness.mfa.state(principal.user_id) == MFAState.DISABLED
        assert harness.sessions.get_session(other.session.id).is_active is False
        assert harness.sessions.get_session(principal.session_id).is_active is True
        assert harness.store.find_by_id(principal.user_id).mfa_enabled is False

        plain = await harness.auth.login("ada@example.com", PASSWORD)
        assert isinstance(plain, LoginSuccess)

    async def test_disable_without_proof(self, harness):
        principal, _ = await self._enable(harness)
        outcome = await harness.auth.disable_two_factor(principal)
        assert outcome.kind == FailureKind.INVALID_TWO_FACTOR

    async def test_status_and_backup_regeneration(self, harness):
        principal, setup = await self._enable(harness)
        status = await harness.auth.two_factor_status(principal)
        assert status.enabled is True
        codes = await harness.auth.regenerate_backup_codes(principal)
        assert set(codes).isdisjoint(setup.backup_codes)
        old = await harness.auth.login(
            "ada@example.com", PASSWORD, two_factor_code=setup.backup_codes[0]
        )
        assert old.kind == FailureKind.INVALID_TWO_FACTOR

    async def test_email_challenge_marks_session_verified(self, harness):
        principal, _ = await self._enable(harness)
        challenge = await harness.auth.issue_challenge(principal, "email")
        _, destination, code = harness.mfa.dispatcher.sent[-1]
        assert destination == "ada@example.com"
        wrong_code = f"{(int(code) + 1) % 10**6:06d}"
        wrong = await harness.auth.verify_challenge(principal, challenge.id, wrong_code)
        assert wrong.kind == FailureKind.INVALID_TWO_FACTOR
        assert isinstance(
            await harness.auth.verify_challenge(principal, challenge.id, code), Completed
        )

    async def test_challenge_requires_enabled_mfa(self, harness):
        registered = await harness.register()
        principal = await harness.principal(registered.tokens.access_token)
        outcome = await harness.auth.issue_challenge(principal, "email")
        assert outcome.kind == FailureKind.VALIDATION


class TestRefreshAndLogout:
    async def test_refresh_rotates_tokens(self, harness):
        registered = await harness.register()
        outcome = await harness.auth.refresh(registered.tokens.refresh_token)
        assert isinstance(outcome, RefreshSuccess)
        assert outcome.session_id == registered.session.id
        assert outcome.tokens.refresh_token != registered.tokens.refresh_token

    async def test_reuse_invalidates_session(self, harness):
        registered = await harness.register()
        rotated = await harness.auth.refresh(registered.tokens.refresh_token)
        reused = await harness.auth.refresh(registered.tokens.refresh_token)
        assert reused.kind == FailureKind.INVALID_TOKEN
        assert harness.sessions.get_session(registered.session.id).is_active is False
        after = await harness.auth.refresh(rotated.tokens.refresh_token)
        assert after.kind == FailureKind.INVALID_TOKEN

    async def test_refresh_keeps_remember_me(self, harness):
        await harness.register()
        login = await harness.auth.login("ada@example.com", PASSWORD, remember_me=True)
        outcome = await harness.auth.refresh(login.tokens.refresh_token)
        assert outcome.tokens.remember_me is True

    async def test_garbage_refresh_token(self, harness):
        assert (await harness.auth.refresh("nope")).kind == FailureKind.INVALID_TOKEN

    async def test_suspended_user_cannot_refresh(self, harness):
        registered = await harness.register()
        harness.store.update_fields(registered.user.id, status=AccountStatus.SUSPENDED)
        outcome = await harness.auth.refresh(registered.tokens.refresh_token)
        assert outcome.kind == FailureKind.INVALID_TOKEN

    async def test_logout_ends_session_and_revokes_refresh(self, harness):
        registered = await harness.register()
        principal = await harness.principal(registered.tokens.access_token)
        outcome = await harness.auth.logout(
            principal, refresh_token=registered.tokens.refresh_token
        )
        assert isinstance(outcome, Completed)
        with pytest.raises(InvalidTokenError):
            await harness.principal(registered.tokens.access_token)
        assert (await harness.auth.refresh(registered.tokens.refresh_token)).kind == (
            FailureKind.INVALID_TOKEN
        )

    async def test_revoke_session_scoped_to_owner(self, harness):
        first = await harness.register()
        second = await harness.register("grace@example.com")
        principal = await harness.principal(first.tokens.access_token)
        outcome = harness.auth.revoke_session(principal, second.session.id)
        assert outcome.kind == FailureKind.NOT_FOUND
        assert harness.sessions.get_session(second.session.id).is_active is True


class TestPasswordReset:
    async def test_reset_flow_revokes_sessions(self, harness):
        registered = await harness.register()
        outcome = await harness.auth.forgot_password("ada@example.com")
        assert isinstance(outcome, Completed)
        _, token = harness.email.resets[-1]

        assert isinstance(await harness.auth.reset_password(token, "a brand new secret"), Completed)
        assert harness.sessions.get_session(registered.session.id).is_active is False
        assert (await harness.auth.login("ada@example.com", PASSWORD)).kind == (
            FailureKind.INVALID_CREDENTIALS
        )
        assert isinstance(
            await harness.auth.login("ada@example.com", "a brand new secret"), LoginSuccess
        )

    async def test_unknown_email_gets_same_response(self, harness):
        await harness.register()
        known = await harness.auth.forgot_password("ada@example.com")
        unknown = await harness.auth.forgot_password("ghost@example.com")
        assert known == unknown
        assert len(harness.email.resets) == 1

    async def test_token_single_use_and_expiry(self, harness, clock):
        await harness.register()
        await harness.auth.forgot_password("ada@example.com")
        _, token = harness.email.resets[-1]
        await harness.auth.reset_password(token, "a brand new secret")
        again = await harness.auth.reset_password(token, "another new secret")
        assert again.kind == FailureKind.VALIDATION

        await harness.auth.forgot_password("ada@example.com")
        _, late = harness.email.resets[-1]
        clock.advance(minutes=16)
        assert (await harness.auth.reset_password(late, "yet another secret")).kind == (
            FailureKind.VALIDATION
        )

    async def test_weak_new_password(self, harness):
        await harness.register()
        await harness.auth.forgot_password("ada@example.com")
        _, token = harness.email.resets[-1]
        assert (await harness.auth.reset_password(token, "short")).kind == FailureKind.VALIDATION

    async def test_rate_limited(self, harness):
        client = ClientIdentity(ip="192.0.2.9")
        for _ in range(3):
            await harness.auth.forgot_password("ada@example.com", client=client)
        outcome = await harness.auth.forgot_password("ada@example.com", client=client)
        assert outcome.kind == FailureKind.RATE_LIMITED
