"""Tests for TOTP provisioning, backup codes and out-of-band challenges."""

import asyncio
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import AsyncMock

import pytest

from edugate.service.errors import (
    ConflictError,
    InvalidTwoFactorError,
    TooManyAttemptsError,
    UpstreamUnavailableError,
    ValidationError,
)
from edugate.service.mfa import CHALLENGE_TTL, MFAService, generate_totp, normalize_backup_code
from edugate.storage.models import AccountStatus, MFAMethod, MFAState, User


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    async def send_code(self, method, destination, code):
        self.sent.append((method, destination, code))


class SlowDispatcher:
    async def send_code(self, method, destination, code):
        await asyncio.sleep(1)


class GatedWriter:
    """Credential writer whose writes block until ``release`` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.fields = {}

    async def update_fields(self, user_id, **fields):
        self.started.set()
        await self.release.wait()
        self.fields.update(fields)


@pytest.fixture
def credentials():
    return AsyncMock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def mfa(settings, clock, credentials, dispatcher, fast_hasher):
    return MFAService(
        settings,
        credentials=credentials,
        dispatcher=dispatcher,
        hasher=fast_hasher,
        clock=clock,
    )


@pytest.fixture
def user():
    return User(
        id="user-1",
        email="ada@example.com",
        password_hash="unused",
        status=AccountStatus.ACTIVE,
    )


def _code(secret, clock, offset_seconds=0):
    return generate_totp(secret, clock.timestamp() + offset_seconds)


async def _enable(mfa, clock, user_id="user-1"):
    setup = mfa.setup(user_id, "ada@example.com")
    assert await mfa.confirm_setup(user_id, _code(setup.secret, clock))
    # the confirming step is now spent
    clock.advance(seconds=30)
    return setup


class TestSetup:
    def test_setup_provisions_secret_and_backup_codes(self, mfa, settings):
        setup = mfa.setup("user-1", "ada@example.com")
        assert re.fullmatch(r"[A-Z2-7]{32}", setup.secret)
        assert len(setup.backup_codes) == settings.mfa_backup_code_count
        assert all(re.fullmatch(r"[0-9A-F]{4}-[0-9A-F]{4}", c) for c in setup.backup_codes)
        assert mfa.state("user-1") == MFAState.PROVISIONED

    def test_provisioning_uri_format(self, mfa):
        setup = mfa.setup("user-1", "ada@example.com")
        assert setup.provisioning_uri.startswith("otpauth://totp/EduGate%3Aada%40example.com?")
        assert f"secret={setup.secret}" in setup.provisioning_uri
        assert "issuer=EduGate" in setup.provisioning_uri
        assert "algorithm=SHA1&digits=6&period=30" in setup.provisioning_uri

    async def test_confirm_enables_and_persists(self, mfa, clock, credentials):
        setup = mfa.setup("user-1", "ada@example.com")
        assert await mfa.confirm_setup("user-1", _code(setup.secret, clock)) is True
        assert mfa.state("user-1") == MFAState.ENABLED
        credentials.update_fields.assert_awaited_once()
        _, kwargs = credentials.update_fields.call_args
        assert kwargs["mfa_enabled"] is True
        assert kwargs["mfa_secret"] == setup.secret
        assert len(kwargs["backup_codes"]) == len(setup.backup_codes)
        assert setup.backup_codes[0] not in kwargs["backup_codes"]

    async def test_confirm_with_wrong_code_stays_provisioned(self, mfa, credentials):
        mfa.setup("user-1", "ada@example.com")
        assert await mfa.confirm_setup("user-1", "000000") is False
        assert mfa.state("user-1") == MFAState.PROVISIONED
        credentials.update_fields.assert_not_awaited()

    async def test_confirm_without_setup(self, mfa):
        assert await mfa.confirm_setup("user-1", "123456") is False
        assert mfa.state("user-1") == MFAState.UNCONFIGURED

    async def test_confirm_leaves_state_when_persist_fails(self, mfa, clock, credentials):
        credentials.update_fields.side_effect = [UpstreamUnavailableError(), None]
        setup = mfa.setup("user-1", "ada@example.com")
        code = _code(setup.secret, clock)
        with pytest.raises(UpstreamUnavailableError):
            await mfa.confirm_setup("user-1", code)
        assert mfa.state("user-1") == MFAState.PROVISIONED
        # the step was not spent, so the same code works on retry
        assert await mfa.confirm_setup("user-1", code) is True
        assert mfa.state("user-1") == MFAState.ENABLED

    async def test_setup_again_while_confirm_is_persisting(self, settings, clock, fast_hasher):
        writer = GatedWriter()
        mfa = MFAService(settings, credentials=writer, hasher=fast_hasher, clock=clock)
        first = mfa.setup("user-1", "ada@example.com")
        confirm = asyncio.create_task(mfa.confirm_setup("user-1", _code(first.secret, clock)))
        await writer.started.wait()
        second = mfa.setup("user-1", "ada@example.com")
        writer.release.set()

        assert await confirm is False
        assert mfa.state("user-1") == MFAState.PROVISIONED
        assert mfa.store.get_secret("user-1").secret == second.secret
        assert writer.fields["mfa_enabled"] is False
        assert writer.fields["mfa_secret"] is None

        assert await mfa.confirm_setup("user-1", _code(second.secret, clock)) is True
        assert writer.fields["mfa_secret"] == second.secret
        assert mfa.store.get_secret("user-1").secret == second.secret

    async def test_setup_rejected_while_enabled(self, mfa, clock):
        await _enable(mfa, clock)
        with pytest.raises(ConflictError):
            mfa.setup("user-1", "ada@example.com")


class TestTotp:
    async def test_code_accepted_once_per_step(self, mfa, clock):
        setup = await _enable(mfa, clock)
        code = _code(setup.secret, clock)
        assert mfa.verify_totp("user-1", code) is True
        clock.advance(seconds=1)
        assert mfa.verify_totp("user-1", code) is False

    async def test_next_step_code_accepted(self, mfa, clock):
        setup = await _enable(mfa, clock)
        assert mfa.verify_totp("user-1", _code(setup.secret, clock))
        clock.advance(seconds=30)
        assert mfa.verify_totp("user-1", _code(setup.secret, clock))

    async def test_older_step_rejected_after_newer_accepted(self, mfa, clock):
        setup = await _enable(mfa, clock)
        clock.advance(seconds=60)
        older = _code(setup.secret, clock, -30)
        assert mfa.verify_totp("user-1", _code(setup.secret, clock)) is True
        assert mfa.verify_totp("user-1", older) is False

    async def test_window_tolerance(self, mfa, clock, settings):
        setup = await _enable(mfa, clock)
        clock.advance(minutes=5)
        drift = 30 * settings.totp_window
        assert mfa.verify_totp("user-1", _code(setup.secret, clock, -drift)) is True
        clock.advance(minutes=5)
        assert mfa.verify_totp("user-1", _code(setup.secret, clock, -(drift + 30))) is False

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", None])
    async def test_malformed_codes_rejected(self, mfa, clock, code):
        await _enable(mfa, clock)
        assert mfa.verify_totp("user-1", code) is False

    def test_not_enabled_rejects(self, mfa, clock):
        setup = mfa.setup("user-1", "ada@example.com")
        assert mfa.verify_totp("user-1", _code(setup.secret, clock)) is False


class TestBackupCodes:
    def test_normalize(self):
        assert normalize_backup_code("abcd1234") == "ABCD-1234"
        assert normalize_backup_code(" abcd-1234 ") == "ABCD-1234"
        assert normalize_backup_code("xyz") is None
        assert normalize_backup_code("123456") is None

    async def test_backup_code_single_use(self, mfa, clock, credentials):
        setup = await _enable(mfa, clock)
        code = setup.backup_codes[0]
        assert await mfa.verify_backup_code("user-1", code) is True
        assert await mfa.verify_backup_code("user-1", code) is False
        assert mfa.status("user-1").backup_codes_remaining == len(setup.backup_codes) - 1
        _, kwargs = credentials.update_fields.call_args
        assert len(kwargs["backup_codes"]) == len(setup.backup_codes) - 1

    async def test_backup_code_input_is_normalized(self, mfa, clock):
        setup = await _enable(mfa, clock)
        assert await mfa.verify_backup_code("user-1", setup.backup_codes[1].replace("-", "").lower())

    async def test_login_code_accepts_backup_code(self, mfa, clock, user):
        setup = await _enable(mfa, clock)
        assert await mfa.verify_login_code(user, setup.backup_codes[2]) is True
        assert await mfa.verify_login_code(user, "FFFF-0000") is False

    async def test_regenerate_replaces_set(self, mfa, clock):
        setup = await _enable(mfa, clock)
        fresh = await mfa.regenerate_backup_codes("user-1")
        assert set(fresh).isdisjoint(setup.backup_codes)
        assert await mfa.verify_backup_code("user-1", setup.backup_codes[0]) is False
        assert await mfa.verify_backup_code("user-1", fresh[0]) is True

    async def test_regenerate_requires_enabled(self, mfa):
        mfa.setup("user-1", "ada@example.com")
        with pytest.raises(ValidationError):
            await mfa.regenerate_backup_codes("user-1")


class TestDisable:
    async def test_disable_with_current_code(self, mfa, clock, credentials):
        setup = await _enable(mfa, clock)
        await mfa.disable("user-1", code=_code(setup.secret, clock))
        assert mfa.state("user-1") == MFAState.DISABLED
        status = mfa.status("user-1")
        assert status.enabled is False
        assert status.backup_codes_remaining == 0
        credentials.update_fields.assert_awaited_with(
            "user-1", mfa_enabled=False, mfa_secret=None, backup_codes=[]
        )

    async def test_disable_requires_proof(self, mfa, clock):
        await _enable(mfa, clock)
        with pytest.raises(InvalidTwoFactorError):
            await mfa.disable("user-1")
        with pytest.raises(InvalidTwoFactorError):
            await mfa.disable("user-1", code="000000")
        assert mfa.state("user-1") == MFAState.ENABLED

    async def test_disable_after_reauthentication(self, mfa, clock):
        await _enable(mfa, clock)
        await mfa.disable("user-1", reauthenticated=True)
        assert mfa.state("user-1") == MFAState.DISABLED

    async def test_disable_when_not_enabled(self, mfa):
        with pytest.raises(ValidationError):
            await mfa.disable("user-1", reauthenticated=True)

    async def test_setup_allowed_again_after_disable(self, mfa, clock):
        await _enable(mfa, clock)
        await mfa.disable("user-1", reauthenticated=True)
        mfa.setup("user-1", "ada@example.com")
        assert mfa.state("user-1") == MFAState.PROVISIONED


class TestStatusAndRecovery:
    def test_unconfigured_status(self, mfa):
        status = mfa.status("nobody")
        assert status.state == MFAState.UNCONFIGURED
        assert status.enabled is False
        assert status.methods == []

    async def test_status_masks_recovery_destinations(self, mfa, clock):
        await _enable(mfa, clock)
        mfa.add_recovery_method("user-1", MFAMethod.SMS, "+1 555 010 1234")
        status = mfa.status("user-1")
        assert status.methods == ["totp", "sms", "email"]
        assert status.recovery_phone == "***1234"
        assert status.recovery_email == "ad***@example.com"

    def test_totp_is_not_a_recovery_method(self, mfa):
        mfa.setup("user-1", "ada@example.com")
        with pytest.raises(ValidationError):
            mfa.add_recovery_method("user-1", MFAMethod.TOTP, "x")

    def test_recovery_needs_configuration(self, mfa):
        with pytest.raises(ValidationError):
            mfa.add_recovery_method("user-1", MFAMethod.EMAIL, "ada@example.com")

    def test_ensure_loaded_rehydrates_from_user_record(self, mfa, clock, user):
        user.mfa_enabled = True
        user.mfa_secret = "JBSWY3DPEHPK3PXP"
        record = mfa.ensure_loaded(user)
        assert record is not None
        assert mfa.state(user.id) == MFAState.ENABLED
        assert mfa.verify_totp(user.id, generate_totp("JBSWY3DPEHPK3PXP", clock.timestamp()))


class TestChallenges:
    async def test_email_challenge_round_trip(self, mfa, clock, user, dispatcher):
        await _enable(mfa, clock)
        challenge = await mfa.issue_challenge(user, MFAMethod.EMAIL)
        method, destination, code = dispatcher.sent[-1]
        assert method == MFAMethod.EMAIL
        assert destination == "ada@example.com"
        assert re.fullmatch(r"\d{6}", code)
        assert challenge.code_digest and challenge.code_digest != code
        assert challenge.expires_at == clock() + CHALLENGE_TTL[MFAMethod.EMAIL]
        assert await mfa.verify_challenge(challenge.id, code, user_id="user-1") is True
        assert await mfa.verify_challenge(challenge.id, code, user_id="user-1") is False

    async def test_sms_challenge_requires_phone(self, mfa, clock, user):
        await _enable(mfa, clock)
        with pytest.raises(ValidationError):
            await mfa.issue_challenge(user, MFAMethod.SMS)
        mfa.add_recovery_method("user-1", MFAMethod.SMS, "+15550101234")
        challenge = await mfa.issue_challenge(user, MFAMethod.SMS)
        assert challenge.method == MFAMethod.SMS

    async def test_totp_challenge(self, mfa, clock, user):
        setup = await _enable(mfa, clock)
        challenge = await mfa.issue_challenge(user, MFAMethod.TOTP)
        assert challenge.code_digest is None
        assert await mfa.verify_challenge(challenge.id, _code(setup.secret, clock)) is True

    async def test_replayed_totp_leaves_challenge_open(self, mfa, clock, user):
        setup = await _enable(mfa, clock)
        code = _code(setup.secret, clock)
        assert mfa.verify_totp("user-1", code) is True
        challenge = await mfa.issue_challenge(user, MFAMethod.TOTP)
        assert await mfa.verify_challenge(challenge.id, code) is False
        assert mfa.store.get_challenge(challenge.id).used is False

        clock.advance(seconds=30)
        assert await mfa.verify_challenge(challenge.id, _code(setup.secret, clock)) is True
        assert mfa.store.get_challenge(challenge.id).used is True

    async def test_attempts_exhausted(self, mfa, clock, user, settings):
        await _enable(mfa, clock)
        challenge = await mfa.issue_challenge(user, MFAMethod.EMAIL)
        for _ in range(settings.mfa_challenge_max_attempts):
            assert await mfa.verify_challenge(challenge.id, "not-it") is False
        with pytest.raises(TooManyAttemptsError):
            await mfa.verify_challenge(challenge.id, "not-it")

    async def test_expired_challenge_rejected(self, mfa, clock, user, dispatcher):
        await _enable(mfa, clock)
        challenge = await mfa.issue_challenge(user, MFAMethod.EMAIL)
        code = dispatcher.sent[-1][2]
        clock.advance(minutes=16)
        assert await mfa.verify_challenge(challenge.id, code) is False

    async def test_foreign_and_unknown_challenges(self, mfa, clock, user, dispatcher):
        await _enable(mfa, clock)
        challenge = await mfa.issue_challenge(user, MFAMethod.EMAIL)
        code = dispatcher.sent[-1][2]
        assert await mfa.verify_challenge(challenge.id, code, user_id="someone-else") is False
        assert await mfa.verify_challenge("missing", code) is False
        assert await mfa.verify_challenge(challenge.id, code, user_id="user-1") is True

    async def test_challenge_requires_enabled_mfa(self, mfa, user):
        with pytest.raises(ValidationError):
            await mfa.issue_challenge(user, MFAMethod.EMAIL)

    async def test_dispatch_timeout_surfaces_as_upstream(self, settings, clock, fast_hasher, user):
        slow = MFAService(
            settings.model_copy(update={"dispatch_timeout_seconds": 0.01}),
            dispatcher=SlowDispatcher(),
            hasher=fast_hasher,
            clock=clock,
        )
        await _enable(slow, clock)
        with pytest.raises(UpstreamUnavailableError):
            await slow.issue_challenge(user, MFAMethod.EMAIL)
        assert slow.store.challenge_ids() == []

    async def test_sweep_removes_only_expired(self, mfa, clock, user):
        await _enable(mfa, clock)
        await mfa.issue_challenge(user, MFAMethod.TOTP)
        clock.advance(minutes=6)
        live = await mfa.issue_challenge(user, MFAMethod.EMAIL)
        assert mfa.sweep_expired_challenges(batch_size=1) == 1
        assert mfa.store.challenge_ids() == [live.id]
        assert mfa.state("user-1") == MFAState.ENABLED


class TestConcurrency:
    async def test_gathered_backup_code_consumed_once(self, mfa, clock):
        setup = await _enable(mfa, clock)
        code = setup.backup_codes[0]
        results = await asyncio.gather(
            mfa.verify_backup_code("user-1", code), mfa.verify_backup_code("user-1", code)
        )
        assert sorted(results) == [False, True]

    def test_threaded_backup_code_consumed_once(self, settings, clock, fast_hasher):
        mfa = MFAService(settings, hasher=fast_hasher, clock=clock)
        setup = asyncio.run(_enable(mfa, clock))
        code = setup.backup_codes[0]
        barrier = threading.Barrier(2)

        def attempt(_):
            barrier.wait()
            return asyncio.run(mfa.verify_backup_code("user-1", code))

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, range(2)))
        assert sorted(results) == [False, True]
        assert mfa.status("user-1").backup_codes_remaining == len(setup.backup_codes) - 1
