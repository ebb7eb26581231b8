"""Tests for the login engine.

Tests for:
- Password login and failure accounting / lockout
- MFA partial badges and second-factor completion
- Trusted devices
- Account policies that degrade a login to an orphan badge
"""

from datetime import timedelta

import pytest

from idbadge.service.badges import MFA_COMPLETE_SCOPE, BadgeKind
from idbadge.service.errors import AuthenticationError, ForbiddenError
from idbadge.service.login import MFA_REQUIRED_MESSAGE
from idbadge.storage.common import set_attr
from idbadge.storage.models import ACCOUNT_TABLE, IDENTITY_TABLE

PASSWORD = "correct horse battery"


class TestPasswordLogin:
    async def test_login_returns_full_badge(self, runtime, flows):
        await flows.register_verified("login@example.com")
        result = await runtime.login.login("LOGIN@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.FULL
        assert not result.mfa_required
        assert result.message is None
        body = result.to_dict()
        assert body["user"]["email"] == "login@example.com"
        assert body["badge"]["accountId"] == result.badge.account_id
        verified = runtime.signer.verify(result.signed.payload, result.signed.signature)
        assert verified.user_id == result.identity.id

    async def test_unknown_email_is_unauthorized(self, runtime):
        with pytest.raises(AuthenticationError):
            await runtime.login.login("ghost@example.com", PASSWORD)

    async def test_frozen_identity_cannot_log_in(self, runtime, flows):
        await flows.register_verified("frozen@example.com")
        await runtime.store.update(IDENTITY_TABLE, "frozen@example.com", [set_attr("frozen", True)])
        with pytest.raises(AuthenticationError):
            await runtime.login.login("frozen@example.com", PASSWORD)

    async def test_failures_are_recorded_and_cleared_on_success(self, runtime, flows):
        await flows.register_verified("fails@example.com")
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await runtime.login.login("fails@example.com", "wrong passphrase")
        identity = await flows.identity("fails@example.com")
        assert len(identity.limited_actions["failedLogin"]) == 3
        await runtime.login.login("fails@example.com", PASSWORD)
        identity = await flows.identity("fails@example.com")
        assert "failedLogin" not in identity.limited_actions

    async def test_lockout_after_ten_failures(self, runtime, flows, emails, clock):
        await flows.register_verified("lock@example.com")
        for _ in range(9):
            with pytest.raises(AuthenticationError):
                await runtime.login.login("lock@example.com", "wrong passphrase")
        assert (await flows.identity("lock@example.com")).locked_until is None

        with pytest.raises(AuthenticationError):
            await runtime.login.login("lock@example.com", "wrong passphrase")
        identity = await flows.identity("lock@example.com")
        assert identity.locked_until is not None
        assert "failedLogin" not in identity.limited_actions
        assert emails.to("lock@example.com")[-1]["subject"] == "idbadge account locked"

        # The right password does not help while locked
        with pytest.raises(AuthenticationError):
            await runtime.login.login("lock@example.com", PASSWORD)
        clock.advance(minutes=59)
        with pytest.raises(AuthenticationError):
            await runtime.login.login("lock@example.com", PASSWORD)

        clock.advance(minutes=2)
        result = await runtime.login.login("lock@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.FULL
        assert (await flows.identity("lock@example.com")).locked_until is None

    async def test_failures_outside_window_do_not_lock(self, runtime, flows, clock):
        await flows.register_verified("window@example.com")
        for _ in range(9):
            with pytest.raises(AuthenticationError):
                await runtime.login.login("window@example.com", "wrong passphrase")
        clock.advance(minutes=61)
        with pytest.raises(AuthenticationError):
            await runtime.login.login("window@example.com", "wrong passphrase")
        identity = await flows.identity("window@example.com")
        assert identity.locked_until is None
        assert len(identity.limited_actions["failedLogin"]) == 1


class TestMfaLogin:
    async def test_totp_login_requires_second_factor(self, runtime, flows, clock):
        await flows.register_verified("totp@example.com")
        secret = await flows.enable_totp("totp@example.com", clock)

        partial = await runtime.login.login("totp@example.com", PASSWORD)
        assert partial.mfa_required
        assert partial.badge.scopes == [MFA_COMPLETE_SCOPE]
        assert partial.badge.account_id is None
        assert partial.message == MFA_REQUIRED_MESSAGE
        assert partial.message_code == "MfaAuthRequired"
        with pytest.raises(ForbiddenError):
            partial.badge.require_scope("user:read")

        result = await runtime.login.complete_mfa(partial.badge, flows.totp_now(secret, clock))
        assert result.badge.kind == BadgeKind.FULL

    async def test_totp_code_cannot_be_replayed(self, runtime, flows, clock):
        await flows.register_verified("replay@example.com")
        secret = await flows.enable_totp("replay@example.com", clock)
        code = flows.totp_now(secret, clock)

        partial = await runtime.login.login("replay@example.com", PASSWORD)
        await runtime.login.complete_mfa(partial.badge, code)

        partial = await runtime.login.login("replay@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.login.complete_mfa(partial.badge, code)

        # Once the marker lapses and the step has moved on, the next code works
        clock.advance(minutes=4)
        partial = await runtime.login.login("replay@example.com", PASSWORD)
        result = await runtime.login.complete_mfa(partial.badge, flows.totp_now(secret, clock))
        assert result.badge.kind == BadgeKind.FULL
        used = (await flows.identity("replay@example.com")).mfa.totp_used_codes
        assert code not in used

    async def test_stale_totp_code_rejected_and_counted(self, runtime, flows, clock):
        await flows.register_verified("stale@example.com")
        secret = await flows.enable_totp("stale@example.com", clock)
        stale = runtime.credentials.generate_totp(secret, clock().timestamp() - 120)
        partial = await runtime.login.login("stale@example.com", PASSWORD)
        if runtime.credentials.verify_totp(secret, stale, at=clock()):
            pytest.skip("stale code collided with the current one")
        with pytest.raises(AuthenticationError):
            await runtime.login.complete_mfa(partial.badge, stale)
        identity = await flows.identity("stale@example.com")
        assert len(identity.limited_actions["failedLogin"]) == 1

    async def test_backup_code_is_single_use(self, runtime, flows, clock):
        await flows.register_verified("backup@example.com")
        await flows.enable_totp("backup@example.com", clock)
        codes = await runtime.mfa.get_backup_codes(await flows.identity("backup@example.com"))
        assert len(codes) == 10

        partial = await runtime.login.login("backup@example.com", PASSWORD)
        result = await runtime.login.complete_mfa(partial.badge, codes[0].lower())
        assert result.badge.kind == BadgeKind.FULL

        partial = await runtime.login.login("backup@example.com", PASSWORD)
        with pytest.raises(AuthenticationError):
            await runtime.login.complete_mfa(partial.badge, codes[0])
        await runtime.login.complete_mfa(partial.badge, codes[1])

        remaining = await runtime.mfa.get_backup_codes(await flows.identity("backup@example.com"))
        assert remaining == sorted(codes[2:])

    async def test_sms_login_challenge(self, runtime, flows, sms):
        await flows.register_verified("sms@example.com")
        identity = await flows.identity("sms@example.com")
        await runtime.mfa.start_sms(identity, "+15550001111")
        await runtime.mfa.complete_enrollment(
            await flows.identity("sms@example.com"), sms.last_code("+15550001111")
        )

        partial = await runtime.login.login("sms@example.com", PASSWORD)
        assert partial.mfa_required
        code = sms.last_code("+15550001111")
        result = await runtime.login.complete_mfa(partial.badge, code.lower())
        assert result.badge.kind == BadgeKind.FULL
        assert (await flows.identity("sms@example.com")).mfa.sms_challenge is None

        # The challenge is gone once used
        with pytest.raises(AuthenticationError):
            await runtime.login.complete_mfa(partial.badge, code)

    async def test_sms_challenge_expires(self, runtime, flows, sms, clock):
        await flows.register_verified("smsexp@example.com")
        await runtime.mfa.start_sms(await flows.identity("smsexp@example.com"), "+15550002222")
        await runtime.mfa.complete_enrollment(
            await flows.identity("smsexp@example.com"), sms.last_code("+15550002222")
        )
        partial = await runtime.login.login("smsexp@example.com", PASSWORD)
        clock.advance(seconds=181)
        with pytest.raises(AuthenticationError):
            await runtime.login.complete_mfa(partial.badge, sms.last_code("+15550002222"))

    @staticmethod
    async def _replay_from_stale_read(runtime, flows, monkeypatch, email, partial, code):
        """Complete once, then resubmit ``code`` against the identity as it was before."""
        snapshot = await flows.identity(email)
        result = await runtime.login.complete_mfa(partial.badge, code)
        assert result.badge.kind == BadgeKind.FULL

        async def stale_get(user_id):
            return snapshot

        monkeypatch.setattr(runtime.login.directory, "get", stale_get)
        with pytest.raises(AuthenticationError):
            await runtime.login.complete_mfa(partial.badge, code)
        monkeypatch.undo()
        # A lost race is not a wrong code
        assert "failedLogin" not in (await flows.identity(email)).limited_actions

    async def test_totp_replay_from_stale_read_is_rejected(self, runtime, flows, clock, monkeypatch):
        await flows.register_verified("racetotp@example.com")
        secret = await flows.enable_totp("racetotp@example.com", clock)
        partial = await runtime.login.login("racetotp@example.com", PASSWORD)
        await self._replay_from_stale_read(
            runtime, flows, monkeypatch, "racetotp@example.com", partial, flows.totp_now(secret, clock)
        )

    async def test_sms_replay_from_stale_read_is_rejected(self, runtime, flows, sms, monkeypatch):
        await flows.register_verified("racesms@example.com")
        await runtime.mfa.start_sms(await flows.identity("racesms@example.com"), "+15550003333")
        await runtime.mfa.complete_enrollment(
            await flows.identity("racesms@example.com"), sms.last_code("+15550003333")
        )
        partial = await runtime.login.login("racesms@example.com", PASSWORD)
        await self._replay_from_stale_read(
            runtime, flows, monkeypatch, "racesms@example.com", partial, sms.last_code("+15550003333")
        )

    async def test_backup_code_replay_from_stale_read_is_rejected(self, runtime, flows, clock, monkeypatch):
        await flows.register_verified("racebackup@example.com")
        await flows.enable_totp("racebackup@example.com", clock)
        codes = await runtime.mfa.get_backup_codes(await flows.identity("racebackup@example.com"))
        partial = await runtime.login.login("racebackup@example.com", PASSWORD)
        await self._replay_from_stale_read(
            runtime, flows, monkeypatch, "racebackup@example.com", partial, codes[0]
        )
        remaining = await runtime.mfa.get_backup_codes(await flows.identity("racebackup@example.com"))
        assert remaining == sorted(codes[1:])

    async def test_full_badge_cannot_complete_mfa(self, runtime, flows):
        login = await flows.register_verified("nomfa@example.com")
        with pytest.raises(ForbiddenError):
            await runtime.login.complete_mfa(login.badge, "123456")


class TestTrustedDevice:
    async def test_trusted_device_skips_mfa_until_expiry(self, runtime, flows, clock):
        await flows.register_verified("trust@example.com")
        secret = await flows.enable_totp("trust@example.com", clock)

        partial = await runtime.login.login("trust@example.com", PASSWORD)
        result = await runtime.login.complete_mfa(
            partial.badge, flows.totp_now(secret, clock), trust_device=True
        )
        grant = result.trusted_device
        assert grant is not None
        assert grant.expires_date == clock() + timedelta(days=14)

        direct = await runtime.login.login("trust@example.com", PASSWORD, trusted_device=grant.token)
        assert direct.badge.kind == BadgeKind.FULL

        bogus = await runtime.login.login("trust@example.com", PASSWORD, trusted_device="not-a-device")
        assert bogus.mfa_required

        clock.advance(days=14, seconds=1)
        expired = await runtime.login.login("trust@example.com", PASSWORD, trusted_device=grant.token)
        assert expired.mfa_required

    async def test_expired_devices_pruned_on_login(self, runtime, flows, clock):
        await flows.register_verified("prune@example.com")
        secret = await flows.enable_totp("prune@example.com", clock)
        partial = await runtime.login.login("prune@example.com", PASSWORD)
        grant = (
            await runtime.login.complete_mfa(partial.badge, flows.totp_now(secret, clock), trust_device=True)
        ).trusted_device

        clock.advance(days=15)
        partial = await runtime.login.login("prune@example.com", PASSWORD, trusted_device=grant.token)
        await runtime.login.complete_mfa(partial.badge, flows.totp_now(secret, clock))
        assert grant.token not in (await flows.identity("prune@example.com")).mfa.trusted_devices


class TestAccountPolicies:
    async def _set_policy(self, runtime, account_id, **fields):
        await runtime.store.update(ACCOUNT_TABLE, account_id, [set_attr(k, v) for k, v in fields.items()])

    async def test_require_mfa_yields_orphan(self, runtime, flows):
        login = await flows.register_verified("reqmfa@example.com")
        await self._set_policy(runtime, login.badge.account_id, require_mfa=True)
        result = await runtime.login.login("reqmfa@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.ORPHAN
        assert result.message_code == "AccountMfaRequired"
        assert result.badge.account_id is None
        assert result.badge.has_scope("user:mfa")

    async def test_require_mfa_satisfied_after_enrollment(self, runtime, flows, clock):
        login = await flows.register_verified("reqmfa2@example.com")
        await self._set_policy(runtime, login.badge.account_id, require_mfa=True)
        secret = await flows.enable_totp("reqmfa2@example.com", clock)
        partial = await runtime.login.login("reqmfa2@example.com", PASSWORD)
        result = await runtime.login.complete_mfa(partial.badge, flows.totp_now(secret, clock))
        assert result.badge.kind == BadgeKind.FULL

    async def test_max_password_age(self, runtime, flows, clock):
        login = await flows.register_verified("age@example.com")
        await self._set_policy(runtime, login.badge.account_id, max_password_age=7)
        assert (await runtime.login.login("age@example.com", PASSWORD)).badge.kind == BadgeKind.FULL
        clock.advance(days=8)
        result = await runtime.login.login("age@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.ORPHAN
        assert result.message_code == "AccountMaxPasswordAge"

    async def test_max_inactive_days(self, runtime, flows, clock):
        login = await flows.register_verified("idle@example.com")
        await self._set_policy(runtime, login.badge.account_id, max_inactive_days=7)
        clock.advance(days=6)
        assert (await runtime.login.login("idle@example.com", PASSWORD)).badge.kind == BadgeKind.FULL
        clock.advance(days=6)
        # Activity six days ago keeps the membership alive
        assert (await runtime.login.login("idle@example.com", PASSWORD)).badge.kind == BadgeKind.FULL
        clock.advance(days=8)
        result = await runtime.login.login("idle@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.ORPHAN
        assert result.message_code == "AccountMaxInactiveDays"

    async def test_frozen_account(self, runtime, flows):
        login = await flows.register_verified("cold@example.com")
        await self._set_policy(runtime, login.badge.account_id, frozen=True)
        result = await runtime.login.login("cold@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.ORPHAN
        assert result.message_code == "AccountFrozen"

    async def test_no_membership_yields_orphan(self, runtime, flows):
        login = await flows.register_verified("alone@example.com")
        await runtime.store.delete("membership", f"{login.badge.account_id}/{login.identity.id}")
        result = await runtime.login.login("alone@example.com", PASSWORD)
        assert result.badge.kind == BadgeKind.ORPHAN
        assert result.message_code == "NoAccount"
        assert result.badge.has_scope("account:create")
