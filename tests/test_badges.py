"""Tests for badge construction and signing."""

from datetime import timedelta

import pytest

from idbadge.service.badges import (
    MFA_COMPLETE_SCOPE,
    USER_SCOPES,
    BadgeKind,
    BadgeSigner,
    UserPrivilege,
    full_badge,
    mfa_partial_badge,
    orphan_badge,
    roles_for_privilege,
    scopes_for_roles,
)
from idbadge.service.errors import AuthenticationError, ForbiddenError
from idbadge.storage.models import Identity, Membership

SECRET = "Test-Badge-Secret_for-Automation-Only-987654321!"


@pytest.fixture
def signer(clock):
    return BadgeSigner(SECRET, issuer="idbadge", audience="idbadge-clients", clock=clock)


@pytest.fixture
def identity(clock):
    return Identity(id="u1", email="user@example.com", email_verified=True, created_date=clock())


def _membership(clock, privilege=UserPrivilege.OWNER, scopes=()):
    return Membership(
        account_id="acc1",
        user_id="u1",
        roles=roles_for_privilege(privilege),
        scopes=list(scopes),
        created_date=clock(),
    )


class TestScopes:
    def test_owner_scopes(self):
        scopes = scopes_for_roles(roles_for_privilege(UserPrivilege.OWNER))
        assert {"account:update", "account:read", "account:users:read", "account:invitations"} <= set(scopes)
        assert len(scopes) == len(set(scopes))

    def test_limited_access_is_read_only(self):
        assert scopes_for_roles(roles_for_privilege(UserPrivilege.LIMITED_ACCESS)) == ["account:read"]

    def test_full_access_excludes_owner_role(self):
        assert "owner" not in roles_for_privilege(UserPrivilege.FULL_ACCESS)


class TestBadgeKinds:
    def test_full_badge_merges_user_role_and_membership_scopes(self, identity, clock):
        membership = _membership(clock, UserPrivilege.LIMITED_ACCESS, scopes=["apikeys:manage"])
        badge = full_badge(identity, membership, live_mode=False, now=clock(), ttl=timedelta(hours=3))
        assert badge.kind == BadgeKind.FULL
        assert badge.account_id == "acc1"
        assert badge.mode == "test"
        assert badge.scopes[: len(USER_SCOPES)] == USER_SCOPES
        assert "account:read" in badge.scopes and "apikeys:manage" in badge.scopes

    def test_orphan_badge_has_no_account(self, identity, clock):
        badge = orphan_badge(identity, now=clock(), ttl=timedelta(hours=3))
        assert badge.account_id is None
        assert badge.has_scope("account:create")
        with pytest.raises(ForbiddenError):
            badge.require_account()

    def test_partial_badge_only_completes_mfa(self, identity, clock):
        badge = mfa_partial_badge(identity, now=clock(), ttl=timedelta(minutes=15))
        assert badge.scopes == [MFA_COMPLETE_SCOPE]
        for scope in USER_SCOPES:
            with pytest.raises(ForbiddenError):
                badge.require_scope(scope)


class TestBadgeSigner:
    def test_sign_verify_roundtrip(self, signer, identity, clock):
        badge = full_badge(identity, _membership(clock), live_mode=True, now=clock(), ttl=timedelta(hours=3))
        signed = signer.sign(badge)
        assert signed.payload.count(".") == 1
        verified = signer.verify(signed.payload, signed.signature)
        assert verified.user_id == "u1"
        assert verified.kind == BadgeKind.FULL
        assert verified.scopes == badge.scopes
        assert verified.expires_at == badge.expires_at

    def test_tampered_payload_rejected(self, signer, identity, clock):
        signed = signer.sign(orphan_badge(identity, now=clock(), ttl=timedelta(hours=3)))
        other = signer.sign(full_badge(identity, _membership(clock), live_mode=True, now=clock(), ttl=timedelta(hours=3)))
        with pytest.raises(AuthenticationError):
            signer.verify(other.payload, signed.signature)

    def test_other_secret_rejected(self, signer, identity, clock):
        signed = signer.sign(orphan_badge(identity, now=clock(), ttl=timedelta(hours=3)))
        stranger = BadgeSigner("x" * 48, issuer="idbadge", audience="idbadge-clients", clock=clock)
        with pytest.raises(AuthenticationError):
            stranger.verify(signed.payload, signed.signature)

    def test_expired_badge_rejected(self, signer, identity, clock):
        signed = signer.sign(mfa_partial_badge(identity, now=clock(), ttl=timedelta(minutes=15)))
        clock.advance(minutes=15)
        with pytest.raises(AuthenticationError):
            signer.verify(signed.payload, signed.signature)

    @pytest.mark.parametrize(
        "payload,signature",
        [(None, None), ("", "sig"), ("only-one-segment", "sig"), ("a.b.c", "sig"), ("!!.??", "sig")],
    )
    def test_malformed_input_rejected(self, signer, payload, signature):
        with pytest.raises(AuthenticationError):
            signer.verify(payload, signature)

    def test_audience_mismatch_rejected(self, signer, identity, clock):
        signed = signer.sign(orphan_badge(identity, now=clock(), ttl=timedelta(hours=3)))
        other_audience = BadgeSigner(SECRET, issuer="idbadge", audience="someone-else", clock=clock)
        with pytest.raises(AuthenticationError):
            other_audience.verify(signed.payload, signed.signature)

    def test_missing_secret_refused(self):
        with pytest.raises(ValueError):
            BadgeSigner("", issuer="idbadge", audience="idbadge-clients")
