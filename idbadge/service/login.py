from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Sequence

from idbadge.config import Settings
from idbadge.logging import get_logger
from idbadge.service.badges import (
    MFA_COMPLETE_SCOPE,
    Badge,
    BadgeKind,
    BadgeSigner,
    SignedBadge,
    full_badge,
    mfa_partial_badge,
    orphan_badge,
)
from idbadge.service.credentials import CredentialVerifier
from idbadge.service.directory import IdentityDirectory
from idbadge.service.errors import AuthenticationError
from idbadge.service.limited_actions import LimitedActionKind, LimitedActions
from idbadge.service.mfa import MfaService, TrustedDeviceGrant
from idbadge.service.notifications import Notifier
from idbadge.service.token_actions import TokenActionStore
from idbadge.storage.common import (
    Condition,
    Store,
    UpdateAction,
    attr_exists,
    remove_attr,
    set_attr,
    to_iso,
    utc_now,
)
from idbadge.storage.errors import ConditionalCheckFailed
from idbadge.storage.models import (
    IDENTITY_TABLE,
    MEMBERSHIP_TABLE,
    Identity,
    Membership,
    MfaVariant,
    TokenActionKind,
)

logger = get_logger(__name__)

MFA_REQUIRED_MESSAGE = "Additional authentication through MFA is required."
VERIFY_EMAIL_RESENT = (
    "You must verify your email address before you can log in. "
    "A new registration email has been sent to your email address."
)
VERIFY_EMAIL_THROTTLED = (
    "You must verify your email address before you can log in. "
    "You have already received a verification email."
)


@dataclass
class LoginResult:
    """Outcome of a login step: the badge to set plus an optional degraded-state message."""

    identity: Identity
    badge: Badge
    signed: SignedBadge
    message: Optional[str] = None
    message_code: Optional[str] = None
    trusted_device: Optional[TrustedDeviceGrant] = None

    @property
    def mfa_required(self) -> bool:
        return self.badge.kind == BadgeKind.MFA_PARTIAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": {
                "id": self.identity.id,
                "email": self.identity.email,
                "emailVerified": self.identity.email_verified,
                "mfa": self.identity.mfa.variant.value if self.identity.mfa else MfaVariant.NONE.value,
            },
            "badge": {
                "kind": self.badge.kind.value,
                "accountId": self.badge.account_id,
                "mode": self.badge.mode,
                "roles": list(self.badge.roles),
                "scopes": list(self.badge.scopes),
                "expiresAt": to_iso(self.badge.expires_at),
            },
            "mfaRequired": self.mfa_required,
            "message": self.message,
            "messageCode": self.message_code,
        }


class LoginService:
    """Password login, second-factor completion and account selection.

    ``login`` either finishes with a full/orphan badge or returns a partial
    badge whose only scope is ``mfa:complete``; :meth:`complete_mfa` takes it
    from there. The final write of a login is one conditional update on the
    identity that also carries any second-factor consumption, so a replayed
    code fails that write and surfaces as unauthorized.
    """

    def __init__(
        self,
        store: Store,
        directory: IdentityDirectory,
        credentials: CredentialVerifier,
        mfa: MfaService,
        limited: LimitedActions,
        notifier: Notifier,
        tokens: TokenActionStore,
        signer: BadgeSigner,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.directory = directory
        self.credentials = credentials
        self.mfa = mfa
        self.limited = limited
        self.notifier = notifier
        self.tokens = tokens
        self.signer = signer
        self.settings = settings
        self._clock = clock

    @property
    def _badge_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.badge_ttl_minutes)

    def _is_locked(self, identity: Identity) -> bool:
        return identity.locked_until is not None and identity.locked_until >= self._clock()

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        trusted_device: Optional[str] = None,
    ) -> LoginResult:
        identity = await self.directory.get_by_email(email)
        await self._verify_can_login(identity)
        if not self.credentials.verify_password(password or "", identity.password):
            logger.info("login_password_mismatch", user_id=identity.id, ip=ip)
            await self._complete_login_failure(identity)
        return await self._first_factor_accepted(identity, trusted_device)

    async def _verify_can_login(self, identity: Optional[Identity]) -> None:
        if identity is None:
            logger.info("login_unknown_identity")
            raise AuthenticationError()
        if not identity.email_verified:
            await self._resend_verification(identity)
        if identity.frozen:
            logger.warning("login_identity_frozen", user_id=identity.id)
            raise AuthenticationError()
        if self._is_locked(identity):
            logger.warning("login_user_locked", user_id=identity.id, locked_until=to_iso(identity.locked_until))
            raise AuthenticationError()

    async def _resend_verification(self, identity: Identity) -> None:
        kind = LimitedActionKind.ACCOUNT_ACTIVATION_EMAIL
        if self.limited.is_throttled(identity.limited_actions, kind):
            logger.info("login_verification_email_throttled", user_id=identity.id)
            raise AuthenticationError(VERIFY_EMAIL_THROTTLED, message_code="EmailNotVerified")
        try:
            await self.store.update(
                IDENTITY_TABLE,
                identity.email,
                self.limited.add_actions(identity.limited_actions, kind),
                attr_exists("id"),
            )
        except ConditionalCheckFailed:
            raise AuthenticationError()
        action = await self.tokens.issue(
            TokenActionKind.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_hours),
            email=identity.email,
            user_id=identity.id,
        )
        await self.notifier.send_email_verification(identity.email, action.token)
        logger.info("login_verification_email_resent", user_id=identity.id)
        raise AuthenticationError(VERIFY_EMAIL_RESENT, message_code="EmailNotVerified")

    async def _complete_login_failure(self, identity: Identity) -> None:
        """Record a failed attempt, locking the identity once the threshold is reached. Always raises."""
        kind = LimitedActionKind.FAILED_LOGIN
        ledger = identity.limited_actions
        lock = self.limited.is_throttled(ledger, kind, pending=1)
        if lock:
            locked_until = self._clock() + timedelta(minutes=self.settings.lockout_minutes)
            actions = [
                *self.limited.clear_all_actions(kind),
                set_attr("locked_until", to_iso(locked_until)),
            ]
        else:
            actions = self.limited.add_actions(ledger, kind)
        try:
            await self.store.update(IDENTITY_TABLE, identity.email, actions, attr_exists("id"))
        except ConditionalCheckFailed:
            logger.warning("login_failure_record_conflict", user_id=identity.id)
            raise AuthenticationError()
        if lock:
            logger.warning("login_user_locked_out", user_id=identity.id, minutes=self.settings.lockout_minutes)
            await self.notifier.send_lockout(identity.email, self.settings.lockout_minutes)
        raise AuthenticationError()

    async def _first_factor_accepted(
        self, identity: Identity, trusted_device: Optional[str]
    ) -> LoginResult:
        if identity.mfa_active and not self.mfa.trusted_device_valid(identity, trusted_device):
            if identity.mfa.variant == MfaVariant.SMS:
                await self.mfa.send_login_challenge(identity)
            badge = mfa_partial_badge(
                identity,
                now=self._clock(),
                ttl=timedelta(minutes=self.settings.partial_badge_ttl_minutes),
            )
            logger.info("login_mfa_required", user_id=identity.id, variant=identity.mfa.variant.value)
            return LoginResult(
                identity=identity,
                badge=badge,
                signed=self.signer.sign(badge),
                message=MFA_REQUIRED_MESSAGE,
                message_code="MfaAuthRequired",
            )
        return await self._complete_login_success(identity)

    async def complete_mfa(self, badge: Badge, code: str, *, trust_device: bool = False) -> LoginResult:
        badge.require_scope(MFA_COMPLETE_SCOPE)
        identity = await self.directory.get(badge.user_id)
        if identity is None or identity.frozen or self._is_locked(identity):
            raise AuthenticationError()
        if not identity.mfa_active:
            logger.warning("login_mfa_not_configured", user_id=identity.id)
            raise AuthenticationError()
        match = self.mfa.second_factor(identity, code)
        if match is None:
            logger.info("login_second_factor_rejected", user_id=identity.id)
            await self._complete_login_failure(identity)
        actions = list(match.actions)
        grant = None
        if trust_device:
            grant = self.mfa.trust_device()
            actions.append(grant.action)
        result = await self._complete_login_success(identity, actions, match.conditions)
        logger.info("login_second_factor_accepted", user_id=identity.id, method=match.method)
        result.trusted_device = grant
        return result

    async def login_identity(self, identity: Identity) -> LoginResult:
        """Log in without a password step, after a token-action proved control of the email."""
        if identity.frozen or self._is_locked(identity):
            raise AuthenticationError()
        return await self._first_factor_accepted(identity, None)

    async def _complete_login_success(
        self,
        identity: Identity,
        extra_actions: Sequence[UpdateAction] = (),
        conditions: Sequence[Condition] = (),
    ) -> LoginResult:
        failed = LimitedActionKind.FAILED_LOGIN
        other_ledgers = {k: v for k, v in identity.limited_actions.items() if k != failed.value}
        actions = [
            set_attr("last_login_date", to_iso(self._clock())),
            remove_attr("locked_until"),
            *self.limited.clear_all_actions(failed),
            *self.limited.clear_outdated_actions(other_ledgers),
            *self.mfa.expired_trusted_device_actions(identity),
            *extra_actions,
        ]
        try:
            record = await self.store.update(
                IDENTITY_TABLE, identity.email, actions, attr_exists("id"), *conditions
            )
        except ConditionalCheckFailed:
            # Duplicate submission of the same factor; not a failed login
            logger.warning("login_completion_conflict", user_id=identity.id)
            raise AuthenticationError()
        updated = Identity.from_record(record)
        membership = await self._select_membership(updated)
        return await self.login_response(updated, membership, live_mode=updated.default_mode == "live")

    async def _select_membership(self, identity: Identity) -> Optional[Membership]:
        if identity.default_account_id:
            membership = await self.directory.get_membership(identity.default_account_id, identity.id)
            if membership and membership.accepted:
                return membership
        for membership in await self.directory.memberships_for_user(identity.id):
            if membership.accepted:
                return membership
        return None

    def _orphan(self, identity: Identity, message: str, message_code: str) -> LoginResult:
        badge = orphan_badge(identity, now=self._clock(), ttl=self._badge_ttl)
        logger.info("login_orphan_badge", user_id=identity.id, message_code=message_code)
        return LoginResult(
            identity=identity,
            badge=badge,
            signed=self.signer.sign(badge),
            message=message,
            message_code=message_code,
        )

    async def login_response(
        self, identity: Identity, membership: Optional[Membership], *, live_mode: bool
    ) -> LoginResult:
        """Turn an authenticated identity into a full badge, or an orphan one if a policy blocks the account."""
        now = self._clock()
        account = await self.directory.get_account(membership.account_id) if membership else None
        if membership is None or account is None:
            return self._orphan(
                identity,
                "You have been removed from all Accounts. You can create your own to continue.",
                "NoAccount",
            )
        if account.require_mfa and not identity.mfa_active:
            return self._orphan(
                identity,
                "This Account requires multi-factor authentication. Enable MFA to continue.",
                "AccountMfaRequired",
            )
        if (
            account.max_password_age
            and identity.password
            and identity.password.created_date + timedelta(days=account.max_password_age) < now
        ):
            return self._orphan(
                identity,
                "Your password is older than this Account allows. Change your password to continue.",
                "AccountMaxPasswordAge",
            )
        if account.max_inactive_days:
            last_active = membership.last_login_date or membership.created_date
            if last_active + timedelta(days=account.max_inactive_days) < now:
                return self._orphan(
                    identity,
                    "Your access to this Account was locked after a period of inactivity.",
                    "AccountMaxInactiveDays",
                )
        if account.frozen:
            return self._orphan(identity, "This Account has been frozen.", "AccountFrozen")

        badge = full_badge(identity, membership, live_mode=live_mode, now=now, ttl=self._badge_ttl)
        try:
            await self.store.update(
                MEMBERSHIP_TABLE,
                membership.key,
                [set_attr("last_login_date", to_iso(now))],
                attr_exists("account_id"),
            )
        except ConditionalCheckFailed:
            logger.warning("login_membership_touch_failed", user_id=identity.id, account_id=account.id)
        logger.info("login_succeeded", user_id=identity.id, account_id=account.id, mode=badge.mode)
        return LoginResult(identity=identity, badge=badge, signed=self.signer.sign(badge))
