from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from idbadge.config import Settings
from idbadge.logging import get_logger
from idbadge.service.badges import Badge, UserPrivilege, roles_for_privilege
from idbadge.service.directory import IdentityDirectory
from idbadge.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from idbadge.service.limited_actions import LimitedActionKind, LimitedActions
from idbadge.service.notifications import Notifier
from idbadge.service.registration import validate_email
from idbadge.service.token_actions import TokenActionStore
from idbadge.storage.common import (
    Store,
    Transaction,
    attr_exists,
    set_attr,
    to_iso,
    utc_now,
)
from idbadge.storage.errors import TransactionCanceled
from idbadge.storage.models import (
    IDENTITY_TABLE,
    MEMBERSHIP_TABLE,
    Identity,
    Membership,
    PendingInvitation,
    TokenActionKind,
    new_id,
)

logger = get_logger(__name__)

INVITE_SCOPE = "account:invitations"


@dataclass
class Invitation:
    user_id: str
    account_id: str
    email: str
    created_date: datetime
    expires_date: datetime

    @classmethod
    def from_membership(cls, membership: Membership) -> "Invitation":
        pending = membership.pending_invitation
        if pending is None:
            raise ValueError("membership has no pending invitation")
        return cls(
            user_id=membership.user_id,
            account_id=membership.account_id,
            email=pending.email,
            created_date=pending.created_date,
            expires_date=pending.expires_date,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "accountId": self.account_id,
            "email": self.email,
            "createdDate": to_iso(self.created_date),
            "expiresDate": to_iso(self.expires_date),
        }


class InvitationService:
    """Invite users into the badge's account and manage pending invitations.

    A pending invitation is a membership carrying ``pending_invitation``;
    accepting it (see :class:`~idbadge.service.registration.RegistrationService`)
    removes that field, after which it can no longer be cancelled or refreshed.
    """

    def __init__(
        self,
        store: Store,
        directory: IdentityDirectory,
        limited: LimitedActions,
        notifier: Notifier,
        tokens: TokenActionStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.directory = directory
        self.limited = limited
        self.notifier = notifier
        self.tokens = tokens
        self.settings = settings
        self._clock = clock

    async def invite(
        self,
        badge: Badge,
        email: str,
        *,
        privilege: Optional[UserPrivilege] = None,
        roles: Optional[Sequence[str]] = None,
        scopes: Optional[Sequence[str]] = None,
    ) -> Invitation:
        badge.require_scope(INVITE_SCOPE)
        account_id = badge.require_account()
        email = validate_email(email)
        if privilege and roles:
            raise ValidationError("Specify either a privilege or roles, not both.")

        account = await self.directory.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Could not find account '{account_id}'.")
        inviter = await self.directory.get(badge.user_id)
        if inviter is None:
            raise AuthenticationError()
        kind = LimitedActionKind.ACCOUNT_INVITATION
        if self.limited.is_throttled(inviter.limited_actions, kind):
            logger.info("invitation_throttled", user_id=inviter.id)
            raise RateLimitedError(
                "You have reached the maximum number of invitations you can send. Please wait 24 hours."
            )

        now = self._clock()
        expires = now + timedelta(days=self.settings.invitation_days)
        txn = Transaction()
        txn.update(
            IDENTITY_TABLE,
            inviter.email,
            self.limited.add_actions(inviter.limited_actions, kind),
            attr_exists("id"),
        )

        invitee = await self.directory.get_by_email(email)
        if invitee is None:
            invitee = Identity(
                id=new_id(),
                email=email,
                default_account_id=account_id,
                default_mode="live",
                created_date=now,
            )
            IdentityDirectory.put_identity(txn, invitee)
            logger.info("invitation_new_identity", user_id=invitee.id)

        resolved_roles = roles_for_privilege(privilege) if privilege else (list(roles) if roles else None)
        membership = await self.directory.get_membership(account_id, invitee.id)
        if membership is not None:
            if membership.accepted:
                raise ConflictError(f"The user {email} has already accepted an invitation.")
            actions = [
                set_attr("pending_invitation.created_date", to_iso(now)),
                set_attr("pending_invitation.expires_date", to_iso(expires)),
            ]
            if resolved_roles is not None:
                actions.append(set_attr("roles", resolved_roles))
                membership.roles = resolved_roles
            if scopes is not None:
                actions.append(set_attr("scopes", list(scopes)))
                membership.scopes = list(scopes)
            txn.update(MEMBERSHIP_TABLE, membership.key, actions, attr_exists("pending_invitation"))
            membership.pending_invitation = PendingInvitation(email=email, created_date=now, expires_date=expires)
            logger.info("invitation_refreshed", account_id=account_id, user_id=invitee.id)
        else:
            if not resolved_roles and not scopes:
                raise ValidationError("Must specify a privilege or one of roles, scopes.")
            membership = Membership(
                account_id=account_id,
                user_id=invitee.id,
                roles=resolved_roles or [],
                scopes=list(scopes or []),
                user_display_name=email,
                account_display_name=account.name,
                created_date=now,
                pending_invitation=PendingInvitation(email=email, created_date=now, expires_date=expires),
            )
            IdentityDirectory.put_membership(txn, membership)
            logger.info("invitation_created", account_id=account_id, user_id=invitee.id)

        try:
            await self.store.transact(txn)
        except TransactionCanceled as exc:
            if not any(exc.reasons):
                logger.error("invitation_transaction_failed", account_id=account_id)
                raise ServerError("The invitation could not be created.")
            logger.warning("invitation_conflict", account_id=account_id, reasons=exc.reasons)
            raise ConflictError("The invitation changed while it was being sent. Please try again.")

        action = await self.tokens.issue(
            TokenActionKind.ACCEPT_INVITATION,
            timedelta(days=self.settings.invitation_days),
            email=email,
            user_id=invitee.id,
            membership_id=membership.key,
        )
        await self.notifier.send_invitation(
            email, account.name, action.token, days=self.settings.invitation_days
        )
        return Invitation.from_membership(membership)

    async def list_invitations(self, badge: Badge) -> List[Invitation]:
        badge.require_scope(INVITE_SCOPE)
        account_id = badge.require_account()
        memberships = await self.directory.memberships_for_account(account_id)
        return [Invitation.from_membership(m) for m in memberships if not m.accepted]

    async def get_invitation(self, badge: Badge, user_id: str) -> Invitation:
        badge.require_scope(INVITE_SCOPE)
        account_id = badge.require_account()
        membership = await self.directory.get_membership(account_id, user_id)
        if membership is None or membership.accepted:
            raise NotFoundError(
                f"Could not find invitation with id '{user_id}'.", message_code="InvitationNotFound"
            )
        return Invitation.from_membership(membership)

    async def cancel_invitation(self, badge: Badge, user_id: str) -> None:
        badge.require_scope(INVITE_SCOPE)
        account_id = badge.require_account()
        membership = await self.directory.get_membership(account_id, user_id)
        if membership is None:
            raise NotFoundError(f"Could not find user with id '{user_id}'.", message_code="UserNotFound")
        accepted = ConflictError(
            "The invitation cannot be deleted because it was already accepted.",
            message_code="InvitationAccepted",
        )
        if membership.accepted:
            raise accepted
        txn = Transaction()
        IdentityDirectory.delete_membership(txn, membership, attr_exists("pending_invitation"))
        try:
            await self.store.transact(txn)
        except TransactionCanceled:
            logger.info("invitation_cancel_lost_race", account_id=account_id, user_id=user_id)
            raise accepted
        logger.info("invitation_cancelled", account_id=account_id, user_id=user_id)
