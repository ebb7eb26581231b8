from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from idbadge.logging import get_logger
from idbadge.service.badges import Badge, UserPrivilege, roles_for_privilege
from idbadge.service.directory import IdentityDirectory
from idbadge.service.errors import AuthenticationError, ForbiddenError, NotFoundError, ValidationError
from idbadge.service.login import LoginResult, LoginService
from idbadge.storage.common import (
    Store,
    Transaction,
    UpdateAction,
    attr_exists,
    remove_attr,
    set_attr,
    to_iso,
    utc_now,
)
from idbadge.storage.errors import ConditionalCheckFailed
from idbadge.storage.models import (
    ACCOUNT_TABLE,
    IDENTITY_TABLE,
    MEMBERSHIP_TABLE,
    Account,
    Membership,
    new_id,
)

logger = get_logger(__name__)

POLICY_MIN_DAYS = 7
POLICY_MAX_DAYS = 999

_UNSET: Any = object()


def account_view(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "createdDate": to_iso(account.created_date),
        "requireMfa": account.require_mfa,
        "maxPasswordAge": account.max_password_age,
        "maxInactiveDays": account.max_inactive_days,
        "frozen": account.frozen,
    }


def member_view(membership: Membership) -> Dict[str, Any]:
    return {
        "userId": membership.user_id,
        "accountId": membership.account_id,
        "userDisplayName": membership.user_display_name,
        "accountDisplayName": membership.account_display_name,
        "roles": list(membership.roles),
        "scopes": list(membership.scopes),
        "createdDate": to_iso(membership.created_date),
        "lastLoginDate": to_iso(membership.last_login_date) if membership.last_login_date else None,
    }


def _validate_policy_days(name: str, value: Optional[int]) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer or null.")
    if not POLICY_MIN_DAYS <= value <= POLICY_MAX_DAYS:
        raise ValidationError(f"{name} must be between {POLICY_MIN_DAYS} and {POLICY_MAX_DAYS}.")


class AccountService:
    def __init__(
        self,
        store: Store,
        directory: IdentityDirectory,
        login: LoginService,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.directory = directory
        self.login = login
        self._clock = clock

    async def get_account(self, badge: Badge) -> Account:
        badge.require_scope("account:read")
        account_id = badge.require_account()
        account = await self.directory.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Could not find account '{account_id}'.")
        return account

    async def create_account(self, badge: Badge, name: str) -> Account:
        badge.require_scope("account:create")
        name = (name or "").strip()
        if not name or len(name) > 1024:
            raise ValidationError("Account name must be between 1 and 1024 characters.")
        identity = await self.directory.get(badge.user_id)
        if identity is None:
            raise AuthenticationError()
        now = self._clock()
        account = Account(id=new_id(), name=name, created_date=now)
        membership = Membership(
            account_id=account.id,
            user_id=identity.id,
            roles=roles_for_privilege(UserPrivilege.OWNER),
            user_display_name=identity.email,
            account_display_name=account.name,
            created_date=now,
        )
        txn = Transaction()
        IdentityDirectory.put_account(txn, account, membership)
        await self.store.transact(txn)
        logger.info("account_created", account_id=account.id, user_id=identity.id)
        return account

    async def switch_account(self, badge: Badge, account_id: Optional[str], mode: str) -> LoginResult:
        badge.require_scope("user:update")
        account_id = account_id or badge.account_id
        if not account_id:
            raise ValidationError("Cannot switch. You are not logged into an account and no account was given.")
        if mode not in ("live", "test"):
            raise ValidationError("mode must be 'live' or 'test'.")
        identity = await self.directory.get(badge.user_id)
        if identity is None:
            raise AuthenticationError()
        membership = await self.directory.get_membership(account_id, identity.id)
        if membership is None or not membership.accepted:
            logger.warning(
                "account_switch_denied",
                user_id=identity.id,
                account_id=account_id,
                pending=membership is not None,
            )
            raise ForbiddenError()
        try:
            record = await self.store.update(
                IDENTITY_TABLE,
                identity.email,
                [set_attr("default_account_id", account_id), set_attr("default_mode", mode)],
                attr_exists("id"),
            )
        except ConditionalCheckFailed:
            raise AuthenticationError()
        identity.default_account_id = record.get("default_account_id")
        identity.default_mode = record.get("default_mode", mode)
        logger.info("account_switched", user_id=identity.id, account_id=account_id, mode=mode)
        return await self.login.login_response(identity, membership, live_mode=mode == "live")

    async def update_account(
        self,
        badge: Badge,
        *,
        name: Optional[str] = None,
        require_mfa: Optional[bool] = None,
        max_password_age: Optional[int] = _UNSET,
        max_inactive_days: Optional[int] = _UNSET,
    ) -> Account:
        """Apply policy changes; ``None`` clears a day-count policy, omitting it leaves it alone."""
        badge.require_scope("account:update")
        account = await self.get_account_for_update(badge)
        actions: List[UpdateAction] = []
        for field_name, value in (
            ("max_password_age", max_password_age),
            ("max_inactive_days", max_inactive_days),
        ):
            if value is _UNSET:
                continue
            _validate_policy_days(field_name, value)
            actions.append(set_attr(field_name, value) if value is not None else remove_attr(field_name))
            setattr(account, field_name, value)
        if name is not None:
            name = name.strip()
            if not name or len(name) > 1023:
                raise ValidationError("Account name must be between 1 and 1023 characters.")
            actions.append(set_attr("name", name))
            account.name = name
        if require_mfa is not None:
            actions.append(set_attr("require_mfa", bool(require_mfa)))
            account.require_mfa = bool(require_mfa)
        if not actions:
            return account

        try:
            await self.store.update(ACCOUNT_TABLE, account.id, actions, attr_exists("id"))
        except ConditionalCheckFailed:
            raise NotFoundError(f"Could not find account '{account.id}'.")
        logger.info("account_updated", account_id=account.id, fields=len(actions))

        if name is not None:
            # Display names on memberships are denormalized copies
            for membership in await self.directory.memberships_for_account(account.id):
                try:
                    await self.store.update(
                        MEMBERSHIP_TABLE,
                        membership.key,
                        [set_attr("account_display_name", name)],
                        attr_exists("account_id"),
                    )
                except ConditionalCheckFailed:
                    logger.warning(
                        "account_display_name_update_failed",
                        account_id=account.id,
                        user_id=membership.user_id,
                    )
        return account

    async def get_account_for_update(self, badge: Badge) -> Account:
        account_id = badge.require_account()
        account = await self.directory.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Could not find account '{account_id}'.")
        return account

    async def list_users(self, badge: Badge) -> List[Membership]:
        badge.require_scope("account:users:read")
        account_id = badge.require_account()
        memberships = await self.directory.memberships_for_account(account_id)
        return [m for m in memberships if m.accepted]
