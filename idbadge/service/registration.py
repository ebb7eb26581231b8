from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import quote

from idbadge.config import Settings
from idbadge.logging import get_logger
from idbadge.service.badges import Badge, UserPrivilege, roles_for_privilege
from idbadge.service.credentials import CredentialVerifier
from idbadge.service.directory import IdentityDirectory
from idbadge.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from idbadge.service.limited_actions import LimitedActionKind, LimitedActions
from idbadge.service.login import LoginResult, LoginService
from idbadge.service.notifications import Notifier
from idbadge.service.token_actions import TokenActionStore
from idbadge.storage.common import (
    Store,
    Transaction,
    attr_equals,
    attr_exists,
    attr_not_exists,
    remove_attr,
    set_attr,
    utc_now,
)
from idbadge.storage.errors import ConditionalCheckFailed, TransactionCanceled
from idbadge.storage.models import (
    IDENTITY_TABLE,
    MEMBERSHIP_TABLE,
    Account,
    Identity,
    Membership,
    PasswordCredential,
    TokenActionKind,
    new_id,
    normalize_email,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 255
DEFAULT_ACCOUNT_NAME = "Account"
APP_HOME = "/app/#/"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

COMMON_PASSWORDS = frozenset(
    {
        "password", "password1", "password12", "password123", "passw0rd", "p@ssw0rd",
        "qwerty", "qwertyui", "qwerty123", "qwertyuiop", "1q2w3e4r", "1qaz2wsx",
        "abc12345", "abcd1234", "asdfghjk", "asdf1234", "zxcvbnm1", "iloveyou",
        "baseball", "football", "basketball", "superman", "batman12", "sunshine",
        "princess", "trustno1", "whatever", "starwars", "michael1", "jennifer",
        "welcome1", "letmein1", "admin123", "changeme", "dragon12", "monkey12",
        "master12", "shadow12", "freedom1", "computer", "internet", "corvette",
        "mercedes", "jordan23", "liverpool", "chelsea1", "mustang1", "hello123",
        "charlie1", "access14", "loveyou1", "qazwsxedc", "zaq12wsx", "aa123456",
    }
)

VERIFY_FAILED = "There was an error completing your registration. Maybe the email verification expired."
INVITATION_FAILED = "There was an error completing your registration. Maybe the invitation expired."


def validate_email(email: Optional[str]) -> str:
    normalized = normalize_email(email or "")
    if not _EMAIL_RE.match(normalized) or len(normalized) > 320:
        raise ValidationError("Email address is not valid.")
    return normalized


def validate_password(password: Optional[str]) -> None:
    """Reject passwords that are too short or long, all digits, or commonly used."""
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters.")
    if password.isdigit():
        raise ValidationError("Password cannot be all digits.")
    if password.lower() in COMMON_PASSWORDS:
        raise ValidationError("Password is too common. Please choose a different password.")


@dataclass
class RedirectResult:
    """Where an out-of-band link lands, plus the login it produced (if any)."""

    location: str
    login: Optional[LoginResult] = None


class RegistrationService:
    def __init__(
        self,
        store: Store,
        directory: IdentityDirectory,
        credentials: CredentialVerifier,
        limited: LimitedActions,
        notifier: Notifier,
        tokens: TokenActionStore,
        login: LoginService,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.directory = directory
        self.credentials = credentials
        self.limited = limited
        self.notifier = notifier
        self.tokens = tokens
        self.login = login
        self.settings = settings
        self._clock = clock

    def _owned_account(self, user_id: str, email: str, name: Optional[str]) -> tuple[Account, Membership]:
        now = self._clock()
        account = Account(id=new_id(), name=name or DEFAULT_ACCOUNT_NAME, created_date=now)
        membership = Membership(
            account_id=account.id,
            user_id=user_id,
            roles=roles_for_privilege(UserPrivilege.OWNER),
            user_display_name=email,
            account_display_name=account.name,
            created_date=now,
        )
        return account, membership

    async def _send_verification(self, identity_email: str, user_id: str) -> None:
        action = await self.tokens.issue(
            TokenActionKind.EMAIL_VERIFICATION,
            timedelta(hours=self.settings.email_verification_hours),
            email=identity_email,
            user_id=user_id,
        )
        await self.notifier.send_email_verification(identity_email, action.token)

    async def _reset_redirect(self, identity: Identity) -> RedirectResult:
        action = await self.tokens.issue(
            TokenActionKind.RESET_PASSWORD,
            timedelta(hours=self.settings.reset_password_hours),
            email=identity.email,
            user_id=identity.id,
        )
        return RedirectResult(location=f"/app/#/resetPassword?token={quote(action.token)}")

    async def register(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        """Create identity, account and owner membership.

        The result is the same whether or not the email was already
        registered; only the email that goes out differs.
        """
        email = validate_email(email)
        validate_password(password)
        await self.limited.check_ip(
            ip,
            LimitedActionKind.REGISTRATION,
            message="A large number of signups has been detected. Please wait 24 hours.",
        )
        credential = self.credentials.hash_password(password)
        user_id = new_id()
        account, membership = self._owned_account(user_id, email, name)
        identity = Identity(
            id=user_id,
            email=email,
            password=credential,
            default_account_id=account.id,
            default_mode="test",
            created_date=self._clock(),
        )
        txn = Transaction()
        identity_index = IdentityDirectory.put_identity(txn, identity)
        IdentityDirectory.put_account(txn, account, membership)
        try:
            await self.store.transact(txn)
        except TransactionCanceled as exc:
            if not exc.failed_at(identity_index):
                logger.error("registration_transaction_failed", reasons=exc.reasons)
                raise ServerError("Registration could not be completed.")
            await self._register_existing(email, credential, name)
            return
        logger.info("registration_created", user_id=user_id, account_id=account.id)
        await self._send_verification(email, user_id)

    async def _register_existing(
        self, email: str, credential: PasswordCredential, name: Optional[str]
    ) -> None:
        existing = await self.directory.get_by_email(email)
        if existing is None or existing.password is not None or existing.email_verified:
            logger.info("registration_email_taken", user_id=existing.id if existing else None)
            await self.notifier.send_already_registered(email)
            return

        # Invited but never registered: attach a password and an owned account
        account, membership = self._owned_account(existing.id, email, name)
        txn = Transaction()
        txn.update(
            IDENTITY_TABLE,
            email,
            [
                set_attr("password", credential.to_record()),
                set_attr("default_account_id", account.id),
                set_attr("default_mode", "test"),
            ],
            attr_exists("id"),
            attr_not_exists("password"),
            attr_equals("email_verified", False),
        )
        IdentityDirectory.put_account(txn, account, membership)
        try:
            await self.store.transact(txn)
        except TransactionCanceled as exc:
            logger.warning("registration_existing_conflict", user_id=existing.id, reasons=exc.reasons)
            await self.notifier.send_already_registered(email)
            return
        logger.info("registration_completed_invited_identity", user_id=existing.id, account_id=account.id)
        await self._send_verification(email, existing.id)

    async def verify_email(self, token: Optional[str]) -> RedirectResult:
        action = await self.tokens.require(token, TokenActionKind.EMAIL_VERIFICATION)
        identity = await self.directory.get_by_email(action.email)
        if identity is None:
            logger.error("verify_email_identity_missing", user_id=action.user_id)
            raise NotFoundError(VERIFY_FAILED)
        txn = Transaction()
        self.tokens.consume_in(txn, action)
        txn.update(IDENTITY_TABLE, identity.email, [set_attr("email_verified", True)], attr_exists("id"))
        try:
            await self.store.transact(txn)
        except TransactionCanceled as exc:
            logger.warning("verify_email_conflict", user_id=identity.id, reasons=exc.reasons)
            raise NotFoundError(VERIFY_FAILED)
        identity.email_verified = True
        logger.info("email_verified", user_id=identity.id)
        if identity.password is None:
            return await self._reset_redirect(identity)
        return RedirectResult(location=APP_HOME, login=await self.login.login_identity(identity))

    async def accept_invitation(self, token: Optional[str]) -> RedirectResult:
        action = await self.tokens.require(token, TokenActionKind.ACCEPT_INVITATION)
        identity = await self.directory.get_by_email(action.email)
        account_id, _, user_id = (action.membership_id or "").partition("/")
        membership = (
            await self.directory.get_membership(account_id, user_id) if account_id and user_id else None
        )
        if identity is None or membership is None or membership.user_id != identity.id:
            logger.warning("accept_invitation_target_missing", membership_id=action.membership_id)
            raise NotFoundError(INVITATION_FAILED)
        pending = membership.pending_invitation
        if pending is not None and pending.expires_date <= self._clock():
            logger.info("accept_invitation_expired", membership_id=membership.key)
            raise NotFoundError(INVITATION_FAILED)

        txn = Transaction()
        self.tokens.consume_in(txn, action)
        txn.update(
            IDENTITY_TABLE,
            identity.email,
            [
                set_attr("default_account_id", membership.account_id),
                set_attr("default_mode", "test"),
                set_attr("email_verified", True),
            ],
            attr_exists("id"),
        )
        if pending is not None:
            txn.update(
                MEMBERSHIP_TABLE,
                membership.key,
                [remove_attr("pending_invitation")],
                attr_exists("pending_invitation"),
            )
        try:
            await self.store.transact(txn)
        except TransactionCanceled as exc:
            logger.warning("accept_invitation_conflict", membership_id=membership.key, reasons=exc.reasons)
            raise NotFoundError(INVITATION_FAILED)
        logger.info("invitation_accepted", user_id=identity.id, account_id=membership.account_id)

        identity.email_verified = True
        if identity.password is None:
            logger.info("accept_invitation_password_setup", user_id=identity.id)
            return await self._reset_redirect(identity)
        return RedirectResult(location=APP_HOME, login=await self.login.login_identity(identity))

    async def forgot_password(self, email: str, *, ip: Optional[str] = None) -> None:
        await self.limited.check_ip(
            ip,
            LimitedActionKind.FORGOT_PASSWORD,
            message="A large number of reset password attempts has been detected. Please wait 24 hours.",
        )
        identity = await self.directory.get_by_email(email or "")
        if identity is None:
            logger.info("forgot_password_unknown_email")
            return
        action = await self.tokens.issue(
            TokenActionKind.RESET_PASSWORD,
            timedelta(hours=self.settings.reset_password_hours),
            email=identity.email,
            user_id=identity.id,
        )
        await self.notifier.send_password_reset(identity.email, action.token)
        logger.info("forgot_password_sent", user_id=identity.id)

    async def complete_forgot_password(self, token: Optional[str], password: str) -> LoginResult:
        validate_password(password)
        action = await self.tokens.require(token, TokenActionKind.RESET_PASSWORD)
        identity = await self.directory.get_by_email(action.email)
        if identity is None:
            logger.error("reset_password_identity_missing", user_id=action.user_id)
            raise NotFoundError("There was a problem with your link. It may have expired or already been used.")
        if identity.password and self.credentials.verify_password(password, identity.password):
            raise ConflictError("You cannot reuse your current password.", message_code="ReusedPassword")

        credential = self.credentials.hash_password(password)
        txn = Transaction()
        self.tokens.consume_in(txn, action)
        txn.update(
            IDENTITY_TABLE,
            identity.email,
            [
                set_attr("password", credential.to_record()),
                set_attr("email_verified", True),
                remove_attr("locked_until"),
                *self.limited.clear_all_actions(LimitedActionKind.FAILED_LOGIN),
            ],
            attr_exists("id"),
        )
        try:
            await self.store.transact(txn)
        except TransactionCanceled as exc:
            logger.warning("reset_password_conflict", user_id=identity.id, reasons=exc.reasons)
            raise NotFoundError("There was a problem with your link. It may have expired or already been used.")
        logger.info("password_reset_completed", user_id=identity.id)
        refreshed = await self.directory.get_by_email(identity.email)
        return await self.login.login_identity(refreshed)

    async def change_password(self, badge: Badge, old_password: str, new_password: str) -> None:
        badge.require_scope("user:update")
        validate_password(new_password)
        identity = await self.directory.get(badge.user_id)
        if identity is None:
            raise AuthenticationError()
        if not self.credentials.verify_password(old_password or "", identity.password):
            logger.info("change_password_old_mismatch", user_id=identity.id)
            raise ConflictError("Old password does not match.")
        credential = self.credentials.hash_password(new_password)
        try:
            await self.store.update(
                IDENTITY_TABLE,
                identity.email,
                [set_attr("password", credential.to_record())],
                attr_equals("password.hash", identity.password.hash),
            )
        except ConditionalCheckFailed:
            logger.warning("change_password_conflict", user_id=identity.id)
            raise ConflictError("Your password was changed by another request.")
        logger.info("password_changed", user_id=identity.id)
