from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from idbadge.storage.common import from_iso, to_iso, utc_now

IDENTITY_TABLE = "identity"
IDENTITY_ID_TABLE = "identity_id"
ACCOUNT_TABLE = "account"
MEMBERSHIP_TABLE = "membership"
MEMBERSHIP_USER_TABLE = "membership_user"
TOKEN_ACTION_TABLE = "token_action"
IP_LEDGER_TABLE = "ip_ledger"


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_email(email: str) -> str:
    return email.strip().lower()


def membership_key(account_id: str, user_id: str) -> str:
    return f"{account_id}/{user_id}"


def membership_user_key(user_id: str, account_id: str) -> str:
    return f"{user_id}/{account_id}"


def _opt_iso(value: Optional[datetime]) -> Optional[str]:
    return to_iso(value) if value else None


def _opt_dt(raw: Optional[str]) -> Optional[datetime]:
    return from_iso(raw) if raw else None


def _compact(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if v is not None}


class PasswordAlgorithm(str, Enum):
    """Hash algorithms a stored credential may be tagged with."""

    ARGON2ID = "ARGON2ID"
    BCRYPT_10 = "BCRYPT_10"


@dataclass
class PasswordCredential:
    algorithm: str
    hash: str
    created_date: datetime = field(default_factory=utc_now)

    def to_record(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "hash": self.hash,
            "created_date": to_iso(self.created_date),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PasswordCredential":
        return cls(
            algorithm=record["algorithm"],
            hash=record["hash"],
            created_date=from_iso(record["created_date"]),
        )


class MfaVariant(str, Enum):
    NONE = "none"
    SMS = "sms"
    TOTP = "totp"


@dataclass
class SmsChallenge:
    code: str
    action: str
    expires_date: datetime

    def to_record(self) -> Dict[str, Any]:
        return {"code": self.code, "action": self.action, "expires_date": to_iso(self.expires_date)}

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SmsChallenge":
        return cls(
            code=record["code"],
            action=record["action"],
            expires_date=from_iso(record["expires_date"]),
        )


@dataclass
class PendingEnrollment:
    """An enrollment in progress; replaces the active variant only on completion.

    An SMS enrollment carries its own code, separate from any login challenge.
    """

    variant: MfaVariant
    expires_date: datetime
    sms_device: Optional[str] = None
    totp_secret: Optional[str] = None
    totp_first_code: Optional[str] = None
    sms_challenge: Optional[SmsChallenge] = None

    def to_record(self) -> Dict[str, Any]:
        return _compact(
            {
                "variant": self.variant.value,
                "expires_date": to_iso(self.expires_date),
                "sms_device": self.sms_device,
                "totp_secret": self.totp_secret,
                "totp_first_code": self.totp_first_code,
                "sms_challenge": self.sms_challenge.to_record() if self.sms_challenge else None,
            }
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PendingEnrollment":
        return cls(
            variant=MfaVariant(record["variant"]),
            expires_date=from_iso(record["expires_date"]),
            sms_device=record.get("sms_device"),
            totp_secret=record.get("totp_secret"),
            totp_first_code=record.get("totp_first_code"),
            sms_challenge=(
                SmsChallenge.from_record(record["sms_challenge"]) if record.get("sms_challenge") else None
            ),
        )


@dataclass
class MfaConfig:
    """Tagged union over :class:`MfaVariant`.

    ``sms_device`` is only meaningful for ``SMS`` and ``totp_secret`` (encrypted)
    only for ``TOTP``. ``backup_codes`` maps encrypted code -> created date,
    ``trusted_devices`` maps token -> expiry and ``totp_used_codes`` maps a
    recently consumed code -> expiry.
    """

    variant: MfaVariant = MfaVariant.NONE
    sms_device: Optional[str] = None
    totp_secret: Optional[str] = None
    pending: Optional[PendingEnrollment] = None
    sms_challenge: Optional[SmsChallenge] = None
    backup_codes: Dict[str, str] = field(default_factory=dict)
    trusted_devices: Dict[str, str] = field(default_factory=dict)
    totp_used_codes: Dict[str, str] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.variant != MfaVariant.NONE

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"variant": self.variant.value}
        if self.variant == MfaVariant.SMS:
            record["sms_device"] = self.sms_device
        elif self.variant == MfaVariant.TOTP:
            record["totp_secret"] = self.totp_secret
        if self.pending:
            record["pending"] = self.pending.to_record()
        if self.sms_challenge:
            record["sms_challenge"] = self.sms_challenge.to_record()
        if self.backup_codes:
            record["backup_codes"] = dict(self.backup_codes)
        if self.trusted_devices:
            record["trusted_devices"] = dict(self.trusted_devices)
        if self.totp_used_codes:
            record["totp_used_codes"] = dict(self.totp_used_codes)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "MfaConfig":
        variant = MfaVariant(record.get("variant", MfaVariant.NONE.value))
        return cls(
            variant=variant,
            sms_device=record.get("sms_device") if variant == MfaVariant.SMS else None,
            totp_secret=record.get("totp_secret") if variant == MfaVariant.TOTP else None,
            pending=PendingEnrollment.from_record(record["pending"]) if record.get("pending") else None,
            sms_challenge=(
                SmsChallenge.from_record(record["sms_challenge"])
                if record.get("sms_challenge")
                else None
            ),
            backup_codes=dict(record.get("backup_codes") or {}),
            trusted_devices=dict(record.get("trusted_devices") or {}),
            totp_used_codes=dict(record.get("totp_used_codes") or {}),
        )


@dataclass
class Identity:
    id: str
    email: str
    password: Optional[PasswordCredential] = None
    email_verified: bool = False
    frozen: bool = False
    locked_until: Optional[datetime] = None
    mfa: Optional[MfaConfig] = None
    default_account_id: Optional[str] = None
    default_mode: str = "test"
    last_login_date: Optional[datetime] = None
    created_date: datetime = field(default_factory=utc_now)
    limited_actions: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def mfa_active(self) -> bool:
        return bool(self.mfa and self.mfa.active)

    def to_record(self) -> Dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "email": self.email,
                "password": self.password.to_record() if self.password else None,
                "email_verified": self.email_verified,
                "frozen": self.frozen,
                "locked_until": _opt_iso(self.locked_until),
                "mfa": self.mfa.to_record() if self.mfa else None,
                "default_account_id": self.default_account_id,
                "default_mode": self.default_mode,
                "last_login_date": _opt_iso(self.last_login_date),
                "created_date": to_iso(self.created_date),
                "limited_actions": {k: list(v) for k, v in self.limited_actions.items()},
            }
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Identity":
        return cls(
            id=record["id"],
            email=record["email"],
            password=PasswordCredential.from_record(record["password"]) if record.get("password") else None,
            email_verified=bool(record.get("email_verified", False)),
            frozen=bool(record.get("frozen", False)),
            locked_until=_opt_dt(record.get("locked_until")),
            mfa=MfaConfig.from_record(record["mfa"]) if record.get("mfa") else None,
            default_account_id=record.get("default_account_id"),
            default_mode=record.get("default_mode", "test"),
            last_login_date=_opt_dt(record.get("last_login_date")),
            created_date=from_iso(record["created_date"]),
            limited_actions={k: list(v) for k, v in (record.get("limited_actions") or {}).items()},
        )


@dataclass
class Account:
    id: str
    name: str
    created_date: datetime = field(default_factory=utc_now)
    require_mfa: bool = False
    max_password_age: Optional[int] = None
    max_inactive_days: Optional[int] = None
    frozen: bool = False

    def to_record(self) -> Dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "name": self.name,
                "created_date": to_iso(self.created_date),
                "require_mfa": self.require_mfa,
                "max_password_age": self.max_password_age,
                "max_inactive_days": self.max_inactive_days,
                "frozen": self.frozen,
            }
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Account":
        return cls(
            id=record["id"],
            name=record["name"],
            created_date=from_iso(record["created_date"]),
            require_mfa=bool(record.get("require_mfa", False)),
            max_password_age=record.get("max_password_age"),
            max_inactive_days=record.get("max_inactive_days"),
            frozen=bool(record.get("frozen", False)),
        )


@dataclass
class PendingInvitation:
    email: str
    created_date: datetime
    expires_date: datetime

    def to_record(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "created_date": to_iso(self.created_date),
            "expires_date": to_iso(self.expires_date),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PendingInvitation":
        return cls(
            email=record["email"],
            created_date=from_iso(record["created_date"]),
            expires_date=from_iso(record["expires_date"]),
        )


@dataclass
class Membership:
    account_id: str
    user_id: str
    roles: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    user_display_name: str = ""
    account_display_name: str = ""
    created_date: datetime = field(default_factory=utc_now)
    last_login_date: Optional[datetime] = None
    pending_invitation: Optional[PendingInvitation] = None

    @property
    def key(self) -> str:
        return membership_key(self.account_id, self.user_id)

    @property
    def accepted(self) -> bool:
        return self.pending_invitation is None

    def to_record(self) -> Dict[str, Any]:
        return _compact(
            {
                "account_id": self.account_id,
                "user_id": self.user_id,
                "roles": list(self.roles),
                "scopes": list(self.scopes),
                "user_display_name": self.user_display_name,
                "account_display_name": self.account_display_name,
                "created_date": to_iso(self.created_date),
                "last_login_date": _opt_iso(self.last_login_date),
                "pending_invitation": (
                    self.pending_invitation.to_record() if self.pending_invitation else None
                ),
            }
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Membership":
        return cls(
            account_id=record["account_id"],
            user_id=record["user_id"],
            roles=list(record.get("roles") or []),
            scopes=list(record.get("scopes") or []),
            user_display_name=record.get("user_display_name", ""),
            account_display_name=record.get("account_display_name", ""),
            created_date=from_iso(record["created_date"]),
            last_login_date=_opt_dt(record.get("last_login_date")),
            pending_invitation=(
                PendingInvitation.from_record(record["pending_invitation"])
                if record.get("pending_invitation")
                else None
            ),
        )


class TokenActionKind(str, Enum):
    EMAIL_VERIFICATION = "emailVerification"
    RESET_PASSWORD = "resetPassword"
    ACCEPT_INVITATION = "acceptInvitation"
    CHANGE_EMAIL = "changeEmail"


@dataclass
class TokenAction:
    token: str
    action: TokenActionKind
    email: str
    expires_date: datetime
    user_id: Optional[str] = None
    membership_id: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return _compact(
            {
                "token": self.token,
                "action": self.action.value,
                "email": self.email,
                "expires_date": to_iso(self.expires_date),
                "user_id": self.user_id,
                "membership_id": self.membership_id,
            }
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TokenAction":
        return cls(
            token=record["token"],
            action=TokenActionKind(record["action"]),
            email=record["email"],
            expires_date=from_iso(record["expires_date"]),
            user_id=record.get("user_id"),
            membership_id=record.get("membership_id"),
        )
