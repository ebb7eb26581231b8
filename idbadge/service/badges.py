from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from idbadge.logging import get_logger
from idbadge.service.errors import AuthenticationError, ForbiddenError
from idbadge.storage.common import utc_now
from idbadge.storage.models import Identity, Membership, new_id

logger = get_logger(__name__)

SESSION_COOKIE = "idb_session"
SIGNATURE_COOKIE = "idb_signature"
TRUSTED_DEVICE_COOKIE = "idb_ttd"

MFA_COMPLETE_SCOPE = "mfa:complete"
USER_SCOPES = ["user:read", "user:update", "user:mfa", "account:create"]


class UserPrivilege(str, Enum):
    OWNER = "OWNER"
    FULL_ACCESS = "FULL_ACCESS"
    LIMITED_ACCESS = "LIMITED_ACCESS"


ROLES_BY_PRIVILEGE: Dict[UserPrivilege, List[str]] = {
    UserPrivilege.OWNER: ["owner", "accountManager", "teamAdmin", "developer", "reader"],
    UserPrivilege.FULL_ACCESS: ["accountManager", "teamAdmin", "developer", "reader"],
    UserPrivilege.LIMITED_ACCESS: ["reader"],
}

SCOPES_BY_ROLE: Dict[str, List[str]] = {
    "owner": ["account:update"],
    "accountManager": ["account:read", "account:update"],
    "teamAdmin": ["account:users:read", "account:invitations"],
    "developer": ["account:read", "apikeys:manage"],
    "reader": ["account:read"],
}


def roles_for_privilege(privilege: UserPrivilege) -> List[str]:
    return list(ROLES_BY_PRIVILEGE[privilege])


def scopes_for_roles(roles: Iterable[str]) -> List[str]:
    scopes: List[str] = []
    for role in roles:
        for scope in SCOPES_BY_ROLE.get(role, []):
            if scope not in scopes:
                scopes.append(scope)
    return scopes


class BadgeKind(str, Enum):
    FULL = "full"
    ORPHAN = "orphan"
    MFA_PARTIAL = "mfa_partial"


@dataclass
class Badge:
    """The authenticated (possibly partial) session a signed cookie pair carries."""

    user_id: str
    email: str
    kind: BadgeKind
    issued_at: datetime
    expires_at: datetime
    account_id: Optional[str] = None
    mode: str = "live"
    roles: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    badge_id: str = field(default_factory=new_id)

    @property
    def live_mode(self) -> bool:
        return self.mode == "live"

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def require_scope(self, scope: str) -> None:
        if not self.has_scope(scope):
            logger.warning("badge_scope_missing", user_id=self.user_id, scope=scope, kind=self.kind.value)
            raise ForbiddenError()

    def require_account(self) -> str:
        if not self.account_id:
            raise ForbiddenError("You must be logged in to an account.")
        return self.account_id

    def to_claims(self) -> Dict[str, Any]:
        return {
            "sub": self.user_id,
            "email": self.email,
            "knd": self.kind.value,
            "acc": self.account_id,
            "mode": self.mode,
            "roles": list(self.roles),
            "scopes": list(self.scopes),
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "jti": self.badge_id,
        }

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "Badge":
        return cls(
            user_id=claims["sub"],
            email=claims["email"],
            kind=BadgeKind(claims["knd"]),
            account_id=claims.get("acc"),
            mode=claims.get("mode", "live"),
            roles=list(claims.get("roles") or []),
            scopes=list(claims.get("scopes") or []),
            issued_at=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            badge_id=claims.get("jti") or new_id(),
        )


def full_badge(
    identity: Identity, membership: Membership, *, live_mode: bool, now: datetime, ttl: timedelta
) -> Badge:
    scopes = list(USER_SCOPES)
    for scope in scopes_for_roles(membership.roles) + list(membership.scopes):
        if scope not in scopes:
            scopes.append(scope)
    return Badge(
        user_id=identity.id,
        email=identity.email,
        kind=BadgeKind.FULL,
        account_id=membership.account_id,
        mode="live" if live_mode else "test",
        roles=list(membership.roles),
        scopes=scopes,
        issued_at=now,
        expires_at=now + ttl,
    )


def orphan_badge(identity: Identity, *, now: datetime, ttl: timedelta) -> Badge:
    """A logged-in user with no usable account: may only manage itself or create one."""
    return Badge(
        user_id=identity.id,
        email=identity.email,
        kind=BadgeKind.ORPHAN,
        scopes=list(USER_SCOPES),
        issued_at=now,
        expires_at=now + ttl,
    )


def mfa_partial_badge(identity: Identity, *, now: datetime, ttl: timedelta) -> Badge:
    return Badge(
        user_id=identity.id,
        email=identity.email,
        kind=BadgeKind.MFA_PARTIAL,
        scopes=[MFA_COMPLETE_SCOPE],
        issued_at=now,
        expires_at=now + ttl,
    )


@dataclass(frozen=True)
class SignedBadge:
    """``payload`` is readable by the browser; ``signature`` lives in an http-only cookie."""

    payload: str
    signature: str
    expires_at: datetime


class BadgeSigner:
    """HS256 signing split into a detached payload and signature.

    Constructed once at startup with the signing secret and handed to the
    services that issue or check badges.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not secret:
            raise ValueError("badge signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature_for(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, badge: Badge) -> SignedBadge:
        header = {"alg": "HS256", "typ": "JWT"}
        claims = {**badge.to_claims(), "iss": self.issuer, "aud": self.audience}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return SignedBadge(
            payload=signing_input,
            signature=self._signature_for(signing_input),
            expires_at=badge.expires_at,
        )

    def verify(self, payload: Optional[str], signature: Optional[str]) -> Badge:
        if not payload or not signature:
            raise AuthenticationError()
        try:
            header_b64, payload_b64 = payload.split(".")
        except ValueError:
            raise AuthenticationError()
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("badge_header_decode_failed")
            raise AuthenticationError()
        if header.get("alg") != "HS256":
            logger.warning("badge_invalid_algorithm", alg=header.get("alg"))
            raise AuthenticationError()
        expected = self._signature_for(payload)
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            logger.warning("badge_signature_mismatch")
            raise AuthenticationError()
        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("badge_payload_decode_failed", error=str(exc))
            raise AuthenticationError()
        if claims.get("iss") != self.issuer or claims.get("aud") != self.audience:
            raise AuthenticationError()
        try:
            badge = Badge.from_claims(claims)
        except (KeyError, ValueError, TypeError):
            raise AuthenticationError()
        if badge.expires_at <= self._clock():
            raise AuthenticationError("Your session has expired.")
        return badge
