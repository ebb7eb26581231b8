"""MFA enrollment and second-factor verification.

Enrollment state lives under ``mfa.pending`` on the identity and replaces the
active variant only when it completes, so a user switching from SMS to TOTP
(or back) keeps a working second factor until the new one is confirmed.

Second-factor consumption is returned to the caller as update actions plus
preconditions; the login engine writes them together with the login
completion so a replayed code fails the precondition.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from idbadge.config import Settings
from idbadge.logging import get_logger
from idbadge.service.credentials import CredentialVerifier
from idbadge.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
)
from idbadge.service.limited_actions import LimitedActionKind, LimitedActions
from idbadge.service.notifications import Notifier
from idbadge.storage.common import (
    Condition,
    Store,
    UpdateAction,
    attr_equals,
    attr_exists,
    attr_not_exists,
    from_iso,
    remove_attr,
    set_attr,
    to_iso,
    utc_now,
)
from idbadge.storage.errors import ConditionalCheckFailed
from idbadge.storage.models import (
    IDENTITY_TABLE,
    Identity,
    MfaVariant,
    PendingEnrollment,
    SmsChallenge,
    new_id,
)

logger = get_logger(__name__)

CHALLENGE_ENROLL = "enroll"
CHALLENGE_AUTH = "auth"


@dataclass
class SecondFactorMatch:
    method: str
    actions: List[UpdateAction] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)


@dataclass
class TrustedDeviceGrant:
    token: str
    expires_date: datetime
    action: UpdateAction


class MfaService:
    def __init__(
        self,
        store: Store,
        credentials: CredentialVerifier,
        limited: LimitedActions,
        notifier: Notifier,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.limited = limited
        self.notifier = notifier
        self.settings = settings
        self._clock = clock

    async def _update(self, identity: Identity, actions: List[UpdateAction], *conditions: Condition) -> Dict:
        return await self.store.update(
            IDENTITY_TABLE, identity.email, actions, attr_exists("id"), *conditions
        )

    def _ensure_mfa_actions(self, identity: Identity) -> List[UpdateAction]:
        if identity.mfa is None:
            return [set_attr("mfa.variant", MfaVariant.NONE.value)]
        return []

    def get_status(self, identity: Identity) -> Dict[str, object]:
        if not identity.mfa_active:
            raise NotFoundError("MFA is not enabled.")
        mfa = identity.mfa
        if mfa.variant == MfaVariant.SMS:
            return {"variant": mfa.variant.value, "device": mfa.sms_device}
        return {"variant": mfa.variant.value}

    # Enrollment

    async def start_sms(self, identity: Identity, phone: str) -> None:
        ledger = identity.limited_actions
        if self.limited.is_throttled(ledger, LimitedActionKind.ENABLE_SMS_MFA):
            logger.warning("mfa_sms_enable_throttled", user_id=identity.id)
            raise RateLimitedError("Too many attempts to enable SMS MFA. Please wait 24 hours.")
        now = self._clock()
        code = self.credentials.generate_sms_code()
        pending = PendingEnrollment(
            variant=MfaVariant.SMS,
            expires_date=now + timedelta(minutes=self.settings.mfa_enrollment_minutes),
            sms_device=phone,
            sms_challenge=SmsChallenge(
                code=code,
                action=CHALLENGE_ENROLL,
                expires_date=now + timedelta(seconds=self.settings.sms_enroll_challenge_seconds),
            ),
        )
        actions = [
            *self._ensure_mfa_actions(identity),
            set_attr("mfa.pending", pending.to_record()),
            *self.limited.add_actions(ledger, LimitedActionKind.ENABLE_SMS_MFA),
        ]
        await self._update(identity, actions)
        logger.info("mfa_sms_enrollment_started", user_id=identity.id)
        await self.notifier.send_sms_code(phone, code)

    async def start_totp(self, identity: Identity) -> Dict[str, str]:
        now = self._clock()
        secret = self.credentials.generate_totp_secret()
        pending = PendingEnrollment(
            variant=MfaVariant.TOTP,
            expires_date=now + timedelta(minutes=self.settings.mfa_enrollment_minutes),
            totp_secret=self.credentials.encrypt_secret(secret),
        )
        await self._update(
            identity, [*self._ensure_mfa_actions(identity), set_attr("mfa.pending", pending.to_record())]
        )
        logger.info("mfa_totp_enrollment_started", user_id=identity.id)
        return {"secret": secret, "uri": self.credentials.totp_uri(secret, identity.email)}

    async def complete_enrollment(self, identity: Identity, code: str) -> Dict[str, bool]:
        """Confirm the pending enrollment.

        SMS completes on the first matching code. TOTP needs two distinct valid
        codes: the first is recorded and ``complete`` is False, the second
        switches the active variant.
        """
        now = self._clock()
        mfa = identity.mfa
        pending = mfa.pending if mfa else None
        if pending is None:
            raise ConflictError("No MFA enrollment is in progress.")
        if pending.expires_date <= now:
            logger.info("mfa_enrollment_expired", user_id=identity.id, variant=pending.variant.value)
            raise ConflictError("The MFA enrollment has expired. Please start again.")
        candidate = (code or "").strip()

        if pending.variant == MfaVariant.SMS:
            challenge = pending.sms_challenge
            if (
                challenge is None
                or challenge.expires_date < now
                or not hmac.compare_digest(challenge.code.encode(), candidate.upper().encode())
            ):
                logger.info("mfa_sms_enrollment_code_rejected", user_id=identity.id)
                raise ConflictError("The code is incorrect or has expired.")
            actions = [
                set_attr("mfa.variant", MfaVariant.SMS.value),
                set_attr("mfa.sms_device", pending.sms_device),
                remove_attr("mfa.totp_secret"),
                remove_attr("mfa.totp_used_codes"),
                remove_attr("mfa.sms_challenge"),
                remove_attr("mfa.pending"),
            ]
            conditions = [attr_equals("mfa.pending.sms_challenge.code", challenge.code)]
        elif pending.variant == MfaVariant.TOTP:
            secret = self.credentials.decrypt_secret(pending.totp_secret or "")
            if not secret or not self.credentials.verify_totp(secret, candidate, at=now):
                logger.info("mfa_totp_enrollment_code_rejected", user_id=identity.id)
                raise ConflictError("The code is incorrect or has expired.")
            if pending.totp_first_code is None:
                try:
                    await self._update(
                        identity,
                        [set_attr("mfa.pending.totp_first_code", candidate)],
                        attr_equals("mfa.pending.totp_secret", pending.totp_secret),
                        attr_not_exists("mfa.pending.totp_first_code"),
                    )
                except ConditionalCheckFailed:
                    raise ConflictError("The MFA enrollment changed. Please try again.")
                return {"complete": False}
            if candidate == pending.totp_first_code:
                raise ConflictError("That code was already used. Wait for the next code.")
            used_until = to_iso(now + timedelta(seconds=self.settings.totp_used_code_seconds))
            actions = [
                set_attr("mfa.variant", MfaVariant.TOTP.value),
                set_attr("mfa.totp_secret", pending.totp_secret),
                remove_attr("mfa.sms_device"),
                remove_attr("mfa.sms_challenge"),
                set_attr(
                    "mfa.totp_used_codes",
                    {pending.totp_first_code: used_until, candidate: used_until},
                ),
                remove_attr("mfa.pending"),
            ]
            conditions = [attr_equals("mfa.pending.totp_first_code", pending.totp_first_code)]
        else:
            raise ConflictError("No MFA enrollment is in progress.")

        if not mfa.backup_codes:
            actions.append(set_attr("mfa.backup_codes", self._new_backup_codes(now)))
        try:
            await self._update(identity, actions, attr_exists("mfa.pending"), *conditions)
        except ConditionalCheckFailed:
            logger.warning("mfa_enrollment_completion_conflict", user_id=identity.id)
            raise ConflictError("The code has already been used.")
        logger.info("mfa_enabled", user_id=identity.id, variant=pending.variant.value)
        return {"complete": True}

    async def disable(self, identity: Identity) -> None:
        # The enableSmsMfa ledger lives outside ``mfa`` and survives
        await self._update(identity, [remove_attr("mfa")])
        logger.info("mfa_disabled", user_id=identity.id)

    # Backup codes

    def _new_backup_codes(self, now: datetime) -> Dict[str, str]:
        created = to_iso(now)
        return {
            self.credentials.encrypt_secret(code): created
            for code in self.credentials.generate_backup_codes(self.settings.backup_code_count)
        }

    async def get_backup_codes(self, identity: Identity) -> List[str]:
        if not identity.mfa_active:
            raise NotFoundError("MFA is not enabled.")
        stored = identity.mfa.backup_codes
        if not stored:
            raw = await self.store.get(IDENTITY_TABLE, identity.email)
            # An empty map is present for attr_not_exists purposes
            exhausted = ((raw or {}).get("mfa") or {}).get("backup_codes") == {}
            guard = attr_equals("mfa.backup_codes", {}) if exhausted else attr_not_exists("mfa.backup_codes")
            generated = self._new_backup_codes(self._clock())
            try:
                record = await self._update(identity, [set_attr("mfa.backup_codes", generated)], guard)
                stored = record["mfa"]["backup_codes"]
            except ConditionalCheckFailed:
                fresh = await self.store.get(IDENTITY_TABLE, identity.email)
                stored = ((fresh or {}).get("mfa") or {}).get("backup_codes") or {}
        codes = [self.credentials.decrypt_secret(enc) for enc in stored]
        return sorted(code for code in codes if code)

    # Second factor at login

    async def send_login_challenge(self, identity: Identity) -> None:
        mfa = identity.mfa
        code = self.credentials.generate_sms_code()
        challenge = SmsChallenge(
            code=code,
            action=CHALLENGE_AUTH,
            expires_date=self._clock() + timedelta(seconds=self.settings.sms_login_challenge_seconds),
        )
        await self._update(identity, [set_attr("mfa.sms_challenge", challenge.to_record())])
        logger.info("mfa_login_challenge_sent", user_id=identity.id)
        await self.notifier.send_sms_code(mfa.sms_device, code)

    def second_factor(self, identity: Identity, code: str) -> Optional[SecondFactorMatch]:
        """Match ``code`` against SMS challenge, then TOTP, then backup codes.

        Returns the consumption to write with the login, or None when nothing
        matched. A valid TOTP code that was used recently raises
        :class:`AuthenticationError` directly.
        """
        mfa = identity.mfa
        if mfa is None:
            return None
        now = self._clock()
        candidate = (code or "").strip()
        if not candidate:
            return None

        challenge = mfa.sms_challenge
        if (
            challenge is not None
            and challenge.action == CHALLENGE_AUTH
            and challenge.expires_date >= now
            and hmac.compare_digest(challenge.code.encode(), candidate.upper().encode())
        ):
            return SecondFactorMatch(
                method="sms",
                actions=[remove_attr("mfa.sms_challenge")],
                conditions=[attr_equals("mfa.sms_challenge.code", challenge.code)],
            )

        if mfa.variant == MfaVariant.TOTP and mfa.totp_secret:
            secret = self.credentials.decrypt_secret(mfa.totp_secret)
            if secret and self.credentials.verify_totp(secret, candidate, at=now):
                return self._consume_totp(identity, candidate, now)

        if mfa.backup_codes:
            matched = self.credentials.match_backup_code(candidate, mfa.backup_codes)
            if matched:
                # Using the last code removes the whole map
                path = "mfa.backup_codes" if len(mfa.backup_codes) == 1 else f"mfa.backup_codes.{matched}"
                return SecondFactorMatch(
                    method="backup_code",
                    actions=[remove_attr(path)],
                    conditions=[attr_exists(f"mfa.backup_codes.{matched}")],
                )
        return None

    def _consume_totp(self, identity: Identity, candidate: str, now: datetime) -> SecondFactorMatch:
        used = identity.mfa.totp_used_codes
        path = f"mfa.totp_used_codes.{candidate}"
        previous = used.get(candidate)
        if previous is not None and from_iso(previous) > now:
            logger.warning("mfa_totp_code_reused", user_id=identity.id)
            raise AuthenticationError()
        actions = [
            set_attr(path, to_iso(now + timedelta(seconds=self.settings.totp_used_code_seconds)))
        ]
        for used_code, expires in used.items():
            if used_code != candidate and from_iso(expires) <= now:
                actions.append(remove_attr(f"mfa.totp_used_codes.{used_code}"))
        # An expired marker for this very code is overwritten, guarded on its old value
        condition = attr_not_exists(path) if previous is None else attr_equals(path, previous)
        return SecondFactorMatch(method="totp", actions=actions, conditions=[condition])

    # Trusted devices

    def trusted_device_valid(self, identity: Identity, token: Optional[str]) -> bool:
        if not token or not identity.mfa:
            return False
        expires = identity.mfa.trusted_devices.get(token)
        return expires is not None and from_iso(expires) > self._clock()

    def trust_device(self) -> TrustedDeviceGrant:
        token = new_id()
        expires = self._clock() + timedelta(days=self.settings.trusted_device_days)
        return TrustedDeviceGrant(
            token=token,
            expires_date=expires,
            action=set_attr(f"mfa.trusted_devices.{token}", to_iso(expires)),
        )

    def expired_trusted_device_actions(self, identity: Identity) -> List[UpdateAction]:
        if not identity.mfa:
            return []
        now = self._clock()
        return [
            remove_attr(f"mfa.trusted_devices.{token}")
            for token, expires in identity.mfa.trusted_devices.items()
            if from_iso(expires) <= now
        ]
