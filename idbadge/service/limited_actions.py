from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from idbadge.config import Settings
from idbadge.logging import get_logger
from idbadge.service.errors import RateLimitedError
from idbadge.storage.common import (
    Store,
    UpdateAction,
    add_to_set,
    delete_from_set,
    from_iso,
    remove_attr,
    set_attr,
    to_iso,
    utc_now,
)
from idbadge.storage.models import IP_LEDGER_TABLE

logger = get_logger(__name__)

LEDGER_ATTR = "limited_actions"

Ledger = Mapping[str, Sequence[str]]


class LimitedActionKind(str, Enum):
    FAILED_LOGIN = "failedLogin"
    ACCOUNT_INVITATION = "accountInvitation"
    ENABLE_SMS_MFA = "enableSmsMfa"
    ACCOUNT_ACTIVATION_EMAIL = "accountActivationEmail"
    REGISTRATION = "registration"
    FORGOT_PASSWORD = "forgotPassword"


@dataclass(frozen=True)
class LimitPolicy:
    limit: int
    window: timedelta


def policies_from_settings(settings: Settings) -> Dict[LimitedActionKind, LimitPolicy]:
    def policy(limit: int, seconds: int) -> LimitPolicy:
        return LimitPolicy(limit=limit, window=timedelta(seconds=seconds))

    return {
        LimitedActionKind.FAILED_LOGIN: policy(
            settings.failed_login_limit, settings.failed_login_window_seconds
        ),
        LimitedActionKind.ACCOUNT_INVITATION: policy(
            settings.account_invitation_limit, settings.account_invitation_window_seconds
        ),
        LimitedActionKind.ENABLE_SMS_MFA: policy(
            settings.enable_sms_mfa_limit, settings.enable_sms_mfa_window_seconds
        ),
        LimitedActionKind.ACCOUNT_ACTIVATION_EMAIL: policy(
            settings.activation_email_limit, settings.activation_email_window_seconds
        ),
        LimitedActionKind.REGISTRATION: policy(
            settings.registration_ip_limit, settings.registration_ip_window_seconds
        ),
        LimitedActionKind.FORGOT_PASSWORD: policy(
            settings.forgot_password_ip_limit, settings.forgot_password_ip_window_seconds
        ),
    }


class LimitedActions:
    """Sliding-window throttles over a per-subject ledger of timestamps.

    The ledger maps a kind to a list of ISO timestamps used as a set. Reads
    never mutate; the ``*_actions`` helpers return update actions so the
    caller writes ledger changes in the same conditional write as the state
    change being throttled. Entries older than their kind's window are pruned
    whenever that write happens.
    """

    def __init__(
        self,
        policies: Mapping[LimitedActionKind, LimitPolicy],
        *,
        store: Optional[Store] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.policies = dict(policies)
        self.store = store
        self._clock = clock

    def _path(self, kind: LimitedActionKind) -> str:
        return f"{LEDGER_ATTR}.{kind.value}"

    def _split(self, ledger: Ledger, kind: LimitedActionKind) -> tuple[List[str], List[str]]:
        policy = self.policies[kind]
        cutoff = self._clock() - policy.window
        recent: List[str] = []
        outdated: List[str] = []
        for stamp in ledger.get(kind.value, ()):
            (recent if from_iso(stamp) > cutoff else outdated).append(stamp)
        return recent, outdated

    def count(self, ledger: Ledger, kind: LimitedActionKind) -> int:
        recent, _ = self._split(ledger, kind)
        return len(recent)

    def is_throttled(self, ledger: Ledger, kind: LimitedActionKind, *, pending: int = 0) -> bool:
        """True once the recent count (plus ``pending`` about to be added) reaches the limit."""
        return self.count(ledger, kind) + pending >= self.policies[kind].limit

    def add_actions(self, ledger: Ledger, kind: LimitedActionKind) -> List[UpdateAction]:
        _, outdated = self._split(ledger, kind)
        existing = set(ledger.get(kind.value, ()))
        stamp = self._clock()
        # Set semantics: two attempts at the same instant still count twice
        while to_iso(stamp) in existing:
            stamp += timedelta(microseconds=1)
        actions = [add_to_set(self._path(kind), to_iso(stamp))]
        if outdated:
            actions.append(delete_from_set(self._path(kind), *outdated))
        return actions

    def clear_all_actions(self, kind: LimitedActionKind) -> List[UpdateAction]:
        return [remove_attr(self._path(kind))]

    def clear_outdated_actions(self, ledger: Ledger) -> List[UpdateAction]:
        actions: List[UpdateAction] = []
        for raw_kind in ledger:
            try:
                kind = LimitedActionKind(raw_kind)
            except ValueError:
                continue
            recent, outdated = self._split(ledger, kind)
            if not outdated:
                continue
            if recent:
                actions.append(delete_from_set(self._path(kind), *outdated))
            else:
                actions.append(remove_attr(self._path(kind)))
        return actions

    async def check_ip(self, ip: Optional[str], kind: LimitedActionKind, *, message: str) -> None:
        """Throttle an IP subject; records the attempt when it is allowed."""
        if not ip:
            return
        if self.store is None:
            raise RuntimeError("LimitedActions has no store for IP ledgers")
        record = await self.store.get(IP_LEDGER_TABLE, ip)
        ledger: Ledger = (record or {}).get(LEDGER_ATTR) or {}
        if self.is_throttled(ledger, kind):
            logger.warning("ip_throttled", ip=ip, kind=kind.value, count=self.count(ledger, kind))
            raise RateLimitedError(message)
        await self.store.update(IP_LEDGER_TABLE, ip, [set_attr("ip", ip), *self.add_actions(ledger, kind)])
