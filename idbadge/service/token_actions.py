from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from idbadge.logging import get_logger
from idbadge.service.errors import NotFoundError
from idbadge.storage.common import Store, Transaction, attr_exists, attr_not_exists, utc_now
from idbadge.storage.errors import ConditionalCheckFailed
from idbadge.storage.models import (
    TOKEN_ACTION_TABLE,
    TokenAction,
    TokenActionKind,
    new_id,
)

logger = get_logger(__name__)


class TokenActionStore:
    """Single-use, time-bound tokens driving out-of-band flows.

    Callers ``require`` a token of the kind they handle, perform their state
    change, and consume the token in the same write (:meth:`consume_in`) or
    immediately after (:meth:`consume`). Consumption is a delete conditioned on
    the token still existing, so of two racing requests only one wins; the
    other is told the token was not found.
    """

    def __init__(self, store: Store, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self._clock = clock

    async def issue(
        self,
        kind: TokenActionKind,
        ttl: timedelta,
        *,
        email: str,
        user_id: Optional[str] = None,
        membership_id: Optional[str] = None,
    ) -> TokenAction:
        action = TokenAction(
            token=new_id(),
            action=kind,
            email=email,
            expires_date=self._clock() + ttl,
            user_id=user_id,
            membership_id=membership_id,
        )
        await self.store.put(
            TOKEN_ACTION_TABLE,
            action.token,
            action.to_record(),
            attr_not_exists("token"),
            expires_at=action.expires_date,
        )
        logger.info("token_action_issued", action=kind.value, user_id=user_id)
        return action

    async def get(self, token: Optional[str]) -> Optional[TokenAction]:
        if not token:
            return None
        record = await self.store.get(TOKEN_ACTION_TABLE, token)
        if not record:
            return None
        action = TokenAction.from_record(record)
        if action.expires_date <= self._clock():
            return None
        return action

    async def require(self, token: Optional[str], kind: TokenActionKind) -> TokenAction:
        action = await self.get(token)
        if action is None or action.action != kind:
            logger.warning(
                "token_action_rejected",
                expected=kind.value,
                found=action.action.value if action else None,
            )
            raise NotFoundError("There was a problem with your link. It may have expired or already been used.")
        return action

    async def consume(self, action: TokenAction) -> None:
        try:
            await self.store.delete(TOKEN_ACTION_TABLE, action.token, attr_exists("token"))
        except ConditionalCheckFailed:
            logger.warning("token_action_already_consumed", action=action.action.value)
            raise NotFoundError("There was a problem with your link. It may have expired or already been used.")

    def consume_in(self, txn: Transaction, action: TokenAction) -> int:
        """Add the conditional delete of ``action`` to ``txn``; returns the op index."""
        return txn.delete(TOKEN_ACTION_TABLE, action.token, attr_exists("token"))
