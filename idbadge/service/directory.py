from __future__ import annotations

from typing import List, Optional

from idbadge.storage.common import Condition, Store, Transaction, attr_not_exists
from idbadge.storage.models import (
    ACCOUNT_TABLE,
    IDENTITY_ID_TABLE,
    IDENTITY_TABLE,
    MEMBERSHIP_TABLE,
    MEMBERSHIP_USER_TABLE,
    Account,
    Identity,
    Membership,
    membership_key,
    membership_user_key,
    normalize_email,
)


class IdentityDirectory:
    """Typed reads over the identity, account and membership tables."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def get_by_email(self, email: str) -> Optional[Identity]:
        record = await self.store.get(IDENTITY_TABLE, normalize_email(email))
        return Identity.from_record(record) if record else None

    async def get(self, user_id: str) -> Optional[Identity]:
        guard = await self.store.get(IDENTITY_ID_TABLE, user_id)
        if not guard:
            return None
        return await self.get_by_email(guard["email"])

    async def get_account(self, account_id: str) -> Optional[Account]:
        record = await self.store.get(ACCOUNT_TABLE, account_id)
        return Account.from_record(record) if record else None

    async def get_membership(self, account_id: str, user_id: str) -> Optional[Membership]:
        record = await self.store.get(MEMBERSHIP_TABLE, membership_key(account_id, user_id))
        return Membership.from_record(record) if record else None

    async def memberships_for_account(self, account_id: str) -> List[Membership]:
        records = await self.store.query_prefix(MEMBERSHIP_TABLE, f"{account_id}/")
        return [Membership.from_record(r) for r in records]

    async def memberships_for_user(self, user_id: str) -> List[Membership]:
        """Read through the per-user index; entries whose membership is gone are skipped."""
        entries = await self.store.query_prefix(MEMBERSHIP_USER_TABLE, f"{user_id}/")
        memberships = []
        for entry in entries:
            membership = await self.get_membership(entry["account_id"], user_id)
            if membership is not None:
                memberships.append(membership)
        return memberships

    @staticmethod
    def put_identity(txn: Transaction, identity: Identity) -> int:
        """Add an identity plus its id guard to ``txn``; returns the identity op index."""
        index = txn.put(IDENTITY_TABLE, identity.email, identity.to_record(), attr_not_exists("id"))
        txn.put(
            IDENTITY_ID_TABLE,
            identity.id,
            {"id": identity.id, "email": identity.email},
            attr_not_exists("id"),
        )
        return index

    @staticmethod
    def put_membership(txn: Transaction, membership: Membership) -> None:
        """Add a new membership and its per-user index entry to ``txn``."""
        txn.put(MEMBERSHIP_TABLE, membership.key, membership.to_record(), attr_not_exists("account_id"))
        txn.put(
            MEMBERSHIP_USER_TABLE,
            membership_user_key(membership.user_id, membership.account_id),
            {"user_id": membership.user_id, "account_id": membership.account_id},
        )

    @staticmethod
    def delete_membership(txn: Transaction, membership: Membership, *conditions: Condition) -> int:
        """Remove a membership and its index entry; returns the membership op index."""
        index = txn.delete(MEMBERSHIP_TABLE, membership.key, *conditions)
        txn.delete(MEMBERSHIP_USER_TABLE, membership_user_key(membership.user_id, membership.account_id))
        return index

    @staticmethod
    def put_account(txn: Transaction, account: Account, membership: Membership) -> None:
        txn.put(ACCOUNT_TABLE, account.id, account.to_record(), attr_not_exists("id"))
        IdentityDirectory.put_membership(txn, membership)
