from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import WatchError

from idbadge.logging import get_logger
from idbadge.storage.common import (
    Condition,
    Transaction,
    TransactOp,
    UpdateAction,
    apply_updates,
    evaluate_conditions,
)
from idbadge.storage.errors import (
    ConditionalCheckFailed,
    ConstraintViolation,
    TransactionCanceled,
)

logger = get_logger(__name__)


class RedisStore:
    """Redis-backed store.

    Each record is one JSON string at ``<prefix>:<table>:<key>``. Conditional
    writes and transactions use WATCH/MULTI: the watched keys are read, the
    preconditions evaluated, and the writes queued in MULTI. A concurrent
    writer aborts EXEC with ``WatchError`` and the attempt is re-evaluated
    from fresh reads. Native expiry is Redis' own (``EXAT`` / ``KEEPTTL``).
    """

    MAX_WATCH_ATTEMPTS = 8

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "idbadge",
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime relies on it."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, table: str, key: str) -> str:
        return f"{self.key_prefix}:{table}:{key}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Dict[str, Any]]:
        return json.loads(raw) if raw else None

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        return self._decode(await self.client.get(self._key(table, key)))

    async def put(
        self,
        table: str,
        key: str,
        item: Dict[str, Any],
        *conditions: Condition,
        expires_at: Optional[datetime] = None,
    ) -> None:
        await self._single(
            TransactOp("put", table, key, item=item, conditions=conditions, expires_at=expires_at)
        )

    async def update(
        self, table: str, key: str, actions: Sequence[UpdateAction], *conditions: Condition
    ) -> Dict[str, Any]:
        return await self._single(
            TransactOp("update", table, key, actions=tuple(actions), conditions=conditions)
        )

    async def delete(self, table: str, key: str, *conditions: Condition) -> None:
        await self._single(TransactOp("delete", table, key, conditions=conditions))

    async def query_prefix(self, table: str, prefix: str) -> List[Dict[str, Any]]:
        keys = sorted(
            [k async for k in self.client.scan_iter(match=f"{self._key(table, prefix)}*")]
        )
        if not keys:
            return []
        values = await self.client.mget(keys)
        return [record for record in (self._decode(v) for v in values) if record is not None]

    async def scan(self, table: str) -> List[Dict[str, Any]]:
        return await self.query_prefix(table, "")

    async def transact(self, txn: Transaction) -> None:
        await self._execute(txn.ops)

    async def _single(self, op: TransactOp) -> Any:
        try:
            results = await self._execute([op])
        except TransactionCanceled:
            raise ConditionalCheckFailed(op.table, op.key)
        return results[0]

    async def _execute(self, ops: List[TransactOp]) -> List[Any]:
        keys = [self._key(op.table, op.key) for op in ops]
        for attempt in range(self.MAX_WATCH_ATTEMPTS):
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(*keys)
                    current: Dict[str, Optional[Dict[str, Any]]] = {}
                    for key in keys:
                        if key not in current:
                            current[key] = self._decode(await pipe.get(key))
                    reasons = [
                        None
                        if evaluate_conditions(current[key], op.conditions)
                        else TransactionCanceled.CONDITIONAL_CHECK_FAILED
                        for op, key in zip(ops, keys)
                    ]
                    if any(reasons):
                        await pipe.unwatch()
                        raise TransactionCanceled(reasons)

                    pipe.multi()
                    results: List[Any] = []
                    for op, key in zip(ops, keys):
                        if op.kind == "put":
                            if op.expires_at:
                                pipe.set(key, json.dumps(op.item), exat=int(op.expires_at.timestamp()))
                            else:
                                pipe.set(key, json.dumps(op.item))
                            current[key] = op.item
                            results.append(op.item)
                        elif op.kind == "update":
                            updated = apply_updates(current[key], op.actions)
                            if current[key] is None:
                                pipe.set(key, json.dumps(updated))
                            else:
                                pipe.set(key, json.dumps(updated), keepttl=True)
                            current[key] = updated
                            results.append(updated)
                        elif op.kind == "delete":
                            pipe.delete(key)
                            current[key] = None
                            results.append(None)
                        else:
                            results.append(current[key])
                    await pipe.execute()
                    return results
                except WatchError:
                    logger.info("redis_store_watch_conflict", attempt=attempt, keys=len(keys))
                    continue
        logger.error("redis_store_contention_exhausted", keys=len(keys))
        raise ConstraintViolation("write contention exhausted", {"keys": len(keys)})

    async def close(self) -> None:
        await self.client.aclose()
