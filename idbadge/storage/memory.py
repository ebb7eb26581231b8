from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from idbadge.logging import get_logger
from idbadge.storage.common import (
    Condition,
    Transaction,
    UpdateAction,
    apply_updates,
    evaluate_conditions,
    from_iso,
    to_iso,
    utc_now,
)
from idbadge.storage.errors import ConditionalCheckFailed, TransactionCanceled

logger = get_logger(__name__)

_Entry = Tuple[Dict[str, Any], Optional[datetime]]


class MemoryStore:
    """In-process key-value store honouring the conditional/transactional contract.

    Every operation runs under one ``RLock`` so a transaction's condition checks
    and writes are observed atomically. Items written with ``expires_at``
    disappear once the clock passes it. With ``fs_root`` set, state is written
    to ``<fs_root>/state/memory_store.json`` after every mutation and reloaded on
    construction.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._clock = clock
        self._data_lock = threading.RLock()
        self._tables: Dict[str, Dict[str, _Entry]] = {}
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            table: [
                {
                    "key": key,
                    "item": item,
                    "expires_at": to_iso(expires_at) if expires_at else None,
                }
                for key, (item, expires_at) in rows.items()
            ]
            for table, rows in self._tables.items()
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self._tables = {
            table: {
                row["key"]: (
                    row["item"],
                    from_iso(row["expires_at"]) if row.get("expires_at") else None,
                )
                for row in rows
            }
            for table, rows in data.items()
        }
        logger.info("memory_store_state_loaded", tables=len(self._tables))
        return True

    def _rows(self, table: str) -> Dict[str, _Entry]:
        return self._tables.setdefault(table, {})

    def _live(self, table: str, key: str) -> Optional[_Entry]:
        rows = self._rows(table)
        entry = rows.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            # Native expiry: reap on access
            rows.pop(key, None)
            return None
        return entry

    def _current(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        entry = self._live(table, key)
        return entry[0] if entry else None

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            return copy.deepcopy(self._current(table, key))

    async def put(
        self,
        table: str,
        key: str,
        item: Dict[str, Any],
        *conditions: Condition,
        expires_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            if not evaluate_conditions(self._current(table, key), conditions):
                raise ConditionalCheckFailed(table, key)
            self._rows(table)[key] = (copy.deepcopy(item), expires_at)
            self._persist_state()

    async def update(
        self, table: str, key: str, actions: Sequence[UpdateAction], *conditions: Condition
    ) -> Dict[str, Any]:
        with self._data_lock:
            entry = self._live(table, key)
            current = entry[0] if entry else None
            if not evaluate_conditions(current, conditions):
                raise ConditionalCheckFailed(table, key)
            updated = apply_updates(current, actions)
            self._rows(table)[key] = (updated, entry[1] if entry else None)
            self._persist_state()
            return copy.deepcopy(updated)

    async def delete(self, table: str, key: str, *conditions: Condition) -> None:
        with self._data_lock:
            if not evaluate_conditions(self._current(table, key), conditions):
                raise ConditionalCheckFailed(table, key)
            self._rows(table).pop(key, None)
            self._persist_state()

    async def query_prefix(self, table: str, prefix: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            keys = sorted(k for k in self._rows(table) if k.startswith(prefix))
            return [
                copy.deepcopy(item)
                for item in (self._current(table, k) for k in keys)
                if item is not None
            ]

    async def scan(self, table: str) -> List[Dict[str, Any]]:
        return await self.query_prefix(table, "")

    async def transact(self, txn: Transaction) -> None:
        with self._data_lock:
            reasons: List[Optional[str]] = []
            for op in txn.ops:
                ok = evaluate_conditions(self._current(op.table, op.key), op.conditions)
                reasons.append(None if ok else TransactionCanceled.CONDITIONAL_CHECK_FAILED)
            if any(reasons):
                logger.info("memory_store_transaction_canceled", reasons=reasons)
                raise TransactionCanceled(reasons)
            for op in txn.ops:
                rows = self._rows(op.table)
                if op.kind == "put":
                    rows[op.key] = (copy.deepcopy(op.item), op.expires_at)
                elif op.kind == "update":
                    entry = self._live(op.table, op.key)
                    rows[op.key] = (
                        apply_updates(entry[0] if entry else None, op.actions),
                        entry[1] if entry else None,
                    )
                elif op.kind == "delete":
                    rows.pop(op.key, None)
            self._persist_state()

    async def close(self) -> None:
        return None
