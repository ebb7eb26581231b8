"""Store contract shared by the memory and Redis backends.

Records are JSON-compatible dicts addressed by ``(table, key)``. Writes may
carry preconditions (:class:`Condition`) and updates are expressed as a list of
:class:`UpdateAction` against dotted attribute paths, e.g.
``"mfa.backup_codes.<code>"``. A :class:`Transaction` groups put/update/delete/
check operations that the store applies all-or-nothing.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

_MISSING = object()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_iso(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Condition:
    path: str
    op: str
    value: Any = None


def attr_exists(path: str) -> Condition:
    return Condition(path, "exists")


def attr_not_exists(path: str) -> Condition:
    return Condition(path, "not_exists")


def attr_equals(path: str, value: Any) -> Condition:
    return Condition(path, "equals", value)


@dataclass(frozen=True)
class UpdateAction:
    op: str
    path: str
    value: Any = None


def set_attr(path: str, value: Any) -> UpdateAction:
    return UpdateAction("set", path, value)


def remove_attr(path: str) -> UpdateAction:
    return UpdateAction("remove", path)


def add_to_set(path: str, *values: Any) -> UpdateAction:
    return UpdateAction("add_to_set", path, list(values))


def delete_from_set(path: str, *values: Any) -> UpdateAction:
    return UpdateAction("delete_from_set", path, list(values))


def _lookup(record: Optional[Dict[str, Any]], path: str) -> Any:
    node: Any = record
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def evaluate_conditions(
    record: Optional[Dict[str, Any]], conditions: Sequence[Condition]
) -> bool:
    """Return True when every condition holds against ``record``.

    A missing record behaves like one with no attributes at all.
    """
    for condition in conditions:
        value = _lookup(record, condition.path)
        if condition.op == "exists":
            ok = value is not _MISSING and value is not None
        elif condition.op == "not_exists":
            ok = value is _MISSING or value is None
        elif condition.op == "equals":
            ok = value is not _MISSING and value == condition.value
        else:
            raise ValueError(f"unknown condition operator {condition.op!r}")
        if not ok:
            return False
    return True


def apply_updates(
    record: Optional[Dict[str, Any]], actions: Sequence[UpdateAction]
) -> Dict[str, Any]:
    """Apply update actions to a copy of ``record`` and return the copy."""
    updated: Dict[str, Any] = copy.deepcopy(record) if record else {}
    for action in actions:
        *parents, leaf = action.path.split(".")
        node = updated
        if action.op == "remove":
            for part in parents:
                node = node.get(part) if isinstance(node, dict) else None
                if node is None:
                    break
            if isinstance(node, dict):
                node.pop(leaf, None)
            continue
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        if action.op == "set":
            node[leaf] = copy.deepcopy(action.value)
        elif action.op == "add_to_set":
            current = list(node.get(leaf) or [])
            for value in action.value:
                if value not in current:
                    current.append(value)
            node[leaf] = current
        elif action.op == "delete_from_set":
            current = [v for v in (node.get(leaf) or []) if v not in action.value]
            if current:
                node[leaf] = current
            else:
                node.pop(leaf, None)
        else:
            raise ValueError(f"unknown update operator {action.op!r}")
    return updated


@dataclass
class TransactOp:
    kind: str
    table: str
    key: str
    item: Optional[Dict[str, Any]] = None
    actions: Tuple[UpdateAction, ...] = ()
    conditions: Tuple[Condition, ...] = ()
    expires_at: Optional[datetime] = None


@dataclass
class Transaction:
    """Accumulates typed operations executed by :meth:`Store.transact` as one unit.

    Each builder method returns the operation's index so the caller can tell
    which precondition a :class:`TransactionCanceled` refers to.
    """

    ops: List[TransactOp] = field(default_factory=list)

    def _add(self, op: TransactOp) -> int:
        self.ops.append(op)
        return len(self.ops) - 1

    def put(
        self,
        table: str,
        key: str,
        item: Dict[str, Any],
        *conditions: Condition,
        expires_at: Optional[datetime] = None,
    ) -> int:
        return self._add(
            TransactOp("put", table, key, item=item, conditions=conditions, expires_at=expires_at)
        )

    def update(
        self, table: str, key: str, actions: Sequence[UpdateAction], *conditions: Condition
    ) -> int:
        return self._add(
            TransactOp("update", table, key, actions=tuple(actions), conditions=conditions)
        )

    def delete(self, table: str, key: str, *conditions: Condition) -> int:
        return self._add(TransactOp("delete", table, key, conditions=conditions))

    def check(self, table: str, key: str, *conditions: Condition) -> int:
        return self._add(TransactOp("check", table, key, conditions=conditions))

    def __len__(self) -> int:
        return len(self.ops)


class Store(Protocol):
    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]: ...

    async def put(
        self,
        table: str,
        key: str,
        item: Dict[str, Any],
        *conditions: Condition,
        expires_at: Optional[datetime] = None,
    ) -> None: ...

    async def update(
        self, table: str, key: str, actions: Sequence[UpdateAction], *conditions: Condition
    ) -> Dict[str, Any]: ...

    async def delete(self, table: str, key: str, *conditions: Condition) -> None: ...

    async def query_prefix(self, table: str, prefix: str) -> List[Dict[str, Any]]: ...

    async def scan(self, table: str) -> List[Dict[str, Any]]: ...

    async def transact(self, txn: Transaction) -> None: ...
