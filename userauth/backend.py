from __future__ import annotations

import copy
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from userauth.errors import ConditionFailed
from userauth.settings import TableConfig

Item = Dict[str, Any]


@dataclass(frozen=True)
class Condition:
    """Expected state of the target item for a conditional write.

    ``absent``: the key must not exist.
    ``owned_by``: the key must exist and its owner attribute must equal ``owner``.
    """

    kind: str
    owner_field: str = "Id"
    owner: Optional[int] = None

    @classmethod
    def key_absent(cls) -> "Condition":
        return cls(kind="absent")

    @classmethod
    def owned_by(cls, owner: int, *, owner_field: str = "Id") -> "Condition":
        return cls(kind="owned_by", owner_field=owner_field, owner=int(owner))

    def holds(self, existing: Optional[Item]) -> bool:
        if existing is None:
            return self.kind == "absent"
        if self.kind == "absent":
            return False
        current = existing.get(self.owner_field)
        return current is not None and int(current) == self.owner


class KeyValueBackend(Protocol):
    """Item store with per-item atomicity and conditional writes only.

    There are no cross-item transactions: every call touches exactly one item
    (``delete_many`` is a convenience batch of independent deletes).
    """

    def get(self, table: str, key: Item) -> Optional[Item]: ...

    def conditional_put(self, table: str, item: Item, condition: Condition) -> None:
        """Write ``item`` only if ``condition`` holds; raises ConditionFailed otherwise."""
        ...

    def put(self, table: str, item: Item) -> None: ...

    def delete(self, table: str, key: Item) -> None: ...

    def query(self, table: str, field: str, value: Any, *, index: Optional[str] = None) -> List[Item]:
        """Items whose ``field`` equals ``value``; ``index`` names a secondary index of ``table``."""
        ...

    def delete_many(self, table: str, keys: Iterable[Item]) -> None: ...


def key_schemas(tables: TableConfig) -> Dict[str, Tuple[str, ...]]:
    f = tables.fields
    return {
        tables.user_auth_table: (f.id,),
        tables.email_mapping_table: (f.email,),
        tables.user_name_mapping_table: (f.user_name,),
        tables.user_auth_details_table: (f.user_auth_id, f.provider),
    }


class InMemoryBackend:
    """Thread-safe in-process implementation of KeyValueBackend.

    Each call holds the lock for exactly one item operation, which gives the
    same guarantees as the real store: per-item atomicity, nothing more.
    Used for local dev and as the fake conditional-write store in tests.
    """

    def __init__(self, tables: TableConfig):
        self._schemas = key_schemas(tables)
        self._lock = threading.Lock()
        self._tables: Dict[str, Dict[Tuple[Any, ...], Item]] = {name: {} for name in self._schemas}

    def _key(self, table: str, item: Item) -> Tuple[Any, ...]:
        try:
            schema = self._schemas[table]
        except KeyError:
            raise KeyError(f"Unknown table {table!r}") from None
        return tuple(item[name] for name in schema)

    def get(self, table: str, key: Item) -> Optional[Item]:
        k = self._key(table, key)
        with self._lock:
            found = self._tables[table].get(k)
            return copy.deepcopy(found) if found is not None else None

    def conditional_put(self, table: str, item: Item, condition: Condition) -> None:
        k = self._key(table, item)
        with self._lock:
            rows = self._tables[table]
            if not condition.holds(rows.get(k)):
                raise ConditionFailed(table, k[0] if len(k) == 1 else k)
            rows[k] = copy.deepcopy(item)

    def put(self, table: str, item: Item) -> None:
        k = self._key(table, item)
        with self._lock:
            self._tables[table][k] = copy.deepcopy(item)

    def delete(self, table: str, key: Item) -> None:
        k = self._key(table, key)
        with self._lock:
            self._tables[table].pop(k, None)

    def query(self, table: str, field: str, value: Any, *, index: Optional[str] = None) -> List[Item]:
        # Secondary indexes project every attribute, so an index query is a scan on that attribute.
        if table not in self._tables:
            raise KeyError(f"Unknown table {table!r}")
        with self._lock:
            return [copy.deepcopy(it) for it in self._tables[table].values() if it.get(field) == value]

    def delete_many(self, table: str, keys: Iterable[Item]) -> None:
        for key in keys:
            self.delete(table, key)

    def items(self, table: str) -> List[Item]:
        """Snapshot of every item in ``table`` (tests and diagnostics)."""
        with self._lock:
            return [copy.deepcopy(it) for it in self._tables[table].values()]
