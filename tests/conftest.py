"""Shared test fixtures: an in-memory store, a repository on top of it, and a failure injector."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import pytest

from userauth.backend import Condition, InMemoryBackend
from userauth.credentials import CredentialHasher
from userauth.ids import CounterIdGenerator
from userauth.repository import UserAuthRepository
from userauth.settings import DEFAULT_TABLES


class FailingBackend:
    """Wraps a backend and raises RuntimeError on chosen (method, table) calls."""

    def __init__(self, inner: InMemoryBackend):
        self.inner = inner
        self.fail_on: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple[str, str]] = []

    def _check(self, method: str, table: str) -> None:
        self.calls.append((method, table))
        if (method, table) in self.fail_on:
            raise RuntimeError(f"injected {method} failure on {table}")

    def get(self, table: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._check("get", table)
        return self.inner.get(table, key)

    def conditional_put(self, table: str, item: Dict[str, Any], condition: Condition) -> None:
        self._check("conditional_put", table)
        self.inner.conditional_put(table, item, condition)

    def put(self, table: str, item: Dict[str, Any]) -> None:
        self._check("put", table)
        self.inner.put(table, item)

    def delete(self, table: str, key: Dict[str, Any]) -> None:
        self._check("delete", table)
        self.inner.delete(table, key)

    def query(self, table: str, field: str, value: Any, *, index: Optional[str] = None) -> List[Dict[str, Any]]:
        self._check("query", table)
        return self.inner.query(table, field, value, index=index)

    def delete_many(self, table: str, keys: Iterable[Dict[str, Any]]) -> None:
        self._check("delete_many", table)
        self.inner.delete_many(table, keys)


@pytest.fixture
def tables():
    return DEFAULT_TABLES


@pytest.fixture
def backend(tables):
    return InMemoryBackend(tables)


@pytest.fixture
def failing_backend(backend):
    return FailingBackend(backend)


@pytest.fixture
def hasher():
    # Minimum bcrypt cost keeps the suite fast.
    return CredentialHasher(rounds=4)


@pytest.fixture
def repo(backend, tables, hasher):
    return UserAuthRepository(backend, id_generator=CounterIdGenerator(), tables=tables, hasher=hasher)


@pytest.fixture
def index_rows(backend, tables):
    """index_rows("username" | "email") -> {normalized identifier: owner id}."""

    def rows(kind: str) -> Dict[str, int]:
        f = tables.fields
        if kind == "email":
            table, key_field = tables.email_mapping_table, f.email
        else:
            table, key_field = tables.user_name_mapping_table, f.user_name
        return {it[key_field]: int(it[f.id]) for it in backend.items(table)}

    return rows
