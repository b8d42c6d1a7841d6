from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from userauth.backend import Condition, KeyValueBackend
from userauth.errors import AlreadyExists, ConditionFailed
from userauth.models import normalise_identifier
from userauth.settings import TableConfig

logger = logging.getLogger("userauth.index")


class IdentifierIndex:
    """One identifier -> user auth id mapping table (username or email).

    A row is a reservation: it is written with a conditional put that only
    succeeds when the key is absent (or already owned by the same id), which
    is the only uniqueness guarantee the backing store can give us.
    """

    def __init__(self, backend: KeyValueBackend, *, table: str, key_field: str, id_field: str, kind: str):
        self.backend = backend
        self.table = table
        self.key_field = key_field
        self.id_field = id_field
        self.kind = kind

    def reserve(self, identifier: Optional[str], owner_id: int) -> bool:
        """Claim ``identifier`` for ``owner_id``.

        Returns True when this call wrote the row, i.e. the caller now holds a
        reservation it must release if a later step fails. Returns False for an
        empty identifier and for a row ``owner_id`` already held before the call.
        Raises AlreadyExists when another id owns it.
        """
        key = normalise_identifier(identifier)
        if not key:
            return False

        logger.debug("%s mapping %s %s", owner_id, self.kind, key)
        try:
            self.backend.conditional_put(
                self.table,
                {self.key_field: key, self.id_field: int(owner_id)},
                Condition.key_absent(),
            )
        except ConditionFailed:
            current = self.lookup_owner(key)
            if current == int(owner_id):
                logger.debug("%s %s %s already mapped", owner_id, self.kind, key)
                return False
            logger.debug("%s %s %s already mapped to %s", owner_id, self.kind, key, current)
            raise AlreadyExists(identifier or key, kind=self.kind, owner_id=current) from None
        logger.info("%s %s %s mapped", owner_id, self.kind, key)
        return True

    def release(self, identifier: Optional[str]) -> None:
        """Delete the row for ``identifier``. Absent rows are fine.

        Backend failures are logged and swallowed; the row is left behind as an
        orphaned reservation.
        """
        key = normalise_identifier(identifier)
        if not key:
            return
        logger.debug("un-mapping %s %s", self.kind, key)
        try:
            self.backend.delete(self.table, {self.key_field: key})
        except Exception:
            logger.warning("Failed to un-map %s %s; reservation left orphaned", self.kind, key, exc_info=True)
            return
        logger.info("%s %s un-mapped", self.kind, key)

    def lookup_owner(self, identifier: Optional[str]) -> Optional[int]:
        key = normalise_identifier(identifier)
        if not key:
            return None
        item = self.backend.get(self.table, {self.key_field: key})
        if item is None or item.get(self.id_field) is None:
            return None
        return int(item[self.id_field])


@dataclass(frozen=True)
class UniquenessIndexes:
    user_name: IdentifierIndex
    email: IdentifierIndex

    @classmethod
    def for_tables(cls, backend: KeyValueBackend, tables: TableConfig) -> "UniquenessIndexes":
        f = tables.fields
        return cls(
            user_name=IdentifierIndex(
                backend,
                table=tables.user_name_mapping_table,
                key_field=f.user_name,
                id_field=f.id,
                kind="username",
            ),
            email=IdentifierIndex(
                backend,
                table=tables.email_mapping_table,
                key_field=f.email,
                id_field=f.id,
                kind="email",
            ),
        )

    def for_identifier(self, user_name_or_email: str) -> IdentifierIndex:
        """Email-shaped input (contains "@") always uses the email index."""
        return self.email if "@" in (user_name_or_email or "") else self.user_name
