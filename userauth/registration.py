from __future__ import annotations

import logging
import re
from typing import Callable, Dict, Optional

from userauth.backend import Condition, KeyValueBackend
from userauth.errors import AlreadyExists, AlreadyRegistered, ConditionFailed, InvalidIdentity, NotFound
from userauth.fsm import Effect, Guards, State, Trigger, can_fire, transition
from userauth.index import IdentifierIndex, UniquenessIndexes
from userauth.models import UserAuth, normalise_identifier
from userauth.settings import DEFAULT_TABLES, TableConfig

logger = logging.getLogger("userauth.registration")

# 3-15 chars; letters and digits, optionally separated by single '.', '_' or '-'.
VALID_USER_NAME = re.compile(r"^(?=.{3,15}$)([A-Za-z0-9][._-]?)*$")


class UserRegistration:
    """One run of the registration protocol for one user auth record.

    Drives the record and its username/email reservations through
    validate -> register / update / remove. The ordering rules are the only
    thing keeping the three tables consistent, since the backend cannot write
    them atomically:

    - reserve new identifiers before the record is written,
    - release replaced identifiers only after the record is written,
    - on remove, delete the record before releasing its identifiers.

    Reservations this run made but never committed are released on every
    exit path; use it as a context manager (or call ``dispose()``)::

        with UserRegistration(user, backend, tables) as registration:
            registration.register()
    """

    def __init__(self, user_auth: UserAuth, backend: KeyValueBackend, tables: TableConfig = DEFAULT_TABLES):
        if user_auth is None:
            raise ValueError("user_auth is required")
        if backend is None:
            raise ValueError("backend is required")

        self.user_auth = user_auth
        self.backend = backend
        self.tables = tables
        self.indexes = UniquenessIndexes.for_tables(backend, tables)

        self.state = State.unregistered
        self.validated = False
        self.validation_message: Optional[str] = None
        self.registered = False
        self.registered_user_auth: Optional[UserAuth] = None
        self.user_name_mapped = False
        self.email_mapped = False

        self._handlers: Dict[Effect, Callable[[], None]] = {
            Effect.run_validation: self._on_validate,
            Effect.register_record: self._on_registering,
            Effect.load_record: self._on_registered,
            Effect.update_record: self._on_updating,
            Effect.remove_record: self._on_removing,
            Effect.release_held: self._cleanup,
            Effect.reset_validation: self._leaving_registered,
        }

    def __enter__(self) -> "UserRegistration":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    @property
    def _id(self) -> int:
        return self.user_auth.id

    def _fire(self, trigger: Trigger) -> None:
        previous = self.state
        self.state, effects = transition(previous, trigger, Guards(self.validated, self.registered))
        logger.debug("%s %s: %s -> %s", self._id, trigger.value, previous.value, self.state.value)
        for effect in effects:
            self._handlers[effect]()

    # ----- public operations -------------------------------------------------

    def restore(self) -> None:
        """Reload the persisted record by id, dropping anything held."""
        self._fire(Trigger.cleanup)
        self.registered_user_auth = None
        self._fire(Trigger.restore)

    def validate(self) -> None:
        self._fire(Trigger.validate)
        if not self.validated:
            reason = self.validation_message or "UserAuth is invalid"
            self._fire(Trigger.validated)
            raise InvalidIdentity(reason)
        self._fire(Trigger.validated)

    def register(self) -> None:
        if self.registered:
            raise AlreadyRegistered(self._id)
        self.validate()
        self._fire(Trigger.register)
        self._fire(Trigger.registered)

    def update(self) -> None:
        if self.registered_user_auth is None:
            self._fire(Trigger.restore)
        self.validate()
        self._fire(Trigger.update)
        self._fire(Trigger.registered)

    def remove(self) -> None:
        if self.registered_user_auth is None:
            self._fire(Trigger.restore)
        self._fire(Trigger.remove)
        self._fire(Trigger.removed)

    def dispose(self) -> None:
        if can_fire(self.state, Trigger.cleanup, Guards(self.validated, self.registered)):
            self._fire(Trigger.cleanup)

    # ----- validation --------------------------------------------------------

    def _on_validate(self) -> None:
        self.validated = False
        self.validation_message = self._rule_violation()
        if self.validation_message:
            logger.info("%s invalid: %s", self._id, self.validation_message)
            return
        self._ensure_available(self.indexes.user_name, self.user_auth.user_name)
        self._ensure_available(self.indexes.email, self.user_auth.email)
        self.validated = True

    def _rule_violation(self) -> Optional[str]:
        user_name = self.user_auth.user_name or ""
        email = self.user_auth.email or ""
        if not user_name.strip() and not email.strip():
            return "UserName or Email is required"
        if user_name and not VALID_USER_NAME.fullmatch(user_name):
            return "UserName contains invalid characters"
        if email.strip() and "@" not in email:
            return "Email is not a valid email address"
        return None

    def _ensure_available(self, index: IdentifierIndex, identifier: Optional[str]) -> None:
        if not normalise_identifier(identifier):
            return
        owner = index.lookup_owner(identifier)
        if owner is not None and owner != self._id:
            logger.debug("%s %s %s already mapped to %s", self._id, index.kind, identifier, owner)
            raise AlreadyExists(identifier or "", kind=index.kind, owner_id=owner)
        logger.info("%s %s %s validated", self._id, index.kind, identifier)

    def _leaving_registered(self) -> None:
        self.validated = False
        self.validation_message = None

    # ----- record lifecycle --------------------------------------------------

    def _write_record(self, condition: Condition) -> UserAuth:
        record = self.user_auth.model_copy(deep=True)
        self.backend.conditional_put(self.tables.user_auth_table, record.to_item(self.tables.fields), condition)
        return record

    def _committed(self, record: Optional[UserAuth]) -> None:
        self.registered_user_auth = record
        self.registered = record is not None
        self.user_name_mapped = False
        self.email_mapped = False

    def _on_registering(self) -> None:
        if self.registered_user_auth is not None:
            raise AlreadyRegistered(self._id)

        u = self.user_auth
        try:
            self.user_name_mapped = self.indexes.user_name.reserve(u.user_name, u.id)
            self.email_mapped = self.indexes.email.reserve(u.email, u.id)

            logger.debug("%s registering %s %s", u.id, u.user_name, u.email)
            try:
                record = self._write_record(Condition.key_absent())
            except ConditionFailed:
                raise AlreadyRegistered(u.id) from None
        except Exception:
            self._cleanup()
            raise

        self._committed(record)
        logger.info("%s %s %s registered", u.id, u.user_name, u.email)

    def _on_registered(self) -> None:
        if self.registered_user_auth is not None:
            return

        logger.debug("%s loading record", self._id)
        item = self.backend.get(self.tables.user_auth_table, {self.tables.fields.id: self._id})
        if item is None:
            raise NotFound(self._id)
        self._committed(UserAuth.from_item(item, self.tables.fields))
        logger.info("%s %s %s loaded", self._id, self.registered_user_auth.user_name, self.registered_user_auth.email)

    def _on_updating(self) -> None:
        u = self.user_auth
        previous = self.registered_user_auth
        existing_user_name = normalise_identifier(previous.user_name)
        existing_email = normalise_identifier(previous.email)
        user_name_changed = existing_user_name != normalise_identifier(u.user_name)
        email_changed = existing_email != normalise_identifier(u.email)

        try:
            if user_name_changed:
                logger.debug("%s UserName changed %s -> %s", u.id, previous.user_name, u.user_name)
                self.user_name_mapped = self.indexes.user_name.reserve(u.user_name, u.id)
            if email_changed:
                logger.debug("%s Email changed %s -> %s", u.id, previous.email, u.email)
                self.email_mapped = self.indexes.email.reserve(u.email, u.id)

            logger.debug("%s updating %s %s", u.id, u.user_name, u.email)
            try:
                record = self._write_record(Condition.owned_by(u.id, owner_field=self.tables.fields.id))
            except ConditionFailed:
                raise NotFound(u.id) from None
        except Exception:
            self._cleanup()
            raise

        self._committed(record)
        logger.info("%s %s %s updated", u.id, u.user_name, u.email)

        # The record now references the new identifiers; the old rows can go.
        if user_name_changed:
            self.indexes.user_name.release(existing_user_name)
        if email_changed:
            self.indexes.email.release(existing_email)

    def _on_removing(self) -> None:
        previous = self.registered_user_auth
        logger.debug("%s removing %s %s", self._id, previous.user_name, previous.email)
        self.backend.delete(self.tables.user_auth_table, {self.tables.fields.id: self._id})
        self._committed(None)

        self.indexes.user_name.release(previous.user_name)
        self.indexes.email.release(previous.email)
        logger.info("%s %s %s removed", self._id, previous.user_name, previous.email)

    def _cleanup(self) -> None:
        """Release reservations this run made but did not commit."""
        if self.user_name_mapped:
            self.indexes.user_name.release(self.user_auth.user_name)
            self.user_name_mapped = False
        if self.email_mapped:
            self.indexes.email.release(self.user_auth.email)
            self.email_mapped = False
