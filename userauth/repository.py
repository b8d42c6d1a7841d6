"""
User auth repository.

The public create / update / delete / find / authenticate surface. Every
mutating call runs one UserRegistration and lets it keep the primary table
and the two uniqueness index tables in step; this module only derives
credentials, stamps dates and interprets the outcome.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Union

from userauth.backend import KeyValueBackend
from userauth.credentials import CredentialHasher, PasswordHasher, digest_matches
from userauth.errors import InvalidIdentity, NotFound
from userauth.ids import IdGenerator
from userauth.index import UniquenessIndexes
from userauth.models import AuthTokens, UserAuth, UserAuthDetails, normalise_identifier, utcnow
from userauth.registration import UserRegistration
from userauth.settings import DEFAULT_TABLES, TableConfig

logger = logging.getLogger("userauth.repository")

DEFAULT_DIGEST_REALM = "/auth/digest"


def _parse_id(user_auth_id: Union[int, str, None]) -> Optional[int]:
    if user_auth_id is None or isinstance(user_auth_id, bool):
        return None
    if isinstance(user_auth_id, int):
        return user_auth_id
    try:
        return int(str(user_auth_id).strip())
    except ValueError:
        return None


class UserAuthRepository:
    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        id_generator: IdGenerator,
        tables: TableConfig = DEFAULT_TABLES,
        hasher: Optional[PasswordHasher] = None,
        digest_realm: str = DEFAULT_DIGEST_REALM,
    ):
        if backend is None:
            raise ValueError("backend is required")
        if id_generator is None:
            raise ValueError("id_generator is required")
        self.backend = backend
        self.id_generator = id_generator
        self.tables = tables
        self.hasher: PasswordHasher = hasher or CredentialHasher()
        self.digest_realm = digest_realm
        self.indexes = UniquenessIndexes.for_tables(backend, tables)

    def registration(self, user_auth: UserAuth) -> UserRegistration:
        return UserRegistration(user_auth, self.backend, self.tables)

    # ----- create / update / delete ------------------------------------------

    def create_user_auth(self, new_user: UserAuth, password: str) -> UserAuth:
        """Register a new user; returns the persisted record.

        Raises InvalidIdentity, AlreadyExists or AlreadyRegistered.
        """
        if new_user is None:
            raise ValueError("new_user is required")
        if not password:
            raise InvalidIdentity("Password is required")

        user = new_user.model_copy(deep=True)
        user.id = self.id_generator.next()
        with self.registration(user) as registration:
            registration.validate()

            user.password_hash, user.salt = self.hasher.hash(password)
            user.digest_ha1_hash = self.hasher.digest_hash(user.user_name, self.digest_realm, password)
            user.created_date = utcnow()
            user.modified_date = user.created_date

            registration.register()
            return registration.registered_user_auth

    def update_user_auth(self, existing_user: UserAuth, new_user: UserAuth, password: Optional[str] = None) -> UserAuth:
        """Replace ``existing_user`` with ``new_user``, keeping id and creation date.

        Credentials are re-derived only when a password is given. The digest
        hash embeds the username, so a rename without a password clears it.
        """
        if existing_user is None or new_user is None:
            raise ValueError("existing_user and new_user are required")

        user = new_user.model_copy(deep=True)
        user.id = existing_user.id
        with self.registration(user) as registration:
            registration.validate()

            password_hash, salt = existing_user.password_hash, existing_user.salt
            digest_hash = existing_user.digest_ha1_hash
            if password:
                password_hash, salt = self.hasher.hash(password)
                digest_hash = self.hasher.digest_hash(user.user_name, self.digest_realm, password)
            elif existing_user.user_name != user.user_name:
                digest_hash = None

            user.password_hash = password_hash
            user.salt = salt
            user.digest_ha1_hash = digest_hash
            user.created_date = existing_user.created_date
            user.modified_date = utcnow()

            registration.update()
            return registration.registered_user_auth

    def save_user_auth(self, user_auth: UserAuth) -> UserAuth:
        """Persist ``user_auth`` as-is: update when it exists, register otherwise."""
        user = user_auth.model_copy(deep=True)
        user.modified_date = utcnow()
        if user.created_date is None:
            user.created_date = user.modified_date
        if not user.id:
            user.id = self.id_generator.next()

        exists = self.backend.get(self.tables.user_auth_table, {self.tables.fields.id: user.id}) is not None
        with self.registration(user) as registration:
            if exists:
                registration.update()
            else:
                registration.register()
            return registration.registered_user_auth

    def delete_user_auth(self, user_auth_id: Union[int, str, None]) -> None:
        """Remove the user and its indexes, then purge its provider records. Missing ids are a no-op."""
        existing = self.get_user_auth(user_auth_id)
        if existing is None:
            return

        with self.registration(existing) as registration:
            registration.remove()

        f = self.tables.fields
        details = self.backend.query(self.tables.user_auth_details_table, f.user_auth_id, existing.id)
        self.backend.delete_many(
            self.tables.user_auth_details_table,
            [{f.user_auth_id: existing.id, f.provider: it[f.provider]} for it in details],
        )
        logger.info("%s deleted (%d provider records purged)", existing.id, len(details))

    # ----- lookups -----------------------------------------------------------

    def get_user_auth(self, user_auth_id: Union[int, str, None]) -> Optional[UserAuth]:
        uid = _parse_id(user_auth_id)
        if uid is None or uid <= 0:
            return None
        item = self.backend.get(self.tables.user_auth_table, {self.tables.fields.id: uid})
        return UserAuth.from_item(item, self.tables.fields) if item else None

    def get_user_auth_by_user_name(self, user_name_or_email: Optional[str]) -> Optional[UserAuth]:
        """Find a user by username, or by email when the input contains "@"."""
        key = normalise_identifier(user_name_or_email)
        if not key:
            return None

        index = self.indexes.for_identifier(key)
        owner = index.lookup_owner(key)
        if owner is None:
            return None
        user = self.get_user_auth(owner)
        if user is None:
            return None

        # A replaced identifier's row may briefly outlive the rename.
        current = user.email if index is self.indexes.email else user.user_name
        if normalise_identifier(current) != key:
            logger.debug("%s stale %s mapping %s ignored", owner, index.kind, key)
            return None
        return user

    # ----- authentication ----------------------------------------------------

    def try_authenticate(self, user_name_or_email: Optional[str], password: Optional[str]) -> Optional[UserAuth]:
        """Return the user when the password matches, otherwise None."""
        user = self.get_user_auth_by_user_name(user_name_or_email)
        if user is None:
            return None
        if self.hasher.verify(password or "", user.password_hash, user.salt):
            return user
        return None

    def try_authenticate_digest(self, user_name: Optional[str], ha1: Optional[str]) -> Optional[UserAuth]:
        """Return the user when ``ha1`` equals its stored digest HA1 hash, otherwise None."""
        user = self.get_user_auth_by_user_name(user_name)
        if user is None:
            return None
        if digest_matches(user.digest_ha1_hash, ha1):
            return user
        return None

    # ----- provider records --------------------------------------------------

    def get_user_auth_details(self, user_auth_id: Union[int, str, None]) -> List[UserAuthDetails]:
        uid = _parse_id(user_auth_id)
        if uid is None:
            return []
        f = self.tables.fields
        items = self.backend.query(self.tables.user_auth_details_table, f.user_auth_id, uid)
        return [UserAuthDetails.from_item(it, f) for it in items]

    def create_or_merge_auth_details(self, user_auth_id: Union[int, str, None], tokens: AuthTokens) -> UserAuthDetails:
        """Store (or refresh) a provider record for an existing user.

        Profile fields the user is missing are filled from the tokens and the
        user is saved through the registration protocol, so a newly supplied
        email is reserved like any other.
        """
        user = self.get_user_auth(user_auth_id)
        if user is None:
            raise NotFound(_parse_id(user_auth_id) or 0)

        f = self.tables.fields
        now = utcnow()
        item = self.backend.get(self.tables.user_auth_details_table, {f.user_auth_id: user.id, f.provider: tokens.provider})
        if item is not None:
            details = UserAuthDetails.from_item(item, f)
        else:
            details = UserAuthDetails(
                id=self.id_generator.next(), user_auth_id=user.id, provider=tokens.provider, created_date=now
            )

        for name, value in tokens.model_dump(exclude={"provider"}, exclude_none=True).items():
            setattr(details, name, value)
        details.modified_date = now

        changed = False
        for name in ("first_name", "last_name", "display_name", "email"):
            value = getattr(tokens, name)
            if value and not getattr(user, name):
                setattr(user, name, value)
                changed = True
        if changed:
            self.save_user_auth(user)

        self.backend.put(self.tables.user_auth_details_table, details.to_item(f))
        logger.info("%s %s provider record saved", user.id, tokens.provider)
        return details
