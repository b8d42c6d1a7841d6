from __future__ import annotations

from typing import Optional


class UserAuthError(Exception):
    """Base class for every failure the user-auth repository raises."""


class InvalidIdentity(UserAuthError, ValueError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class AlreadyExists(UserAuthError):
    """An identifier is already claimed by a different user auth id."""

    def __init__(self, identifier: str, *, kind: str, owner_id: Optional[int] = None):
        label = "User" if kind == "username" else "Email"
        super().__init__(f"{label} {identifier} already exists")
        self.identifier = identifier
        self.kind = kind
        self.owner_id = owner_id


class AlreadyRegistered(UserAuthError):
    def __init__(self, user_auth_id: int):
        super().__init__(f"UserAuth {user_auth_id} already registered")
        self.user_auth_id = user_auth_id


class NotFound(UserAuthError, LookupError):
    def __init__(self, user_auth_id: int):
        super().__init__(f"UserAuth {user_auth_id} not found")
        self.user_auth_id = user_auth_id


class ConditionFailed(UserAuthError):
    """A backend conditional write was rejected.

    Backends raise this; the index manager and the registration state machine
    translate it into AlreadyExists / AlreadyRegistered / NotFound.
    """

    def __init__(self, table: str, key: object):
        super().__init__(f"Conditional write rejected on {table}[{key!r}]")
        self.table = table
        self.key = key


class InvalidTransition(UserAuthError, RuntimeError):
    def __init__(self, state: object, trigger: object):
        super().__init__(f"Trigger {trigger} is not permitted from state {state}")
        self.state = state
        self.trigger = trigger


class UnprocessedWrites(UserAuthError):
    """A batch write still had unprocessed items after the last retry."""

    def __init__(self, table: str, remaining: int, attempts: int):
        super().__init__(f"{remaining} writes to {table} unprocessed after {attempts} attempts")
        self.table = table
        self.remaining = remaining
        self.attempts = attempts
