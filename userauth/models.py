from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from userauth.settings import FieldNames


def normalise_identifier(value: Optional[str]) -> str:
    """Trim and case-fold a username or email before any index operation."""
    return (value or "").strip().lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


# Stored attribute names for everything except the configurable key fields.
_USER_AUTH_ATTRS: Dict[str, str] = {
    "password_hash": "PasswordHash",
    "salt": "Salt",
    "digest_ha1_hash": "DigestHa1Hash",
    "first_name": "FirstName",
    "last_name": "LastName",
    "display_name": "DisplayName",
    "full_name": "FullName",
    "company": "Company",
    "phone_number": "PhoneNumber",
    "created_date": "CreatedDate",
    "modified_date": "ModifiedDate",
    "meta": "Meta",
}

_DETAILS_ATTRS: Dict[str, str] = {
    "user_id": "UserId",
    "access_token": "AccessToken",
    "access_token_secret": "AccessTokenSecret",
    "refresh_token": "RefreshToken",
    "user_name": "UserName",
    "email": "Email",
    "display_name": "DisplayName",
    "first_name": "FirstName",
    "last_name": "LastName",
    "created_date": "CreatedDate",
    "modified_date": "ModifiedDate",
}


class UserAuth(BaseModel):
    """A user account: the primary record keyed by ``id``."""

    id: int = 0
    user_name: Optional[str] = None
    email: Optional[str] = None

    password_hash: Optional[str] = None
    salt: Optional[str] = None
    digest_ha1_hash: Optional[str] = None

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    full_name: Optional[str] = None
    company: Optional[str] = None
    phone_number: Optional[str] = None
    meta: Dict[str, str] = Field(default_factory=dict)

    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    def to_item(self, fields: FieldNames) -> Dict[str, Any]:
        item: Dict[str, Any] = {fields.id: int(self.id)}
        if self.user_name:
            item[fields.user_name] = self.user_name
        if self.email:
            item[fields.email] = self.email
        for name, attr in _USER_AUTH_ATTRS.items():
            value = getattr(self, name)
            if value is None or value == {}:
                continue
            item[attr] = _dump_value(value)
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any], fields: FieldNames) -> "UserAuth":
        data: Dict[str, Any] = {
            "id": int(item[fields.id]),
            "user_name": item.get(fields.user_name),
            "email": item.get(fields.email),
        }
        for name, attr in _USER_AUTH_ATTRS.items():
            if attr in item:
                data[name] = item[attr]
        return cls.model_validate(data)


class UserAuthDetails(BaseModel):
    """A provider (OAuth) record linked to a user account.

    Keyed by ``(user_auth_id, provider)``. Not covered by the uniqueness
    indexes; it only follows the lifecycle of its owning UserAuth.
    """

    id: int = 0
    user_auth_id: int
    provider: str
    user_id: Optional[str] = None
    access_token: Optional[str] = None
    access_token_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    user_name: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_date: Optional[datetime] = None
    modified_date: Optional[datetime] = None

    def to_item(self, fields: FieldNames) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            fields.id: int(self.id),
            fields.user_auth_id: int(self.user_auth_id),
            fields.provider: self.provider,
        }
        for name, attr in _DETAILS_ATTRS.items():
            value = getattr(self, name)
            if value is not None:
                item[attr] = _dump_value(value)
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any], fields: FieldNames) -> "UserAuthDetails":
        data: Dict[str, Any] = {
            "id": int(item.get(fields.id) or 0),
            "user_auth_id": int(item[fields.user_auth_id]),
            "provider": item[fields.provider],
        }
        for name, attr in _DETAILS_ATTRS.items():
            if attr in item:
                data[name] = item[attr]
        return cls.model_validate(data)


class AuthTokens(BaseModel):
    """Tokens and profile data handed over by an external (OAuth) provider."""

    provider: str = Field(min_length=1)
    user_id: Optional[str] = None
    access_token: Optional[str] = None
    access_token_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    user_name: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
