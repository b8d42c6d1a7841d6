from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Protocol, Tuple

import bcrypt


class PasswordHasher(Protocol):
    def hash(self, password: str) -> Tuple[str, str]: ...

    def verify(self, password: str, password_hash: Optional[str], salt: Optional[str]) -> bool: ...

    def digest_hash(self, user_name: Optional[str], realm: str, password: str) -> str: ...


class CredentialHasher:
    """bcrypt password hashes plus the HTTP digest HA1 hash.

    ``rounds`` is the bcrypt cost factor; tests use the minimum (4).
    """

    def __init__(self, *, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> Tuple[str, str]:
        """Return ``(hash, salt)``. The bcrypt hash also embeds the salt."""
        salt = bcrypt.gensalt(rounds=self.rounds)
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return hashed.decode("utf-8"), salt.decode("utf-8")

    def verify(self, password: str, password_hash: Optional[str], salt: Optional[str]) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            # Not a bcrypt hash (corrupt or foreign record).
            return False

    def digest_hash(self, user_name: Optional[str], realm: str, password: str) -> str:
        """HA1 = MD5("user:realm:password") as lowercase hex."""
        raw = "%s:%s:%s" % (user_name or "", realm, password)
        return hashlib.md5(raw.encode("utf-8")).hexdigest()


def digest_matches(expected_ha1: Optional[str], supplied_ha1: Optional[str]) -> bool:
    if not expected_ha1 or not supplied_ha1:
        return False
    return hmac.compare_digest(expected_ha1.lower(), supplied_ha1.lower())
