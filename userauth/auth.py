from __future__ import annotations

import base64
import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class AuthUser:
    user_auth_id: int


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode((raw + padding).encode("utf-8"))


def _sign(secret: str, msg: bytes) -> str:
    return _b64url_encode(hmac.new(secret.encode("utf-8"), msg, hashlib.sha256).digest())


def issue_token(*, user_auth_id: int, secret: str, ttl_seconds: int = 60 * 60 * 24 * 7) -> str:
    """Issue a simple signed session token for an authenticated user.

    Format: b64url(payload).b64url(sig), payload = "<user_auth_id>|<exp>".
    """
    now = int(time.time())
    exp = now + int(ttl_seconds)
    payload = ("%s|%s" % (int(user_auth_id), exp)).encode("utf-8")
    sig = _sign(secret, payload)
    return "%s.%s" % (_b64url_encode(payload), sig)


def verify_token(*, token: str, secret: str) -> Optional[AuthUser]:
    try:
        payload_b64, sig = token.split(".", 1)
        payload = _b64url_decode(payload_b64)
        expected = _sign(secret, payload)
        if not hmac.compare_digest(expected, sig):
            return None
        user_auth_id, exp_s = payload.decode("utf-8").split("|", 1)
        if int(exp_s) < int(time.time()):
            return None
        return AuthUser(user_auth_id=int(user_auth_id))
    except (ValueError, UnicodeDecodeError):
        return None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and str(authorization).lower().startswith("bearer "):
        return str(authorization).split(" ", 1)[1].strip() or None
    return None
