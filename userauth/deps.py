from __future__ import annotations

import threading
from typing import Optional

from fastapi import Depends, Header, HTTPException

from userauth.auth import AuthUser, bearer_token, verify_token
from userauth.backend import InMemoryBackend
from userauth.ids import CounterIdGenerator
from userauth.repository import UserAuthRepository
from userauth.settings import Settings, get_settings


def get_settings_dep() -> Settings:
    """FastAPI dependency for settings.

    Delegates to userauth.settings.get_settings (canonical constructor).
    """
    return get_settings()


def build_repository(settings: Settings) -> UserAuthRepository:
    tables = settings.table_config()
    if settings.backend == "dynamodb":
        from userauth.dynamodb import DynamoDbBackend, DynamoDbIdGenerator, create_client

        client = create_client(settings)
        return UserAuthRepository(
            DynamoDbBackend(client, tables),
            id_generator=DynamoDbIdGenerator(client, tables),
            tables=tables,
            digest_realm=settings.digest_realm,
        )
    if settings.backend != "memory":
        raise ValueError(f"Unknown USERAUTH_BACKEND {settings.backend!r} (expected 'memory' or 'dynamodb')")
    return UserAuthRepository(
        InMemoryBackend(tables),
        id_generator=CounterIdGenerator(),
        tables=tables,
        digest_realm=settings.digest_realm,
    )


# The in-memory backend only works if every request sees the same instance,
# so the repository is built once per process. Tests override get_repository.
_repository_lock = threading.Lock()
_repository: Optional[UserAuthRepository] = None


def get_repository(settings: Settings = Depends(get_settings_dep)) -> UserAuthRepository:
    global _repository
    with _repository_lock:
        if _repository is None:
            _repository = build_repository(settings)
        return _repository


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> AuthUser:
    token = bearer_token(authorization)
    user = verify_token(token=token, secret=settings.auth_secret) if token else None
    if user is None:
        raise HTTPException(status_code=401, detail="Missing or invalid bearer token")
    return user
