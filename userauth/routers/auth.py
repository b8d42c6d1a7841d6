from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, Field

from userauth.auth import issue_token
from userauth.deps import get_repository, get_settings_dep
from userauth.repository import UserAuthRepository
from userauth.routers.users import UserResponse
from userauth.settings import Settings

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    user_name_or_email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


@router.post("/login", response_model=LoginResponse)
def login(
    payload: LoginRequest = Body(...),
    repo: UserAuthRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings_dep),
) -> LoginResponse:
    user = repo.try_authenticate(payload.user_name_or_email, payload.password)
    if user is None:
        # Same answer for unknown user and wrong password.
        raise HTTPException(status_code=401, detail="Invalid username/email or password")
    token = issue_token(user_auth_id=user.id, secret=settings.auth_secret, ttl_seconds=settings.auth_token_ttl_seconds)
    return LoginResponse(token=token, user=UserResponse.from_user_auth(user))
